"""Advisory file locks guarding mutating site operations.

Each site is keyed by its full domain and gets its own lock file under
``<runtime_dir>/sites``. Locks are ``fcntl.flock`` based, so they vanish with
the holding process; the lock file itself is left behind with metadata about
the last holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock cannot be prepared or acquired."""


class LockTimeoutError(LockError):
    """Raised when waiting for a lock exceeds the timeout."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Information about an acquired lock."""

    name: str
    path: Path
    wait_ms: int


class LockManager:
    """Hand out per-site exclusive locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock root and default wait timeout (seconds)."""
        self.root = runtime_dir.expanduser() / "sites"
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.root / f"{safe}.lock"

    @contextmanager
    def site_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive lock for site *name* for the duration of the block."""
        path = self.lock_path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = path.open("a+", encoding="utf-8")
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc

        limit = self.default_timeout if timeout is None else timeout
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= limit:
                        holder = _read_holder(path)
                        raise LockTimeoutError(
                            f"Timed out after {limit:g}s waiting for lock on '{name}' "
                            f"(held by pid {holder})."
                        ) from None
                    time.sleep(_POLL_INTERVAL)

            wait_ms = int((time.monotonic() - start) * 1000)
            handle.seek(0)
            handle.truncate()
            handle.write(
                json.dumps(
                    {
                        "name": name,
                        "pid": os.getpid(),
                        "path": str(path),
                        "acquired_at": datetime.now(UTC).isoformat(),
                    }
                )
            )
            handle.flush()
            try:
                yield LockHandle(name=name, path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


def _read_holder(path: Path) -> str:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return "unknown"
    pid = data.get("pid") if isinstance(data, dict) else None
    return str(pid) if pid is not None else "unknown"


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
