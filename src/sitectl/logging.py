"""Structured operation logging for sitectl.

Every CLI invocation opens an :class:`OperationScope` that collects the steps
taken, warnings and errors, and appends a single JSON record to
``operations.jsonl`` inside the configured log directory. Human readable
messages go to ``sitectl.log`` and, when a Rich console is supplied, to the
terminal.

The logger is passed explicitly to every component that needs it; there is no
module-level logger state. Logging failures never abort an operation: the
logger disables itself and the command carries on.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

OPERATIONS_LOG_NAME = "operations.jsonl"
MESSAGES_LOG_NAME = "sitectl.log"


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationStep:
    """A single recorded step within an operation."""

    name: str
    status: str
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "status": self.status}
        if self.detail:
            payload["detail"] = self.detail
        return payload


@dataclass
class OperationScope:
    """Mutable collector for the outcome of one CLI operation."""

    logger: StructuredLogger
    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started: float = field(default_factory=time.perf_counter)
    steps: list[OperationStep] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a step; failures are echoed to the message log."""
        self.steps.append(OperationStep(name=name, status=status, detail=detail))
        message = f"{name}: {status}" + (f" ({detail})" if detail else "")
        if status in {"error", "failed"}:
            self.logger.error(message)
        else:
            self.logger.debug(message)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = value

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            changed=0,
            warnings=None,
            errors=list(errors) if errors else [message],
            context=context,
            rc=rc,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        context: Mapping[str, object] | None,
        rc: int | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            self.result["rc"] = rc

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(dict(self.args)),
            "target": _sanitize(dict(self.target)),
            "duration_ms": int((time.perf_counter() - self.started) * 1000),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": [step.to_dict() for step in self.steps],
            "result": self.result,
        }


class StructuredLogger:
    """Write operation records and human readable messages."""

    def __init__(
        self,
        log_dir: Path,
        *,
        console: Console | None = None,
        verbose: bool = False,
    ) -> None:
        """Prepare log destinations under *log_dir*."""
        self._log_dir = log_dir.expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._messages_log_path = self._log_dir / MESSAGES_LOG_NAME
        self._enabled = True
        self.verbose = verbose

        # Instantiated directly so the logger never joins the global registry.
        self._messages = logging.Logger("sitectl", level=logging.DEBUG)
        if console is not None:
            handler = RichHandler(console=console, show_path=False, show_time=False)
            handler.setFormatter(logging.Formatter("%(message)s"))
            handler.setLevel(logging.DEBUG if verbose else logging.INFO)
            self._messages.addHandler(handler)

        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return

        try:
            file_handler = logging.FileHandler(self._messages_log_path, encoding="utf-8")
        except OSError:
            self._enabled = False
            return
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        self._messages.addHandler(file_handler)

    # Message helpers -----------------------------------------------------
    def debug(self, message: str) -> None:
        """Log a debug message (shown on the console only when verbose)."""
        self._messages.debug(message)

    def info(self, message: str) -> None:
        """Log an informational message."""
        self._messages.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self._messages.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self._messages.error(message)

    # Operations ----------------------------------------------------------
    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope and persist its record on exit."""
        scope = OperationScope(
            logger=self,
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}")
            raise
        finally:
            if scope.result is None:
                scope.warning("Operation finished without recording a result.")
            self._write_record(scope.to_record())

    def _write_record(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "OperationStep", "StructuredLogger"]
