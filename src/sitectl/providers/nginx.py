"""Nginx provider for managing virtual-host files and validating the tree."""
from __future__ import annotations

import os
import re
import shutil
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ..runner import CommandResult, CommandRunnerProtocol


class NginxError(RuntimeError):
    """Raised when nginx site store operations fail."""


@dataclass(frozen=True, slots=True)
class ValidationOutcome:
    """Result of running the nginx syntax checker."""

    result: CommandResult
    staged: bool
    note: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when ``nginx -t`` accepted the configuration."""
        return self.result.ok

    @property
    def output(self) -> str:
        """Return the validator output verbatim."""
        return "\n".join(part for part in (self.result.stderr, self.result.stdout) if part).strip()


@dataclass(frozen=True, slots=True)
class LinkStatus:
    """Observed state of a site's entry in the enabled store."""

    present: bool
    is_symlink: bool
    broken: bool
    points_to_site: bool


@dataclass(slots=True)
class NginxProvider:
    """Manage the available/enabled stores and run ``nginx -t``."""

    runner: CommandRunnerProtocol
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    main_config: Path = Path("/etc/nginx/nginx.conf")
    nginx_bin: str = "nginx"

    def site_path(self, name: str) -> Path:
        """Return the path of the configuration file for *name*."""
        return self.sites_available / name

    def enabled_path(self, name: str) -> Path:
        """Return the path of the symlink in sites-enabled for *name*."""
        return self.sites_enabled / name

    def ensure_directories(self) -> None:
        """Create both stores when missing."""
        try:
            self.sites_available.mkdir(parents=True, exist_ok=True)
            self.sites_enabled.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise NginxError(f"Unable to create nginx site directories: {exc}") from exc

    # Binary -------------------------------------------------------------
    def is_installed(self) -> bool:
        """Return ``True`` when ``nginx -v`` runs successfully."""
        return self.runner.run(self.nginx_bin, ["-v"]).ok

    def test_config(self, config_file: Path | None = None) -> CommandResult:
        """Run ``nginx -t`` against the live tree or *config_file*."""
        args = ["-t"] if config_file is None else ["-t", "-c", str(config_file)]
        return self.runner.run(self.nginx_bin, args, privileged=True)

    # Site files ---------------------------------------------------------
    def read_site(self, name: str) -> str | None:
        """Return the current configuration text for *name*, if any."""
        try:
            return self.site_path(name).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def stage_candidate(self, name: str, content: str) -> Path:
        """Write *content* to a temporary file next to the site's target path."""
        self.ensure_directories()
        try:
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.sites_available),
                prefix=f".{name}.",
                suffix=".tmp",
            )
        except OSError as exc:
            raise NginxError(f"Unable to stage configuration for {name}: {exc}") from exc
        candidate = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(candidate, 0o644)
        except OSError as exc:
            candidate.unlink(missing_ok=True)
            raise NginxError(f"Unable to write {candidate}: {exc}") from exc
        except BaseException:
            candidate.unlink(missing_ok=True)
            raise
        return candidate

    def promote(self, candidate: Path, name: str) -> Path:
        """Atomically move *candidate* over the site's configuration file."""
        destination = self.site_path(name)
        try:
            os.replace(candidate, destination)
        except OSError as exc:
            raise NginxError(f"Unable to move {candidate} to {destination}: {exc}") from exc
        return destination

    @staticmethod
    def discard(candidate: Path) -> None:
        """Remove a staged candidate that will not be promoted."""
        candidate.unlink(missing_ok=True)

    def delete_site(self, name: str) -> bool:
        """Delete the configuration file. Return ``True`` if it existed."""
        path = self.site_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise NginxError(f"Unable to delete {path}: {exc}") from exc
        return True

    # Enabled store ------------------------------------------------------
    def link_status(self, name: str) -> LinkStatus:
        """Inspect the enabled-store entry for *name*."""
        target = self.enabled_path(name)
        is_symlink = target.is_symlink()
        present = is_symlink or target.exists()
        if not present:
            return LinkStatus(present=False, is_symlink=False, broken=False, points_to_site=False)
        if not is_symlink:
            return LinkStatus(present=True, is_symlink=False, broken=False, points_to_site=False)
        try:
            resolved = target.resolve(strict=True)
        except (FileNotFoundError, RuntimeError):
            return LinkStatus(present=True, is_symlink=True, broken=True, points_to_site=False)
        site = self.site_path(name)
        points = site.exists() and resolved == site.resolve()
        return LinkStatus(present=True, is_symlink=True, broken=False, points_to_site=points)

    def enable(self, name: str) -> bool:
        """Point the enabled-store symlink at the site file. Return ``True`` if changed."""
        status = self.link_status(name)
        if status.points_to_site:
            return False
        target = self.enabled_path(name)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if status.present:
                target.unlink()
            target.symlink_to(self.site_path(name))
        except OSError as exc:
            raise NginxError(f"Unable to create symlink {target}: {exc}") from exc
        return True

    def disable(self, name: str) -> bool:
        """Remove the enabled-store entry. Return ``True`` if one existed."""
        target = self.enabled_path(name)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise NginxError(f"Unable to remove {target}: {exc}") from exc
        return True

    # Validation ---------------------------------------------------------
    def validate(self, overrides: Mapping[str, Path | None] | None = None) -> ValidationOutcome:
        """Validate the tree as it would look with *overrides* applied.

        *overrides* maps site names to the file that should be enabled under
        that name, or ``None`` to leave the site out. Without overrides the
        live tree is checked as-is.
        """
        if not overrides:
            return ValidationOutcome(result=self.test_config(), staged=False)
        with self._staged_tree(overrides) as (staged_main, note):
            if staged_main is None:
                return ValidationOutcome(result=self.test_config(), staged=False, note=note)
            return ValidationOutcome(
                result=self.test_config(staged_main),
                staged=True,
                note=note,
            )

    @contextmanager
    def _staged_tree(
        self,
        overrides: Mapping[str, Path | None],
    ) -> Iterator[tuple[Path | None, str | None]]:
        try:
            main_text = self.main_config.read_text(encoding="utf-8")
        except OSError as exc:
            yield None, f"main configuration unreadable ({exc}); checked the live tree"
            return

        pattern = re.compile(
            r"(include\s+)([\"']?)" + re.escape(str(self.sites_enabled)) + r"/?\*?\2(\s*;)"
        )
        if not pattern.search(main_text):
            yield None, (
                f"{self.main_config} does not include {self.sites_enabled}; "
                "checked the live tree"
            )
            return

        # The staged main config lives beside the real one so relative includes resolve.
        try:
            stage_dir = Path(
                tempfile.mkdtemp(prefix=".sitectl-stage-", dir=str(self.main_config.parent))
            )
        except OSError as exc:
            raise NginxError(
                f"Unable to create a validation tree beside {self.main_config}: {exc}"
            ) from exc
        staged_main = stage_dir.with_suffix(".conf")
        try:
            mirror = stage_dir / "sites-enabled"
            try:
                mirror.mkdir()
                for entry in self._enabled_entries():
                    if entry.name in overrides:
                        continue
                    link_target = Path(os.readlink(entry)) if entry.is_symlink() else entry
                    if not link_target.is_absolute():
                        link_target = entry.parent / link_target
                    (mirror / entry.name).symlink_to(link_target)
                for name, replacement in overrides.items():
                    if replacement is not None:
                        (mirror / name).symlink_to(replacement)

                rewritten = pattern.sub(
                    lambda m: f"{m.group(1)}{mirror}/*{m.group(3)}", main_text
                )
                staged_main.write_text(rewritten, encoding="utf-8")
            except OSError as exc:
                raise NginxError(f"Unable to stage validation tree in {stage_dir}: {exc}") from exc
            yield staged_main, None
        finally:
            staged_main.unlink(missing_ok=True)
            shutil.rmtree(stage_dir, ignore_errors=True)

    def _enabled_entries(self) -> list[Path]:
        if not self.sites_enabled.is_dir():
            return []
        return sorted(path for path in self.sites_enabled.iterdir() if not path.name.startswith("."))


__all__ = ["LinkStatus", "NginxError", "NginxProvider", "ValidationOutcome"]
