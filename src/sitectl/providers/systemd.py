"""Systemd provider for controlling the reverse-proxy service."""
from __future__ import annotations

from dataclasses import dataclass

from ..runner import CommandResult, CommandRunnerProtocol


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Start, enable, reload and query a service through ``systemctl``."""

    runner: CommandRunnerProtocol
    service: str = "nginx"
    systemctl_bin: str = "systemctl"

    def is_active(self) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports the service running."""
        return self._systemctl("is-active", check=False, privileged=False).ok

    def start(self, *, check: bool = True) -> CommandResult:
        """Start the service."""
        return self._systemctl("start", check=check)

    def enable(self, *, check: bool = True) -> CommandResult:
        """Enable the service at boot."""
        return self._systemctl("enable", check=check)

    def reload(self, *, check: bool = True) -> CommandResult:
        """Reload the service configuration."""
        return self._systemctl("reload", check=check)

    # Helpers ------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        *,
        check: bool = True,
        privileged: bool = True,
    ) -> CommandResult:
        result = self.runner.run(
            self.systemctl_bin,
            [command, self.service],
            privileged=privileged,
        )
        if check and not result.ok:
            raise SystemdError(
                f"{self.systemctl_bin} {command} {self.service} failed: {result.describe()}"
            )
        return result


__all__ = ["SystemdError", "SystemdProvider"]
