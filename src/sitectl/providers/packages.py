"""OS package manager wrapper used to install nginx and certbot."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from ..logging import StructuredLogger
from ..runner import CommandResult, CommandRunnerProtocol


@dataclass(slots=True)
class PackageManager:
    """Install packages with an apt-style command line."""

    runner: CommandRunnerProtocol
    logger: StructuredLogger
    manager: str = "apt-get"
    update_args: Sequence[str] = field(default_factory=lambda: ("update",))
    install_args: Sequence[str] = field(default_factory=lambda: ("install", "-y"))

    def install(self, packages: Sequence[str]) -> CommandResult:
        """Refresh the package index, then install *packages*."""
        if self.update_args:
            update = self.runner.run(self.manager, list(self.update_args), privileged=True)
            if not update.ok:
                self.logger.warning(f"Package index update failed: {update.describe()}")
        self.logger.info(f"Installing {', '.join(packages)} with {self.manager}")
        return self.runner.run(
            self.manager,
            [*self.install_args, *packages],
            privileged=True,
        )


__all__ = ["PackageManager"]
