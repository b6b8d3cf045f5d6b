"""Uniform execution of external programs.

Every privileged interaction (service control, validation, package installs,
certificate issuance, crontab edits) goes through :class:`CommandRunner`. The
runner never raises for a failing program; callers inspect the returned
:class:`CommandResult` and decide their own policy.
"""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol


class FailureKind(str, Enum):
    """Why a command did not succeed."""

    EXECUTION_ERROR = "execution-error"
    NON_ZERO_EXIT = "non-zero-exit"


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of running an external program."""

    args: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    failure: FailureKind | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        """Return ``True`` when the program ran and exited with status zero."""
        return self.failure is None

    @property
    def output(self) -> str:
        """Return the most useful diagnostic text (stderr, then stdout)."""
        return self.stderr.strip() or self.stdout.strip()

    def describe(self) -> str:
        """Return a one-line summary suitable for step details and errors."""
        command = " ".join(self.args)
        if self.failure is FailureKind.EXECUTION_ERROR:
            return f"{command}: could not execute ({self.output or 'not found'})"
        if self.timed_out:
            return f"{command}: timed out"
        detail = f"{command}: rc={self.exit_code}"
        if self.output:
            detail += f" {self.output}"
        return detail


class CommandRunnerProtocol(Protocol):
    """Structural type shared by the real runner and test doubles."""

    def run(
        self,
        program: str,
        args: Sequence[str] = (),
        *,
        input: str | None = None,  # noqa: A002 - mirrors subprocess.run
        timeout: float | None = None,
        privileged: bool = False,
    ) -> CommandResult:
        """Run *program* with *args* and return the result."""


@dataclass(slots=True)
class CommandRunner:
    """Run programs through :func:`subprocess.run` with a bounded timeout."""

    default_timeout: float = 300.0
    privilege_command: Sequence[str] = field(default_factory=tuple)

    def run(
        self,
        program: str,
        args: Sequence[str] = (),
        *,
        input: str | None = None,  # noqa: A002 - mirrors subprocess.run
        timeout: float | None = None,
        privileged: bool = False,
    ) -> CommandResult:
        """Run *program*; privileged calls are prefixed with the privilege command."""
        command = [program, *args]
        if privileged and self.privilege_command:
            command = [*self.privilege_command, *command]
        limit = self.default_timeout if timeout is None else timeout
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                input=input,
                capture_output=True,
                text=True,
                check=False,
                timeout=limit,
            )
        except subprocess.TimeoutExpired as exc:
            return CommandResult(
                args=tuple(command),
                exit_code=-1,
                stdout=_as_text(exc.stdout),
                stderr=_as_text(exc.stderr) or f"timed out after {limit:g}s",
                failure=FailureKind.NON_ZERO_EXIT,
                timed_out=True,
            )
        except OSError as exc:
            return CommandResult(
                args=tuple(command),
                exit_code=127,
                stderr=str(exc),
                failure=FailureKind.EXECUTION_ERROR,
            )
        failure = None if completed.returncode == 0 else FailureKind.NON_ZERO_EXIT
        return CommandResult(
            args=tuple(command),
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            failure=failure,
        )


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = ["CommandResult", "CommandRunner", "CommandRunnerProtocol", "FailureKind"]
