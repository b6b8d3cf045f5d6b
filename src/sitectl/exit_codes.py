"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes returned by every sitectl command."""

    OK = 0
    FAILURE = 1
