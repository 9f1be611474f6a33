"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    CONFIG = 2
    PROBE = 3
    APPLY = 4
    INCONSISTENT = 5
    NETWORK = 6
    READINESS = 7
    RESET = 8
    CANCELLED = 130
