"""Exit-code contract and exception types for the treesync CLI."""
from __future__ import annotations

import enum


class ExitCode(enum.IntEnum):
    """Standardised CLI exit codes.

    0 — stream completed
    1 — user error (bad arguments, unreadable input)
    3 — stream failed or ended without a done event
    """

    SUCCESS = 0
    USER_ERROR = 1
    STREAM_FAILED = 3


class CLIError(Exception):
    """Base exception for treesync CLI errors."""

    def __init__(self, message: str, exit_code: ExitCode = ExitCode.STREAM_FAILED) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class InputNotFoundError(CLIError):
    """Raised when the recorded stream file does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Stream file not found: {path}", exit_code=ExitCode.USER_ERROR)
