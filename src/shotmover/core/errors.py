"""Error taxonomy for shotmover.

This module provides:
- ErrorKind: Classification shared by sinks, pools and the CLI
- MoverError: Base exception carrying an ErrorKind
- ConfigInvalid, Unauthenticated, Unreachable, Rejected, IOFailure,
  Cancelled, Internal: Concrete failures
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a failure."""

    CONFIG_INVALID = "config_invalid"
    UNAUTHENTICATED = "unauthenticated"
    UNREACHABLE = "unreachable"
    REJECTED = "rejected"
    IO = "io"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class MoverError(Exception):
    """Base exception for shotmover errors."""

    kind: ErrorKind = ErrorKind.INTERNAL


class ConfigInvalid(MoverError):
    """Missing or ill-formed credential or destination parameter.

    Attributes:
        problems: Every problem found, for display.
    """

    kind = ErrorKind.CONFIG_INVALID

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or [message]


class Unauthenticated(MoverError):
    """No token, or the backend refused the credentials."""

    kind = ErrorKind.UNAUTHENTICATED


class Unreachable(MoverError):
    """Network error reaching a backend."""

    kind = ErrorKind.UNREACHABLE


class Rejected(MoverError):
    """A backend answered with a non-2xx status."""

    kind = ErrorKind.REJECTED

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IOFailure(MoverError):
    """Local filesystem error (read, write, rename, mkdir)."""

    kind = ErrorKind.IO


class Cancelled(MoverError):
    """Cooperative cancellation was observed."""

    kind = ErrorKind.CANCELLED


class Internal(MoverError):
    """Unexpected error, surfaced as a failed job."""

    kind = ErrorKind.INTERNAL
