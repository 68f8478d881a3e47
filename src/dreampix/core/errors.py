"""Exception hierarchy for Dreampix.

Every error raised by the core derives from :class:`DreampixError`.  Errors
that carry a category (store and auth failures) expose it as an enum on the
``kind`` attribute so callers can branch without parsing messages.
"""

from __future__ import annotations

from enum import Enum


class DreampixError(Exception):
    """Base class for all Dreampix errors."""


class StoreErrorKind(str, Enum):
    ALREADY_EXISTS = "already_exists"
    MIGRATION_FAILED = "migration_failed"
    WRITE_FAILED = "write_failed"
    UNAVAILABLE = "unavailable"


class StoreError(DreampixError):
    """A persistent store operation failed.

    Attributes:
        kind: Category of the failure.
    """

    def __init__(self, kind: StoreErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value.replace("_", " "))


class AuthErrorKind(str, Enum):
    ALREADY_EXISTS = "already_exists"
    INVALID_CREDENTIALS = "invalid_credentials"


_AUTH_MESSAGES = {
    AuthErrorKind.ALREADY_EXISTS: "User already exists",
    AuthErrorKind.INVALID_CREDENTIALS: "Invalid credentials",
}


class AuthError(DreampixError):
    """Registration or login was rejected.

    The message is suitable for showing to the end user.
    """

    def __init__(self, kind: AuthErrorKind) -> None:
        self.kind = kind
        super().__init__(_AUTH_MESSAGES[kind])


class GenerationError(DreampixError):
    """The generation provider failed and no image could be produced."""


class CompositionError(DreampixError):
    """Collage inputs could not be decoded or composited."""
