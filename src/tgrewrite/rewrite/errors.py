"""Error taxonomy for the generation backend and the Telegram edit path.

Transient kinds are retried by the coordinator; everything else ends the
task it belongs to. :class:`AuthInvalidError` is the only error that is
allowed to leave the engine.
"""

from __future__ import annotations

from enum import Enum

__all__ = [
    "GenerationErrorKind",
    "GenerationError",
    "EditErrorKind",
    "EditError",
    "AuthInvalidError",
]


# -----------------------------------------------------------------------------
# Generation backend
# -----------------------------------------------------------------------------


class GenerationErrorKind(Enum):
    TIMEOUT = "timeout"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    BACKEND_REJECTED = "backend_rejected"
    EMPTY_RESPONSE = "empty_response"

    @property
    def retryable(self) -> bool:
        return self in (GenerationErrorKind.TIMEOUT, GenerationErrorKind.BACKEND_UNAVAILABLE)


class GenerationError(Exception):
    """Raised by the generation adapter with a classified ``kind``."""

    def __init__(self, kind: GenerationErrorKind, message: str = "") -> None:
        self.kind = kind
        self.message = message or kind.value
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


# -----------------------------------------------------------------------------
# Telegram edits
# -----------------------------------------------------------------------------


class EditErrorKind(Enum):
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    AUTH_INVALID = "auth_invalid"
    OTHER = "other"


class EditError(Exception):
    """Raised by the transport edit adapter with a classified ``kind``."""

    def __init__(
        self,
        kind: EditErrorKind,
        message: str = "",
        *,
        retry_after: float | None = None,
    ) -> None:
        self.kind = kind
        self.message = message or kind.value
        self.retry_after = retry_after
        super().__init__(self.message)

    @classmethod
    def not_found(cls, message: str = "message not found") -> "EditError":
        return cls(EditErrorKind.NOT_FOUND, message)

    @classmethod
    def rate_limited(cls, retry_after: float, message: str = "") -> "EditError":
        return cls(
            EditErrorKind.RATE_LIMITED,
            message or f"rate limited for {retry_after:g}s",
            retry_after=max(0.0, float(retry_after)),
        )

    @classmethod
    def other(cls, message: str) -> "EditError":
        return cls(EditErrorKind.OTHER, message)

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class AuthInvalidError(EditError):
    """The Telegram session is no longer authorized; re-authentication is required."""

    def __init__(self, message: str = "telegram session is no longer authorized") -> None:
        super().__init__(EditErrorKind.AUTH_INVALID, message)
