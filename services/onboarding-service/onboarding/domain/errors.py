"""Error taxonomy shared by the onboarding workflows."""

from __future__ import annotations

from typing import Any


class OnboardingError(Exception):
    """Base class for errors that carry a stable, caller-facing code."""

    default_code = "ONBOARDING_ERROR"

    def __init__(
        self,
        code: str | None = None,
        message: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message or self.code
        self.meta = meta or {}
        super().__init__(self.message)


class ValidationError(OnboardingError):
    default_code = "INVALID_INPUT"


class AuthenticationError(OnboardingError):
    default_code = "UNAUTHORIZED"


class AuthorizationError(OnboardingError):
    default_code = "FORBIDDEN"


class NotFoundError(OnboardingError):
    default_code = "NOT_FOUND"


class ConflictError(OnboardingError):
    default_code = "CONFLICT"


class RateLimitedError(ConflictError):
    default_code = "RATE_LIMITED"


class TransientExternalError(OnboardingError):
    default_code = "LOOKUP_FAILED"


class UniqueConstraintError(Exception):
    """A write hit a uniqueness constraint in the relational store."""

    def __init__(self, constraint: str | None = None, message: str | None = None) -> None:
        self.constraint = constraint
        super().__init__(message or f"unique constraint violated: {constraint}")
