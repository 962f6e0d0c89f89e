"""Self-service security actions for the signed-in user."""

from __future__ import annotations

import logging
from typing import Protocol

from ..identity.gateway import IdentityGateway, IdentityGatewayError
from ..identity.lookup import is_valid_email, normalize_email
from .access import AccessControl, Caller
from .audit import AuditTrail
from .contracts import AdminActionResult, EmailChangeInput
from .errors import (
    AuthorizationError,
    ConflictError,
    OnboardingError,
    TransientExternalError,
    ValidationError,
)
from .models import Profile

logger = logging.getLogger(__name__)

class ProfileStore(Protocol):
    def find_profile_by_email(self, email: str, *, exclude_id: str | None = None) -> Profile | None: ...


class ProfileSecurity:
    """Email change and password reset requested by the caller for their own login.

    Both actions only start a confirmation flow at the identity provider; the
    profile row changes once the user follows the emailed link.
    """

    def __init__(
        self,
        store: ProfileStore,
        gateway: IdentityGateway,
        access: AccessControl,
        audit: AuditTrail,
        *,
        redirect_url: str,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._access = access
        self._audit = audit
        self._redirect_url = redirect_url

    def request_email_change(self, caller: Caller, payload: EmailChangeInput) -> AdminActionResult:
        """Send a confirmation link to ``new_email``; the platform owner's address is locked."""
        redirect_url = self._require_redirect_url()
        new_email = normalize_email(payload.new_email or "")
        if not is_valid_email(new_email):
            raise ValidationError("INVALID_EMAIL", "A valid new email address is required.")

        current_email = normalize_email(caller.profile.email or "")
        if current_email and current_email == new_email:
            raise ValidationError("EMAIL_SAME", "New email must be different from current email.")
        if self._access.is_platform_owner_email(current_email):
            raise AuthorizationError(
                "OWNER_EMAIL_CHANGE_BLOCKED", "The platform owner's email cannot be changed via self-service."
            )
        if self._store.find_profile_by_email(new_email, exclude_id=caller.user_id) is not None:
            raise ConflictError("EMAIL_ALREADY_IN_USE", "This email address is already in use.")

        try:
            self._gateway.request_email_change(payload.access_token, new_email, redirect_url)
        except IdentityGatewayError as exc:
            raise TransientExternalError("EMAIL_CHANGE_FAILED", exc.message) from exc

        audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=None,
            action="PROFILE_EMAIL_CHANGE_REQUESTED",
            resource="profiles",
            resource_id=caller.user_id,
            meta={"previous_email": current_email or None, "requested_email": new_email},
        )
        return AdminActionResult(
            code="EMAIL_CHANGE_REQUESTED",
            message="A confirmation email has been sent.",
            audit_error=audit_error,
        )

    def request_password_reset(self, caller: Caller) -> AdminActionResult:
        redirect_url = self._require_redirect_url()
        email = normalize_email(caller.profile.email or "")
        if not email:
            raise ValidationError("NO_EMAIL", "No email address is known for this user.")

        try:
            self._gateway.reset_password(email, redirect_url)
        except IdentityGatewayError as exc:
            raise TransientExternalError("PASSWORD_RESET_FAILED", exc.message) from exc

        audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=None,
            action="PROFILE_PASSWORD_RESET_REQUESTED",
            resource="profiles",
            resource_id=caller.user_id,
        )
        return AdminActionResult(
            code="PASSWORD_RESET_REQUESTED",
            message="A reset link has been sent to your email.",
            audit_error=audit_error,
        )

    def _require_redirect_url(self) -> str:
        if not self._redirect_url:
            logger.error("APP_ACCOUNT_SECURITY_REDIRECT_URL is not configured")
            raise OnboardingError("MISSING_REDIRECT_URL", "APP_ACCOUNT_SECURITY_REDIRECT_URL is required.")
        return self._redirect_url
