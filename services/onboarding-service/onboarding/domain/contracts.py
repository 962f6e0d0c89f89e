"""Domain-level request contracts and results shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .models import AccountStatus, MembershipRole


@dataclass(slots=True)
class CreateInvitationInput:
    """Validated inputs required to invite an email into an account."""

    account_id: str
    email: str
    role: MembershipRole = MembershipRole.VIEWER


@dataclass(slots=True)
class ManageInvitationInput:
    account_id: str
    invitation_id: str
    reason: str | None = None


@dataclass(slots=True)
class RegisterTrialInput:
    """Raw public registration form plus request fingerprint."""

    full_name: str = ""
    company_name: str = ""
    email: str = ""
    honeypot: str = ""
    ip_address: str = "unknown"
    user_agent: str = ""


@dataclass(slots=True)
class ProvisionAccountInput:
    account_name: str
    admin_email: str
    account_slug: str | None = None


@dataclass(slots=True)
class UpdateMembershipRoleInput:
    account_id: str
    membership_id: str
    role: MembershipRole
    reason: str | None = None
    override_last_admin: bool = False


@dataclass(slots=True)
class RemoveMembershipInput:
    account_id: str
    membership_id: str
    reason: str | None = None
    override_last_admin: bool = False


@dataclass(slots=True)
class DeleteUserInput:
    user_id: str
    account_id: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class UpdateUserInput:
    """``None`` means "not provided"; an empty ``full_name`` clears the name."""

    account_id: str
    user_id: str
    full_name: str | None = None
    email: str | None = None
    password: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class UpdateAccountInput:
    account_id: str
    name: str | None = None
    slug: str | None = None
    status: AccountStatus | None = None
    reason: str | None = None


@dataclass(slots=True)
class DeleteAccountInput:
    account_id: str
    dry_run: bool = False
    confirm_slug: str = ""
    reason: str | None = None


@dataclass(slots=True)
class PasswordResetInput:
    account_id: str
    email: str


@dataclass(slots=True)
class EmailChangeInput:
    """Self-service email change, carried out under the caller's own session."""

    access_token: str
    new_email: str


@dataclass(slots=True)
class InvitationResult:
    """Outcome of create/revoke/resend; ``ok`` is False only when the invite was rolled back."""

    ok: bool
    code: str | None = None
    message: str | None = None
    invitation_id: str | None = None
    account_name: str | None = None
    email_sent: bool | None = None
    attempts: int = 0
    deleted_ghost: bool = False
    blocker_code: str | None = None
    rolled_back: bool = False
    new_invitation_id: str | None = None
    audit_error: str | None = None


@dataclass(slots=True)
class RegistrationResult:
    ok: bool
    code: str
    message: str
    account_id: str | None = None
    account_slug: str | None = None
    reused_pending: bool | None = None
    existing_invitation_id: str | None = None
    email_sent: bool | None = None


@dataclass(slots=True)
class AdminActionResult:
    """Result of an administrative mutation; ``data`` is rendered as-is to callers."""

    code: str | None = None
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    audit_error: str | None = None
