from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class GlobalRole(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    ARCHIVED = "ARCHIVED"


class TrialState(str, Enum):
    TRIAL_ACTIVE = "TRIAL_ACTIVE"
    SUBSCRIBED = "SUBSCRIBED"


class MembershipRole(str, Enum):
    ADMIN = "ADMIN"
    DISPATCH = "DISPATCH"
    VIEWER = "VIEWER"


class MembershipStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INVITED = "INVITED"


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class InvitationSource(str, Enum):
    ADMIN_INVITE = "invite-account-user"
    ADMIN_RESEND = "admin-manage-invitation-v1"
    PLATFORM_PROVISION = "platform-provision-account"
    SELF_REGISTER = "self_register_trial"


@dataclass(slots=True)
class Identity:
    """Login identity held by the identity store."""

    id: str
    email: str | None
    email_confirmed_at: datetime | str | None = None

    @property
    def is_confirmed(self) -> bool:
        return bool(self.email_confirmed_at)


@dataclass(slots=True)
class Profile:
    id: str
    email: str | None
    full_name: str | None = None
    global_role: str | None = None

    @property
    def is_platform_admin(self) -> bool:
        return self.global_role == GlobalRole.ADMIN.value


@dataclass(slots=True)
class Account:
    """Tenant account (company) on the platform."""

    id: str
    name: str
    slug: str
    status: AccountStatus = AccountStatus.ACTIVE
    trial_state: TrialState | None = None
    trial_started_at: datetime | None = None
    trial_ends_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    archived_at: datetime | None = None
    archived_by: str | None = None


@dataclass(slots=True)
class Membership:
    id: str
    account_id: str
    user_id: str
    role: MembershipRole
    status: MembershipStatus
    created_at: datetime | None = None

    @property
    def is_active_admin(self) -> bool:
        return self.status == MembershipStatus.ACTIVE and self.role == MembershipRole.ADMIN


@dataclass(slots=True)
class Invitation:
    """Invitation row linking an email to a pending role in an account."""

    id: str
    account_id: str
    email: str
    role: MembershipRole
    status: InvitationStatus
    expires_at: datetime
    created_at: datetime
    invited_by: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        raw = self.meta.get("source") if isinstance(self.meta, dict) else None
        if isinstance(raw, str) and raw.strip():
            return raw.strip()
        return "unknown"

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(slots=True)
class AuditEntry:
    admin_user_id: str | None
    target_account_id: str | None
    action: str
    resource: str
    resource_id: str | None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SignupAttempt:
    ip_hash: str
    result_code: str
    email_norm: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class TargetState:
    """Consolidated view of an email across the identity and relational stores."""

    email: str
    profile_id: str | None
    identity_id: str | None
    is_email_confirmed: bool
    active_membership_count: int
    active_membership_account_id: str | None
    can_delete_ghost: bool

    @property
    def exists(self) -> bool:
        return bool(self.profile_id or self.identity_id)


@dataclass(slots=True)
class MemberView:
    """Membership joined with the member's profile, used for overviews."""

    membership: Membership
    profile: Profile | None
