from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Iterable

import pytest

from onboarding.config import Settings
from onboarding.domain.errors import UniqueConstraintError
from onboarding.domain.models import (
    Account,
    AccountStatus,
    AuditEntry,
    GlobalRole,
    Identity,
    Invitation,
    InvitationStatus,
    Membership,
    MembershipRole,
    MembershipStatus,
    MemberView,
    Profile,
    SignupAttempt,
    TrialState,
)
from onboarding.identity.gateway import IdentityGatewayError
from onboarding.identity.lookup import normalize_email
from onboarding.main import build_services
from onboarding.security.signup_lock import NullSignupLock

ALREADY_REGISTERED = "A user with this email address has already been registered"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeRepository:
    """In-memory repository mimicking the Postgres-backed behaviours the services rely on."""

    def __init__(self) -> None:
        self.profiles: dict[str, Profile] = {}
        self.accounts: dict[str, Account] = {}
        self.memberships: dict[str, Membership] = {}
        self.invitations: dict[str, Invitation] = {}
        self.audit_log: list[AuditEntry] = []
        self.signup_attempts: list[SignupAttempt] = []
        self.fail_audit = False
        self.fail_invitation_insert = False
        self._lock = threading.Lock()
        self._seq = 0

    # -- seeding helpers --------------------------------------------------

    def add_profile(self, email: str, *, user_id: str | None = None, platform_admin: bool = False) -> Profile:
        profile = Profile(
            id=user_id or str(uuid.uuid4()),
            email=email,
            full_name=email.split("@")[0],
            global_role=GlobalRole.ADMIN.value if platform_admin else GlobalRole.USER.value,
        )
        self.profiles[profile.id] = profile
        return profile

    def add_account(self, name: str = "Acme", *, account_id: str | None = None, slug: str | None = None) -> Account:
        account = Account(id=account_id or str(uuid.uuid4()), name=name, slug=slug or name.lower(), created_at=self._tick())
        self.accounts[account.id] = account
        return account

    def add_membership(
        self,
        account_id: str,
        user_id: str,
        role: MembershipRole = MembershipRole.ADMIN,
        status: MembershipStatus = MembershipStatus.ACTIVE,
    ) -> Membership:
        membership = Membership(
            id=str(uuid.uuid4()),
            account_id=account_id,
            user_id=user_id,
            role=role,
            status=status,
            created_at=self._tick(),
        )
        self.memberships[membership.id] = membership
        return membership

    def _tick(self) -> datetime:
        self._seq += 1
        return datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._seq)

    # -- profiles ---------------------------------------------------------

    def get_profile(self, user_id: str) -> Profile | None:
        return self.profiles.get(user_id)

    def find_profile_by_email(self, email: str, *, exclude_id: str | None = None) -> Profile | None:
        for profile in self.profiles.values():
            if profile.id != exclude_id and normalize_email(profile.email or "") == normalize_email(email):
                return profile
        return None

    def update_profile(self, user_id: str, changes: dict[str, Any]) -> None:
        profile = self.profiles[user_id]
        self.profiles[user_id] = replace(profile, **changes)

    def count_platform_admins(self, *, exclude_id: str | None = None) -> int:
        return sum(1 for p in self.profiles.values() if p.is_platform_admin and p.id != exclude_id)

    # -- memberships ------------------------------------------------------

    def count_active_memberships(self, user_id: str) -> tuple[int, str | None]:
        active = sorted(
            (m for m in self.memberships.values() if m.user_id == user_id and m.status == MembershipStatus.ACTIVE),
            key=lambda m: m.created_at,
            reverse=True,
        )
        return len(active), active[0].account_id if active else None

    def get_membership(self, membership_id: str, account_id: str) -> Membership | None:
        membership = self.memberships.get(membership_id)
        if membership is None or membership.account_id != account_id:
            return None
        return replace(membership)

    def get_membership_for_user(self, account_id: str, user_id: str) -> Membership | None:
        for membership in self.memberships.values():
            if membership.account_id == account_id and membership.user_id == user_id:
                return membership
        return None

    def count_active_admins(self, account_id: str, *, exclude_user_id: str | None = None) -> int:
        return sum(
            1
            for m in self.memberships.values()
            if m.account_id == account_id and m.is_active_admin and m.user_id != exclude_user_id
        )

    def update_membership_role(self, membership_id: str, account_id: str, role: MembershipRole) -> bool:
        membership = self.memberships.get(membership_id)
        if membership is None or membership.account_id != account_id:
            return False
        membership.role = role
        return True

    def delete_membership(self, membership_id: str, account_id: str) -> bool:
        if self.get_membership(membership_id, account_id) is None:
            return False
        del self.memberships[membership_id]
        return True

    def delete_memberships_for_user(self, user_id: str) -> int:
        doomed = [m.id for m in self.memberships.values() if m.user_id == user_id]
        for membership_id in doomed:
            del self.memberships[membership_id]
        return len(doomed)

    def count_memberships_for_user(self, user_id: str) -> int:
        return sum(1 for m in self.memberships.values() if m.user_id == user_id)

    def list_members(self, account_id: str) -> list[MemberView]:
        return [
            MemberView(membership=m, profile=self.profiles.get(m.user_id))
            for m in self.memberships.values()
            if m.account_id == account_id
        ]

    def has_membership_with_status(
        self, account_id: str, user_id: str, statuses: Iterable[MembershipStatus]
    ) -> bool:
        wanted = set(statuses)
        return any(
            m.account_id == account_id and m.user_id == user_id and m.status in wanted
            for m in self.memberships.values()
        )

    # -- accounts ---------------------------------------------------------

    def get_account(self, account_id: str) -> Account | None:
        return self.accounts.get(account_id)

    def list_accounts(self) -> list[Account]:
        return sorted(self.accounts.values(), key=lambda a: a.created_at, reverse=True)

    def insert_account(
        self,
        *,
        name: str,
        slug: str,
        created_by: str | None = None,
        trial_started_at: datetime | None = None,
        trial_ends_at: datetime | None = None,
        trial_state: TrialState | None = None,
    ) -> Account:
        with self._lock:
            if any(a.slug == slug for a in self.accounts.values()):
                raise UniqueConstraintError("platform_accounts_slug_key")
            account = Account(
                id=str(uuid.uuid4()),
                name=name,
                slug=slug,
                status=AccountStatus.ACTIVE,
                trial_state=trial_state,
                trial_started_at=trial_started_at,
                trial_ends_at=trial_ends_at,
                created_by=created_by,
                created_at=self._tick(),
            )
            self.accounts[account.id] = account
            return account

    def update_account(self, account_id: str, changes: dict[str, Any]) -> Account | None:
        account = self.accounts.get(account_id)
        if account is None:
            return None
        if "slug" in changes and any(
            a.slug == changes["slug"] and a.id != account_id for a in self.accounts.values()
        ):
            raise UniqueConstraintError("platform_accounts_slug_key")
        updated = replace(account, **changes)
        self.accounts[account_id] = updated
        return updated

    def delete_account(self, account_id: str) -> bool:
        return self.accounts.pop(account_id, None) is not None

    def clear_user_references(self, user_id: str) -> None:
        for account_id, account in list(self.accounts.items()):
            if account.created_by == user_id or account.archived_by == user_id:
                self.accounts[account_id] = replace(
                    account,
                    created_by=None if account.created_by == user_id else account.created_by,
                    archived_by=None if account.archived_by == user_id else account.archived_by,
                )
        for invitation in self.invitations.values():
            if invitation.invited_by == user_id:
                invitation.invited_by = None

    # -- invitations ------------------------------------------------------

    def insert_invitation(
        self,
        *,
        account_id: str,
        email: str,
        role: MembershipRole,
        invited_by: str | None,
        expires_at: datetime,
        meta: dict[str, Any],
    ) -> Invitation:
        if self.fail_invitation_insert:
            raise RuntimeError("invitation insert failed")
        with self._lock:
            if self.find_pending_invitation(account_id, email) is not None:
                raise UniqueConstraintError("account_invitations_pending_email_key")
            invitation = Invitation(
                id=str(uuid.uuid4()),
                account_id=account_id,
                email=email,
                role=role,
                status=InvitationStatus.PENDING,
                expires_at=expires_at,
                created_at=self._tick(),
                invited_by=invited_by,
                meta=dict(meta),
            )
            self.invitations[invitation.id] = invitation
            return invitation

    def get_invitation(self, invitation_id: str, account_id: str) -> Invitation | None:
        invitation = self.invitations.get(invitation_id)
        if invitation is None or invitation.account_id != account_id:
            return None
        return replace(invitation, meta=dict(invitation.meta))

    def find_pending_invitation(self, account_id: str, email: str) -> Invitation | None:
        for invitation in self.invitations.values():
            if (
                invitation.account_id == account_id
                and invitation.status == InvitationStatus.PENDING
                and normalize_email(invitation.email) == normalize_email(email)
            ):
                return invitation
        return None

    def list_pending_invitations_for_email(self, email: str) -> list[Invitation]:
        return [
            i
            for i in self.invitations.values()
            if i.status == InvitationStatus.PENDING and normalize_email(i.email) == normalize_email(email)
        ]

    def transition_invitation(
        self,
        invitation_id: str,
        *,
        expected: InvitationStatus,
        target: InvitationStatus,
        meta: dict[str, Any] | None = None,
    ) -> Invitation | None:
        with self._lock:
            invitation = self.invitations.get(invitation_id)
            if invitation is None or invitation.status != expected:
                return None
            invitation.status = target
            if meta is not None:
                invitation.meta = dict(meta)
            return invitation

    def expire_invitations(self, invitation_ids: list[str]) -> int:
        expired = 0
        for invitation_id in invitation_ids:
            if self.transition_invitation(
                invitation_id, expected=InvitationStatus.PENDING, target=InvitationStatus.EXPIRED
            ):
                expired += 1
        return expired

    def revoke_pending_invitations_for_email(self, email: str) -> int:
        revoked = 0
        for invitation in self.list_pending_invitations_for_email(email):
            invitation.status = InvitationStatus.REVOKED
            revoked += 1
        return revoked

    def delete_invitations_for_account(self, account_id: str) -> int:
        doomed = [i.id for i in self.invitations.values() if i.account_id == account_id]
        for invitation_id in doomed:
            del self.invitations[invitation_id]
        return len(doomed)

    def count_invitations(self, account_id: str) -> int:
        return sum(1 for i in self.invitations.values() if i.account_id == account_id)

    # -- audit & signup log -----------------------------------------------

    def write_audit_entry(self, entry: AuditEntry) -> None:
        if self.fail_audit:
            raise RuntimeError("audit table unavailable")
        self.audit_log.append(entry)

    def insert_signup_attempt(self, attempt: SignupAttempt) -> None:
        self.signup_attempts.append(attempt)

    def count_signup_attempts(
        self,
        *,
        since: datetime,
        ip_hash: str | None = None,
        email_norm: str | None = None,
    ) -> int:
        return sum(
            1
            for a in self.signup_attempts
            if a.created_at >= since
            and (ip_hash is None or a.ip_hash == ip_hash)
            and (email_norm is None or a.email_norm == email_norm)
        )


class FakeIdentityGateway:
    """Identity provider double: inviting an email creates an unconfirmed identity."""

    def __init__(self) -> None:
        self.identities: dict[str, Identity] = {}
        self.invites: list[tuple[str, str, dict[str, Any]]] = []
        self.invite_errors: list[str] = []
        self.deleted: list[str] = []
        self.resets: list[str] = []
        self.credential_updates: list[tuple[str, str | None, str | None]] = []
        self.fail_delete: str | None = None
        self.fail_reset: str | None = None
        self.fail_lookup: str | None = None
        self.fail_email_change: str | None = None
        self.email_change_requests: list[tuple[str, str, str]] = []

    def add_identity(self, email: str, *, identity_id: str | None = None, confirmed: bool = False) -> Identity:
        identity = Identity(
            id=identity_id or str(uuid.uuid4()),
            email=email,
            email_confirmed_at="2026-01-01T00:00:00Z" if confirmed else None,
        )
        self.identities[identity.id] = identity
        return identity

    def find(self, email: str) -> Identity | None:
        for identity in self.identities.values():
            if normalize_email(identity.email or "") == normalize_email(email):
                return identity
        return None

    def list_identities(self, page: int, per_page: int) -> list[Identity]:
        if self.fail_lookup:
            raise IdentityGatewayError(self.fail_lookup, status_code=500)
        ordered = list(self.identities.values())
        start = (page - 1) * per_page
        return ordered[start : start + per_page]

    def get_identity_by_id(self, identity_id: str) -> Identity | None:
        if self.fail_lookup:
            raise IdentityGatewayError(self.fail_lookup, status_code=500)
        return self.identities.get(identity_id)

    def delete_identity(self, identity_id: str) -> None:
        if self.fail_delete:
            raise IdentityGatewayError(self.fail_delete, status_code=500)
        self.identities.pop(identity_id, None)
        self.deleted.append(identity_id)

    def send_invite(self, email: str, redirect_url: str, data: dict[str, Any]) -> None:
        if self.invite_errors:
            raise IdentityGatewayError(self.invite_errors.pop(0), status_code=422)
        if self.find(email) is not None:
            raise IdentityGatewayError(ALREADY_REGISTERED, status_code=422)
        self.add_identity(email)
        self.invites.append((email, redirect_url, data))

    def reset_password(self, email: str, redirect_url: str) -> None:
        if self.fail_reset:
            raise IdentityGatewayError(self.fail_reset, status_code=500)
        self.resets.append(email)

    def request_email_change(self, access_token: str, new_email: str, redirect_url: str) -> None:
        if self.fail_email_change:
            raise IdentityGatewayError(self.fail_email_change, status_code=500)
        self.email_change_requests.append((access_token, new_email, redirect_url))

    def update_credentials(
        self,
        identity_id: str,
        *,
        email: str | None = None,
        password: str | None = None,
    ) -> None:
        self.credential_updates.append((identity_id, email, password))
        identity = self.identities.get(identity_id)
        if identity is not None and email is not None:
            identity.email = email


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "invite_redirect_url": "https://app.example.com/auth/accept-invite",
        "password_reset_redirect_url": "https://app.example.com/auth/reset-password",
        "account_security_redirect_url": "https://app.example.com/account/security",
        "platform_owner_email": "owner@example.com",
        "self_signup_enabled": True,
        "self_signup_ip_hash_salt": "pepper",
        "self_signup_send_invite": False,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def gateway() -> FakeIdentityGateway:
    return FakeIdentityGateway()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def make_services(repo, gateway, clock, sleeps):
    """Build the service graph over the shared fakes, optionally with settings overrides."""

    def factory(lock=None, **overrides: Any) -> SimpleNamespace:
        state = SimpleNamespace()
        build_services(
            state,
            make_settings(**overrides),
            repository=repo,
            gateway=gateway,
            lock=lock or NullSignupLock(),
            clock=clock,
            sleep=sleeps.append,
        )
        return state

    return factory


@pytest.fixture
def services(make_services) -> SimpleNamespace:
    return make_services()


@pytest.fixture
def account(repo) -> Account:
    return repo.add_account("Acme", account_id="acct-1", slug="acme")


@pytest.fixture
def platform_admin(repo, gateway) -> Profile:
    profile = repo.add_profile("root@example.com", user_id="platform-admin", platform_admin=True)
    gateway.add_identity(profile.email, identity_id=profile.id, confirmed=True)
    return profile


@pytest.fixture
def account_admin(repo, gateway, account) -> Profile:
    profile = repo.add_profile("boss@acme.example.com", user_id="account-admin")
    gateway.add_identity(profile.email, identity_id=profile.id, confirmed=True)
    repo.add_membership(account.id, profile.id, MembershipRole.ADMIN)
    return profile
