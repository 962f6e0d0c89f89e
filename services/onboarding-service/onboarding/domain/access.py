"""Caller resolution and role-based access checks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ..identity.lookup import normalize_email
from .errors import AuthorizationError, OnboardingError
from .models import Membership, Profile


class AccessStore(Protocol):
    def get_profile(self, user_id: str) -> Profile | None: ...

    def get_membership_for_user(self, account_id: str, user_id: str) -> Membership | None: ...


@dataclass(slots=True)
class Caller:
    user_id: str
    profile: Profile

    @property
    def is_platform_admin(self) -> bool:
        """Whether the caller holds the global ADMIN role."""
        return self.profile.is_platform_admin


class AccessControl:
    """Answer "may this caller act on this account" questions."""

    def __init__(self, store: AccessStore, owner_email: str = "") -> None:
        self._store = store
        self._owner_email = normalize_email(owner_email) if owner_email else ""

    def load_caller(self, user_id: str) -> Caller:
        """Load the caller's profile; callers without one are forbidden."""
        profile = self._store.get_profile(user_id)
        if profile is None:
            raise AuthorizationError("FORBIDDEN")
        return Caller(user_id=user_id, profile=profile)

    def require_platform_admin(self, caller: Caller) -> None:
        """Raise ``FORBIDDEN`` unless the caller is a platform admin."""
        if not caller.is_platform_admin:
            raise AuthorizationError("FORBIDDEN")

    def require_platform_owner(self, caller: Caller) -> None:
        """Raise unless the caller is the configured platform owner."""
        if not self._owner_email:
            raise OnboardingError("MISSING_PLATFORM_OWNER_EMAIL", "PLATFORM_OWNER_EMAIL is not configured.")
        caller_email = normalize_email(caller.profile.email or "")
        if not caller.is_platform_admin or caller_email != self._owner_email:
            raise AuthorizationError("FORBIDDEN")

    def require_account_admin(self, caller: Caller, account_id: str) -> None:
        """Platform admins pass; everyone else needs an ACTIVE ADMIN membership in the account."""
        if caller.is_platform_admin:
            return
        membership = self._store.get_membership_for_user(account_id, caller.user_id)
        if membership is None or not membership.is_active_admin:
            raise AuthorizationError("FORBIDDEN")

    def is_platform_owner_email(self, email: str | None) -> bool:
        """Whether ``email`` is the configured platform owner address."""
        return bool(self._owner_email) and normalize_email(email or "") == self._owner_email
