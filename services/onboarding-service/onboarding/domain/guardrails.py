"""Last-admin safety rules checked right before role and membership mutations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from .access import Caller
from .errors import AuthorizationError, ConflictError
from .models import Membership, MembershipRole, Profile

logger = logging.getLogger(__name__)


class GuardrailStore(Protocol):
    def get_profile(self, user_id: str) -> Profile | None: ...

    def count_active_admins(self, account_id: str, *, exclude_user_id: str | None = None) -> int: ...

    def count_platform_admins(self, *, exclude_id: str | None = None) -> int: ...


@dataclass(slots=True)
class GuardrailDecision:
    remaining_admins: int | None = None
    overridden: bool = False


class MembershipGuardrails:
    """Policy checks shared by role changes, membership removal and user deletion.

    Counts are taken immediately before the caller's mutation to keep the race
    window small; the two stores offer no serializable isolation.
    """

    def __init__(self, store: GuardrailStore) -> None:
        self._store = store

    def ensure_can_modify_member(self, caller: Caller, user_id: str) -> Profile | None:
        """Account-scoped admins may not touch a platform administrator."""
        target = self._store.get_profile(user_id)
        if target is not None and target.is_platform_admin and not caller.is_platform_admin:
            raise AuthorizationError(
                "FORBIDDEN", "Platform admin memberships can only be changed by platform admins."
            )
        return target

    def ensure_role_change_allowed(
        self,
        caller: Caller,
        membership: Membership,
        next_role: MembershipRole,
        *,
        override: bool = False,
    ) -> GuardrailDecision:
        """Reject demoting the last active admin unless a platform admin overrides."""
        if not membership.is_active_admin or next_role == MembershipRole.ADMIN:
            return GuardrailDecision()
        return self._ensure_admin_remains(caller, membership, override=override)

    def ensure_removal_allowed(
        self,
        caller: Caller,
        membership: Membership,
        *,
        override: bool = False,
    ) -> GuardrailDecision:
        """Reject removing the last active admin unless a platform admin overrides."""
        if not membership.is_active_admin:
            return GuardrailDecision()
        return self._ensure_admin_remains(caller, membership, override=override)

    def ensure_platform_admin_deletable(self, caller: Caller, target: Profile | None) -> None:
        """Reject deleting the last platform admin."""
        if target is None or not target.is_platform_admin:
            return
        if not caller.is_platform_admin:
            raise AuthorizationError("FORBIDDEN")
        if self._store.count_platform_admins(exclude_id=target.id) < 1:
            raise ConflictError("LAST_PLATFORM_ADMIN_FORBIDDEN", "The last platform admin cannot be deleted.")

    def _ensure_admin_remains(
        self, caller: Caller, membership: Membership, *, override: bool
    ) -> GuardrailDecision:
        remaining = self._store.count_active_admins(membership.account_id, exclude_user_id=membership.user_id)
        if remaining >= 1:
            return GuardrailDecision(remaining_admins=remaining)
        if override and caller.is_platform_admin:
            # Re-count so the override is only taken when the account really has no other admin.
            remaining = self._store.count_active_admins(
                membership.account_id, exclude_user_id=membership.user_id
            )
            if remaining < 1:
                logger.warning(
                    "platform admin %s overrides last-admin rule on account %s",
                    caller.user_id,
                    membership.account_id,
                )
                return GuardrailDecision(remaining_admins=remaining, overridden=True)
            return GuardrailDecision(remaining_admins=remaining)
        raise ConflictError(
            "LAST_ACCOUNT_ADMIN_FORBIDDEN", "The last active admin of an account cannot be removed."
        )
