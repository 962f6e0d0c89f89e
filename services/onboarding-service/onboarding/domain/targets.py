"""Cross-store resolution of an email's identity/membership state, and ghost cleanup."""

from __future__ import annotations

import logging
from typing import Protocol

from ..identity.gateway import IdentityGateway, IdentityGatewayError
from ..identity.lookup import IdentityEmailLookup, normalize_email
from .errors import TransientExternalError
from .models import Identity, Profile, TargetState

logger = logging.getLogger(__name__)


class TargetStore(Protocol):
    def find_profile_by_email(self, email: str, *, exclude_id: str | None = None) -> Profile | None: ...

    def count_active_memberships(self, user_id: str) -> tuple[int, str | None]: ...


class InvitationTargetResolver:
    """Produce a :class:`TargetState` for an email without side effects."""

    def __init__(self, store: TargetStore, gateway: IdentityGateway, email_lookup: IdentityEmailLookup) -> None:
        self._store = store
        self._gateway = gateway
        self._email_lookup = email_lookup

    def resolve(self, email: str) -> TargetState:
        """Resolve profile, identity and active membership count for ``email``.

        A "not found" answer from the identity store counts as absence. Any other
        lookup failure is raised as :class:`TransientExternalError`.
        """
        normalized = normalize_email(email)

        try:
            profile = self._store.find_profile_by_email(normalized)
        except Exception as exc:
            raise TransientExternalError("LOOKUP_FAILED", f"profile lookup failed: {exc}") from exc
        profile_id = profile.id if profile else None

        identity: Identity | None = None
        try:
            if profile_id:
                identity = self._gateway.get_identity_by_id(profile_id)
            if identity is None:
                identity = self._email_lookup.find_by_email(normalized)
        except IdentityGatewayError as exc:
            if not exc.is_not_found:
                raise TransientExternalError(
                    "LOOKUP_FAILED", f"identity lookup failed: {exc.message}"
                ) from exc
            identity = None

        membership_user_id = profile_id or (identity.id if identity else None)
        active_count = 0
        active_account_id: str | None = None
        if membership_user_id:
            try:
                active_count, active_account_id = self._store.count_active_memberships(membership_user_id)
            except Exception as exc:
                raise TransientExternalError(
                    "LOOKUP_FAILED", f"active membership lookup failed: {exc}"
                ) from exc

        is_confirmed = bool(identity and identity.is_confirmed)
        return TargetState(
            email=normalized,
            profile_id=profile_id,
            identity_id=identity.id if identity else None,
            is_email_confirmed=is_confirmed,
            active_membership_count=active_count,
            active_membership_account_id=active_account_id,
            can_delete_ghost=bool(identity) and not is_confirmed and active_count == 0,
        )


class GhostUserReaper:
    """Delete an unconfirmed, unreferenced identity once the caller has proven it is a ghost."""

    def __init__(self, gateway: IdentityGateway) -> None:
        self._gateway = gateway

    def reap(self, target: TargetState) -> bool:
        if not target.identity_id or not target.can_delete_ghost:
            return False
        try:
            self._gateway.delete_identity(target.identity_id)
        except IdentityGatewayError as exc:
            raise TransientExternalError(
                "GHOST_USER_DELETE_FAILED", f"ghost user delete failed: {exc.message}"
            ) from exc
        logger.info("ghost identity %s removed for pending onboarding", target.identity_id)
        return True
