"""Invitation lifecycle: create, revoke and resend with compensating rollback."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from ..identity.lookup import is_valid_email, normalize_email
from .access import AccessControl, Caller
from .audit import AuditTrail
from .contracts import CreateInvitationInput, InvitationResult, ManageInvitationInput
from .errors import (
    ConflictError,
    NotFoundError,
    OnboardingError,
    TransientExternalError,
    UniqueConstraintError,
    ValidationError,
)
from .models import (
    Account,
    Invitation,
    InvitationSource,
    InvitationStatus,
    MembershipRole,
    TargetState,
)
from .retry import (
    BLOCKER_ACTIVE_MEMBERSHIP,
    BLOCKER_CONFIRMED_USER,
    BLOCKER_MESSAGES,
    InviteRetryEngine,
)
from .targets import GhostUserReaper, InvitationTargetResolver

logger = logging.getLogger(__name__)

GHOST_DELETE_FAILED = "GHOST_USER_DELETE_FAILED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvitationStore(Protocol):
    def get_account(self, account_id: str) -> Account | None: ...

    def get_invitation(self, invitation_id: str, account_id: str) -> Invitation | None: ...

    def find_pending_invitation(self, account_id: str, email: str) -> Invitation | None: ...

    def insert_invitation(
        self,
        *,
        account_id: str,
        email: str,
        role: MembershipRole,
        invited_by: str | None,
        expires_at: datetime,
        meta: dict[str, Any],
    ) -> Invitation: ...

    def transition_invitation(
        self,
        invitation_id: str,
        *,
        expected: InvitationStatus,
        target: InvitationStatus,
        meta: dict[str, Any] | None = None,
    ) -> Invitation | None: ...


class InvitationLifecycleManager:
    """Create, revoke and resend account invitations.

    The invitation row and the identity store are updated by separate calls, so
    every multi-step path pairs its forward step with an explicit compensating
    step. Concurrent revoke/resend calls are serialized only by the conditional
    ``status = PENDING`` update in the store.
    """

    def __init__(
        self,
        store: InvitationStore,
        access: AccessControl,
        resolver: InvitationTargetResolver,
        reaper: GhostUserReaper,
        engine: InviteRetryEngine,
        audit: AuditTrail,
        *,
        redirect_url: str,
        ttl_days: int = 7,
        max_retries: int = 2,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._access = access
        self._resolver = resolver
        self._reaper = reaper
        self._engine = engine
        self._audit = audit
        self._redirect_url = redirect_url
        self._ttl = timedelta(days=ttl_days)
        self._max_retries = max_retries
        self._clock = clock

    def create(
        self,
        caller: Caller,
        payload: CreateInvitationInput,
        *,
        source: InvitationSource = InvitationSource.ADMIN_INVITE,
    ) -> InvitationResult:
        email = normalize_email(payload.email or "")
        if not payload.account_id or not email:
            raise ValidationError("INVALID_INPUT", "account_id and email are required.")
        if not is_valid_email(email):
            raise ValidationError("INVALID_EMAIL", "email is not a valid address.")
        try:
            role = MembershipRole(payload.role)
        except ValueError as exc:
            raise ValidationError("INVALID_ROLE", "role must be ADMIN, DISPATCH or VIEWER.") from exc

        self._access.require_account_admin(caller, payload.account_id)
        account = self._store.get_account(payload.account_id)
        if account is None:
            raise NotFoundError("ACCOUNT_NOT_FOUND")

        target = self._resolver.resolve(email)
        self._ensure_invitable(target, account.id)
        self._ensure_not_pending(account.id, email)

        invitation = self._insert(
            account_id=account.id,
            email=email,
            role=role,
            invited_by=caller.user_id,
            meta={"source": source.value},
        )
        result = self._deliver(invitation, account)
        result.audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=account.id,
            action="INVITATION_CREATED",
            resource="account_invitations",
            resource_id=invitation.id,
            meta={
                "invitation_id": invitation.id,
                "invitation_email": email,
                "invitation_role": role.value,
                "source": source.value,
                "email_sent": result.email_sent,
                "attempts": result.attempts,
                "deleted_ghost_user": result.deleted_ghost,
                "blocker_code": result.blocker_code,
                "rolled_back": result.rolled_back,
            },
        )
        return result

    def revoke(self, caller: Caller, payload: ManageInvitationInput) -> InvitationResult:
        invitation, target = self._load_pending(caller, payload)
        self._revoke_row(invitation, caller, action="DELETE", reason=payload.reason)
        deleted_ghost, warning_code = self._reap_or_warn(target)

        result = InvitationResult(
            ok=True,
            code=warning_code,
            message=_revoke_warning(warning_code),
            invitation_id=invitation.id,
            deleted_ghost=deleted_ghost,
        )
        result.audit_error = self._audit_managed(
            caller, invitation, action="DELETE", reason=payload.reason, result=result, warning_code=warning_code
        )
        return result

    def resend(self, caller: Caller, payload: ManageInvitationInput) -> InvitationResult:
        invitation, target = self._load_pending(caller, payload)
        account = self._store.get_account(invitation.account_id)
        if account is None:
            raise NotFoundError("ACCOUNT_NOT_FOUND")

        self._revoke_row(invitation, caller, action="RESEND", reason=payload.reason)
        deleted_ghost, warning_code = self._reap_or_warn(target)

        if warning_code in BLOCKER_MESSAGES:
            result = InvitationResult(
                ok=True,
                code=warning_code,
                message=BLOCKER_MESSAGES[warning_code],
                invitation_id=invitation.id,
                account_name=account.name,
                email_sent=False,
                deleted_ghost=deleted_ghost,
                blocker_code=warning_code,
            )
        else:
            replacement = self._insert(
                account_id=account.id,
                email=normalize_email(invitation.email),
                role=invitation.role,
                invited_by=caller.user_id,
                meta={
                    "source": InvitationSource.ADMIN_RESEND.value,
                    "replaced_invitation_id": invitation.id,
                    "reason": payload.reason,
                },
            )
            result = self._deliver(replacement, account)
            result.new_invitation_id = replacement.id
            result.invitation_id = invitation.id
            result.deleted_ghost = result.deleted_ghost or deleted_ghost
            if result.ok and result.email_sent:
                result.message = "Invitation was sent again."

        result.audit_error = self._audit_managed(
            caller, invitation, action="RESEND", reason=payload.reason, result=result, warning_code=warning_code
        )
        return result

    def _ensure_invitable(self, target: TargetState, account_id: str) -> None:
        if target.active_membership_count > 0:
            if target.active_membership_account_id == account_id:
                raise ConflictError("USER_ALREADY_ACTIVE_IN_ACCOUNT", "The user is already active in this account.")
            raise ConflictError(
                "USER_ALREADY_ACTIVE_IN_ANOTHER_ACCOUNT", "The user is already active in another account."
            )
        if target.is_email_confirmed:
            raise ConflictError(BLOCKER_CONFIRMED_USER, BLOCKER_MESSAGES[BLOCKER_CONFIRMED_USER])

    def _ensure_not_pending(self, account_id: str, email: str) -> None:
        pending = self._store.find_pending_invitation(account_id, email)
        if pending is None:
            return
        if pending.is_expired(self._clock()):
            self._store.transition_invitation(
                pending.id, expected=InvitationStatus.PENDING, target=InvitationStatus.EXPIRED
            )
            return
        raise ConflictError("INVITE_ALREADY_PENDING", "A pending invitation already exists for this email.")

    def _insert(
        self,
        *,
        account_id: str,
        email: str,
        role: MembershipRole,
        invited_by: str | None,
        meta: dict[str, Any],
    ) -> Invitation:
        try:
            return self._store.insert_invitation(
                account_id=account_id,
                email=email,
                role=role,
                invited_by=invited_by,
                expires_at=self._clock() + self._ttl,
                meta=meta,
            )
        except UniqueConstraintError as exc:
            raise ConflictError(
                "INVITE_ALREADY_PENDING", "A pending invitation already exists for this email."
            ) from exc

    def _deliver(self, invitation: Invitation, account: Account) -> InvitationResult:
        try:
            send = self._engine.send(
                invitation.email,
                self._redirect_url,
                {
                    "invited_account_id": account.id,
                    "invited_role": invitation.role.value,
                    "invitation_id": invitation.id,
                },
                max_retries=self._max_retries,
            )
        except OnboardingError as exc:
            # Lookups and deletes only run after a duplicate-registration error.
            self._roll_back(invitation, reason=exc.code, error=exc.message, attempts=None)
            return InvitationResult(
                ok=False,
                code=exc.code,
                message=exc.message,
                invitation_id=invitation.id,
                account_name=account.name,
                email_sent=False,
                rolled_back=True,
            )
        result = InvitationResult(
            ok=True,
            invitation_id=invitation.id,
            account_name=account.name,
            email_sent=send.email_sent,
            attempts=send.attempts,
            deleted_ghost=send.deleted_ghost,
            blocker_code=send.blocker_code,
        )
        if send.should_roll_back:
            self._roll_back(
                invitation,
                reason=send.blocker_code or "EMAIL_ALREADY_REGISTERED",
                error=send.error_message,
                attempts=send.attempts,
            )
            result.ok = False
            result.rolled_back = True
            result.code = send.blocker_code or "EMAIL_ALREADY_REGISTERED"
            result.message = send.blocker_message or send.error_message
        elif not send.email_sent:
            result.code = "INVITATION_CREATED_EMAIL_FAILED"
            result.message = send.error_message
        return result

    def _roll_back(
        self, invitation: Invitation, *, reason: str, error: str | None, attempts: int | None
    ) -> None:
        meta = {
            **invitation.meta,
            "rollback_reason": reason,
            "rollback_error": error,
            "rollback_attempts": attempts,
            "rolled_back_at": self._clock().isoformat(),
        }
        reverted = self._store.transition_invitation(
            invitation.id, expected=InvitationStatus.PENDING, target=InvitationStatus.REVOKED, meta=meta
        )
        if reverted is None:
            logger.warning("invitation %s left its PENDING state before rollback", invitation.id)
        else:
            logger.warning(
                "invitation %s rolled back to REVOKED (%s)", invitation.id, meta["rollback_reason"]
            )

    def _load_pending(self, caller: Caller, payload: ManageInvitationInput) -> tuple[Invitation, TargetState]:
        if not payload.account_id or not payload.invitation_id:
            raise ValidationError("INVALID_INPUT", "account_id and invitation_id are required.")
        self._access.require_account_admin(caller, payload.account_id)
        invitation = self._store.get_invitation(payload.invitation_id, payload.account_id)
        if invitation is None:
            raise NotFoundError("INVITATION_NOT_FOUND")
        if invitation.status != InvitationStatus.PENDING:
            raise ConflictError("INVITATION_NOT_PENDING")
        # Resolved once, before the revoke, so ghost eligibility reflects the pre-mutation state.
        target = self._resolver.resolve(invitation.email)
        return invitation, target

    def _revoke_row(self, invitation: Invitation, caller: Caller, *, action: str, reason: str | None) -> None:
        meta = {
            **invitation.meta,
            "managed_action": action,
            "managed_at": self._clock().isoformat(),
            "managed_by": caller.user_id,
            "managed_reason": reason,
            "managed_source": InvitationSource.ADMIN_RESEND.value,
        }
        revoked = self._store.transition_invitation(
            invitation.id, expected=InvitationStatus.PENDING, target=InvitationStatus.REVOKED, meta=meta
        )
        if revoked is None:
            raise ConflictError("INVITATION_NOT_PENDING")

    def _reap_or_warn(self, target: TargetState) -> tuple[bool, str | None]:
        if target.can_delete_ghost:
            try:
                return self._reaper.reap(target), None
            except TransientExternalError as exc:
                logger.warning("ghost identity for invitation target not deleted: %s", exc.message)
                return False, GHOST_DELETE_FAILED
        if not target.exists:
            return False, None
        if target.active_membership_count > 0:
            return False, BLOCKER_ACTIVE_MEMBERSHIP
        if target.is_email_confirmed:
            return False, BLOCKER_CONFIRMED_USER
        return False, None

    def _audit_managed(
        self,
        caller: Caller,
        invitation: Invitation,
        *,
        action: str,
        reason: str | None,
        result: InvitationResult,
        warning_code: str | None,
    ) -> str | None:
        return self._audit.record(
            actor_id=caller.user_id,
            account_id=invitation.account_id,
            action="INVITATION_RESENT" if action == "RESEND" else "INVITATION_REVOKED",
            resource="account_invitations",
            resource_id=invitation.id,
            meta={
                "invitation_id": invitation.id,
                "invitation_email": invitation.email,
                "invitation_role": invitation.role.value,
                "action": action,
                "reason": reason,
                "deleted_ghost_user": result.deleted_ghost,
                "warning_code": warning_code,
                "blocker_code": result.blocker_code,
                "new_invitation_id": result.new_invitation_id,
                "email_sent": result.email_sent,
                "rolled_back": result.rolled_back,
            },
        )


def _revoke_warning(warning_code: str | None) -> str | None:
    if warning_code == BLOCKER_ACTIVE_MEMBERSHIP:
        return "Invitation revoked; the existing active user was not deleted."
    if warning_code == BLOCKER_CONFIRMED_USER:
        return "Invitation revoked; the confirmed user was kept and needs manual review."
    if warning_code == GHOST_DELETE_FAILED:
        return "Invitation revoked; the unconfirmed user could not be deleted."
    return None
