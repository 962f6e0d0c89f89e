"""Administrative mutations over accounts, memberships and users."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from ..identity.gateway import IdentityGateway, IdentityGatewayError
from ..identity.lookup import is_valid_email, normalize_email
from ..repository import OnboardingRepository
from .access import AccessControl, Caller
from .accounts import slugify
from .audit import AuditTrail
from .contracts import (
    AdminActionResult,
    CreateInvitationInput,
    DeleteAccountInput,
    DeleteUserInput,
    PasswordResetInput,
    ProvisionAccountInput,
    RemoveMembershipInput,
    UpdateAccountInput,
    UpdateMembershipRoleInput,
    UpdateUserInput,
)
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    OnboardingError,
    TransientExternalError,
    UniqueConstraintError,
    ValidationError,
)
from .guardrails import MembershipGuardrails
from .invitations import InvitationLifecycleManager, utcnow
from .models import AccountStatus, InvitationSource, MembershipRole, MembershipStatus

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


class AccountAdministration:
    """Platform and account administrator operations.

    Every mutation goes through :class:`MembershipGuardrails` where it can
    affect who administers an account, and records an audit entry whose failure
    is reported through ``audit_error`` rather than raised.
    """

    def __init__(
        self,
        store: OnboardingRepository,
        gateway: IdentityGateway,
        access: AccessControl,
        guardrails: MembershipGuardrails,
        invitations: InvitationLifecycleManager,
        audit: AuditTrail,
        *,
        password_reset_redirect_url: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._access = access
        self._guardrails = guardrails
        self._invitations = invitations
        self._audit = audit
        self._reset_redirect_url = password_reset_redirect_url
        self._clock = clock

    # -- accounts ---------------------------------------------------------

    def provision_account(self, caller: Caller, payload: ProvisionAccountInput) -> AdminActionResult:
        """Create an account and invite its first administrator.

        The account is removed again when the administrator cannot be invited,
        so a provisioning request never leaves an account nobody can join.
        """
        self._access.require_platform_admin(caller)
        name = (payload.account_name or "").strip()
        email = normalize_email(payload.admin_email or "")
        slug = slugify(payload.account_slug or name)
        if not name or not email or not slug:
            raise ValidationError("INVALID_INPUT", "account_name, account_slug and admin_email are required.")
        if not is_valid_email(email):
            raise ValidationError("INVALID_EMAIL")

        try:
            account = self._store.insert_account(name=name, slug=slug, created_by=caller.user_id)
        except UniqueConstraintError as exc:
            raise ConflictError("ACCOUNT_SLUG_EXISTS", f"Slug {slug!r} is already taken.") from exc

        try:
            invite = self._invitations.create(
                caller,
                CreateInvitationInput(account_id=account.id, email=email, role=MembershipRole.ADMIN),
                source=InvitationSource.PLATFORM_PROVISION,
            )
        except OnboardingError:
            self._discard_account(account.id)
            raise
        if not invite.ok:
            self._discard_account(account.id)
            raise ConflictError(invite.code, invite.message, meta={"blocker_code": invite.blocker_code})

        code = None if invite.email_sent else "ACCOUNT_CREATED_EMAIL_FAILED"
        audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=account.id,
            action="ACCOUNT_PROVISIONED",
            resource="platform_accounts",
            resource_id=account.id,
            meta={
                "account_name": account.name,
                "admin_email": email,
                "invitation_id": invite.invitation_id,
                "email_sent": invite.email_sent,
            },
        )
        return AdminActionResult(
            code=code,
            message=invite.message if code else None,
            data={
                "account_id": account.id,
                "account_name": account.name,
                "account_slug": account.slug,
                "invitation_id": invite.invitation_id,
                "email_sent": invite.email_sent,
            },
            audit_error=audit_error or invite.audit_error,
        )

    def update_account(self, caller: Caller, payload: UpdateAccountInput) -> AdminActionResult:
        self._access.require_platform_owner(caller)
        account = self._store.get_account(payload.account_id)
        if account is None:
            raise NotFoundError("ACCOUNT_NOT_FOUND")

        changes: dict[str, Any] = {}
        if payload.name is not None:
            name = payload.name.strip()
            if not name:
                raise ValidationError("INVALID_INPUT", "name must not be empty.")
            changes["name"] = name
        if payload.slug is not None:
            slug = slugify(payload.slug)
            if not slug:
                raise ValidationError("INVALID_INPUT", "slug must not be empty.")
            changes["slug"] = slug
        if payload.status is not None:
            try:
                status = AccountStatus(payload.status)
            except ValueError as exc:
                raise ValidationError("INVALID_STATUS") from exc
            changes["status"] = status
            if status == AccountStatus.ARCHIVED:
                changes["archived_at"] = self._clock()
                changes["archived_by"] = caller.user_id
            else:
                changes["archived_at"] = None
                changes["archived_by"] = None
        if not changes:
            raise ValidationError("NOTHING_TO_UPDATE")

        try:
            updated = self._store.update_account(account.id, changes)
        except UniqueConstraintError as exc:
            raise ConflictError("ACCOUNT_SLUG_EXISTS") from exc
        if updated is None:
            raise NotFoundError("ACCOUNT_NOT_FOUND")

        audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=account.id,
            action="ACCOUNT_UPDATED",
            resource="platform_accounts",
            resource_id=account.id,
            meta={
                "reason": payload.reason,
                "previous": {"name": account.name, "slug": account.slug, "status": account.status.value},
                "next": {"name": updated.name, "slug": updated.slug, "status": updated.status.value},
            },
        )
        return AdminActionResult(
            data={
                "account_id": updated.id,
                "name": updated.name,
                "slug": updated.slug,
                "status": updated.status.value,
                "archived_at": updated.archived_at.isoformat() if updated.archived_at else None,
            },
            audit_error=audit_error,
        )

    def delete_account(self, caller: Caller, payload: DeleteAccountInput) -> AdminActionResult:
        """Hard-delete an account; ``dry_run`` only reports what would be removed."""
        self._access.require_platform_admin(caller)
        account = self._store.get_account(payload.account_id)
        if account is None:
            raise NotFoundError("ACCOUNT_NOT_FOUND")

        members = self._store.list_members(account.id)
        affected_users = sorted({member.membership.user_id for member in members})
        counts = {
            "memberships": len(members),
            "invitations": self._store.count_invitations(account.id),
            "users": len(affected_users),
        }
        summary = {"id": account.id, "name": account.name, "slug": account.slug}
        if payload.dry_run:
            return AdminActionResult(data={"dry_run": True, "account": summary, "counts": counts})

        if not payload.confirm_slug or payload.confirm_slug.strip() != account.slug:
            raise ConflictError("CONFIRM_SLUG_MISMATCH", "confirm_slug does not match the account slug.")

        self._store.delete_invitations_for_account(account.id)
        for member in members:
            self._store.delete_membership(member.membership.id, account.id)
        if not self._store.delete_account(account.id):
            raise TransientExternalError("DELETE_FAILED", "The account could not be deleted.")

        orphans_deleted = 0
        orphan_errors: list[str] = []
        for user_id in affected_users:
            try:
                if self._delete_orphan(user_id):
                    orphans_deleted += 1
            except IdentityGatewayError as exc:
                orphan_errors.append(f"{user_id}: {exc.message}")

        audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=account.id,
            action="ACCOUNT_HARD_DELETED",
            resource="platform_accounts",
            resource_id=account.id,
            meta={
                "reason": payload.reason,
                "counts": counts,
                "orphan_users_deleted": orphans_deleted,
                "orphan_user_delete_errors": orphan_errors,
            },
        )
        return AdminActionResult(
            data={
                "deleted_account_id": account.id,
                "orphan_users_deleted": orphans_deleted,
                "orphan_delete_errors": orphan_errors,
                "counts": counts,
            },
            audit_error=audit_error,
        )

    def company_overview(self, caller: Caller) -> AdminActionResult:
        self._access.require_platform_owner(caller)
        companies = []
        for account in self._store.list_accounts():
            members = self._store.list_members(account.id)
            companies.append(
                {
                    "id": account.id,
                    "name": account.name,
                    "slug": account.slug,
                    "status": account.status.value,
                    "trial_state": account.trial_state.value if account.trial_state else None,
                    "trial_ends_at": account.trial_ends_at.isoformat() if account.trial_ends_at else None,
                    "created_at": account.created_at.isoformat() if account.created_at else None,
                    "members": [
                        {
                            "membership_id": member.membership.id,
                            "user_id": member.membership.user_id,
                            "role": member.membership.role.value,
                            "status": member.membership.status.value,
                            "email": member.profile.email if member.profile else None,
                            "full_name": member.profile.full_name if member.profile else None,
                        }
                        for member in members
                    ],
                }
            )
        return AdminActionResult(data={"companies": companies})

    # -- memberships ------------------------------------------------------

    def update_membership_role(self, caller: Caller, payload: UpdateMembershipRoleInput) -> AdminActionResult:
        try:
            next_role = MembershipRole(payload.role)
        except ValueError as exc:
            raise ValidationError("INVALID_ROLE") from exc
        self._access.require_account_admin(caller, payload.account_id)
        membership = self._store.get_membership(payload.membership_id, payload.account_id)
        if membership is None:
            raise NotFoundError("MEMBERSHIP_NOT_FOUND")
        self._guardrails.ensure_can_modify_member(caller, membership.user_id)

        if membership.role == next_role:
            return AdminActionResult(
                code="ROLE_UNCHANGED",
                data={"membership_id": membership.id, "role": next_role.value, "unchanged": True},
            )

        decision = self._guardrails.ensure_role_change_allowed(
            caller, membership, next_role, override=payload.override_last_admin
        )
        previous_role = membership.role
        if not self._store.update_membership_role(membership.id, membership.account_id, next_role):
            raise NotFoundError("MEMBERSHIP_NOT_FOUND")

        audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=membership.account_id,
            action="MEMBERSHIP_ROLE_UPDATED",
            resource="account_memberships",
            resource_id=membership.id,
            meta={
                "reason": payload.reason,
                "target_user_id": membership.user_id,
                "previous_role": previous_role.value,
                "next_role": next_role.value,
                "last_admin_override": decision.overridden,
            },
        )
        return AdminActionResult(
            data={
                "membership_id": membership.id,
                "previous_role": previous_role.value,
                "role": next_role.value,
            },
            audit_error=audit_error,
        )

    def remove_membership(self, caller: Caller, payload: RemoveMembershipInput) -> AdminActionResult:
        self._access.require_account_admin(caller, payload.account_id)
        membership = self._store.get_membership(payload.membership_id, payload.account_id)
        if membership is None:
            raise NotFoundError("MEMBERSHIP_NOT_FOUND")
        self._guardrails.ensure_can_modify_member(caller, membership.user_id)
        decision = self._guardrails.ensure_removal_allowed(caller, membership, override=payload.override_last_admin)

        if not self._store.delete_membership(membership.id, membership.account_id):
            raise NotFoundError("MEMBERSHIP_NOT_FOUND")

        audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=membership.account_id,
            action="MEMBERSHIP_REMOVED",
            resource="account_memberships",
            resource_id=membership.id,
            meta={
                "reason": payload.reason,
                "target_user_id": membership.user_id,
                "previous_role": membership.role.value,
                "previous_status": membership.status.value,
                "last_admin_override": decision.overridden,
                "remaining_admins": decision.remaining_admins,
            },
        )
        return AdminActionResult(data={"membership_id": membership.id, "removed": True}, audit_error=audit_error)

    # -- users ------------------------------------------------------------

    def update_user(self, caller: Caller, payload: UpdateUserInput) -> AdminActionResult:
        full_name = payload.full_name.strip() if payload.full_name is not None else None
        email = normalize_email(payload.email) if payload.email is not None else None
        password = payload.password
        if full_name is None and email is None and password is None:
            raise ValidationError("NOTHING_TO_UPDATE", "Provide full_name, email or password.")
        if email is not None and not is_valid_email(email):
            raise ValidationError("INVALID_EMAIL")
        if password is not None and len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError("INVALID_PASSWORD", f"Passwords need at least {MIN_PASSWORD_LENGTH} characters.")

        self._access.require_account_admin(caller, payload.account_id)
        membership = self._store.get_membership_for_user(payload.account_id, payload.user_id)
        if membership is None:
            raise NotFoundError("USER_NOT_IN_ACCOUNT")
        profile = self._guardrails.ensure_can_modify_member(caller, payload.user_id)
        if profile is None:
            raise NotFoundError("USER_NOT_FOUND")
        if email is not None and self._store.find_profile_by_email(email, exclude_id=payload.user_id):
            raise ConflictError("EMAIL_ALREADY_IN_USE")

        profile_changes: dict[str, Any] = {}
        if full_name is not None:
            profile_changes["full_name"] = full_name or None
        if email is not None:
            profile_changes["email"] = email
        if profile_changes:
            self._store.update_profile(payload.user_id, profile_changes)

        if email is not None or password is not None:
            try:
                self._gateway.update_credentials(payload.user_id, email=email, password=password)
            except IdentityGatewayError as exc:
                raise TransientExternalError("AUTH_UPDATE_FAILED", exc.message) from exc

        audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=payload.account_id,
            action="USER_UPDATED",
            resource="profiles",
            resource_id=payload.user_id,
            meta={
                "reason": payload.reason,
                "changed_full_name": full_name is not None,
                "changed_email": email is not None,
                "changed_password": password is not None,
                "target_membership_status": membership.status.value,
            },
        )
        return AdminActionResult(data={"updated_user_id": payload.user_id}, audit_error=audit_error)

    def delete_user(self, caller: Caller, payload: DeleteUserInput) -> AdminActionResult:
        """Hard-delete a user from both stores.

        Account administrators may only delete members of an account they
        administer, and never the last active admin of that account. Platform
        admins delete across accounts; the last-admin rule is then overridden
        and the re-checked admin count is recorded in the audit entry.
        """
        if payload.user_id == caller.user_id:
            raise ConflictError("SELF_DELETE_FORBIDDEN", "Users cannot delete themselves.")

        membership = None
        if payload.account_id:
            self._access.require_account_admin(caller, payload.account_id)
            membership = self._store.get_membership_for_user(payload.account_id, payload.user_id)
            if membership is None and not caller.is_platform_admin:
                raise AuthorizationError("USER_SCOPE_VIOLATION")
        elif not caller.is_platform_admin:
            raise ValidationError("ACCOUNT_REQUIRED", "account_id is required for account admins.")

        try:
            identity = self._gateway.get_identity_by_id(payload.user_id)
        except IdentityGatewayError as exc:
            raise TransientExternalError("LOOKUP_FAILED", exc.message) from exc
        if identity is None:
            raise NotFoundError("USER_NOT_FOUND")

        profile = self._store.get_profile(payload.user_id)
        self._guardrails.ensure_platform_admin_deletable(caller, profile)
        overridden = False
        if membership is not None:
            decision = self._guardrails.ensure_removal_allowed(
                caller, membership, override=caller.is_platform_admin
            )
            overridden = decision.overridden

        email = (profile.email if profile else None) or identity.email
        self._purge_user(payload.user_id, email)
        try:
            self._gateway.delete_identity(payload.user_id)
        except IdentityGatewayError as exc:
            raise TransientExternalError("DELETE_FAILED", exc.message) from exc

        audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=payload.account_id,
            action="USER_HARD_DELETED",
            resource="profiles",
            resource_id=payload.user_id,
            meta={
                "reason": payload.reason,
                "target_email": email,
                "target_global_role": profile.global_role if profile else None,
                "last_admin_override": overridden,
            },
        )
        return AdminActionResult(data={"deleted_user_id": payload.user_id}, audit_error=audit_error)

    def send_password_reset(self, caller: Caller, payload: PasswordResetInput) -> AdminActionResult:
        """Request a reset link; the answer does not reveal whether the email belongs to a member."""
        self._access.require_platform_admin(caller)
        email = normalize_email(payload.email or "")
        if not payload.account_id or not email:
            raise ValidationError("INVALID_INPUT", "account_id and email are required.")
        if not is_valid_email(email):
            raise ValidationError("INVALID_EMAIL")
        account = self._store.get_account(payload.account_id)
        if account is None:
            raise NotFoundError("ACCOUNT_NOT_FOUND")

        profile = self._store.find_profile_by_email(email)
        membership_found = bool(profile) and self._store.has_membership_with_status(
            account.id, profile.id, (MembershipStatus.ACTIVE, MembershipStatus.INVITED)
        )
        reset_error = None
        if membership_found:
            try:
                self._gateway.reset_password(email, self._reset_redirect_url)
            except IdentityGatewayError as exc:
                reset_error = exc.message

        audit_error = self._audit.record(
            actor_id=caller.user_id,
            account_id=account.id,
            action="PASSWORD_RESET_REQUESTED",
            resource="profiles",
            resource_id=profile.id if profile else None,
            meta={
                "email": email,
                "account_name": account.name,
                "membership_found": membership_found,
                "reset_error": reset_error,
            },
        )
        if reset_error:
            return AdminActionResult(
                code="RESET_ACCEPTED_EMAIL_FAILED", message=reset_error, audit_error=audit_error
            )
        return AdminActionResult(
            code="RESET_REQUEST_ACCEPTED",
            message="If a matching user exists, a reset link has been sent.",
            audit_error=audit_error,
        )

    # -- helpers ----------------------------------------------------------

    def _discard_account(self, account_id: str) -> None:
        logger.warning("deleting account %s after its administrator could not be invited", account_id)
        self._store.delete_invitations_for_account(account_id)
        self._store.delete_account(account_id)

    def _purge_user(self, user_id: str, email: str | None) -> None:
        self._store.clear_user_references(user_id)
        if email:
            self._store.revoke_pending_invitations_for_email(email)
        self._store.delete_memberships_for_user(user_id)

    def _delete_orphan(self, user_id: str) -> bool:
        if self._store.count_memberships_for_user(user_id) > 0:
            return False
        profile = self._store.get_profile(user_id)
        if profile is None or profile.is_platform_admin:
            return False
        self._purge_user(user_id, profile.email)
        self._gateway.delete_identity(user_id)
        return True
