"""HTTP route definitions for the onboarding service."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from ..domain.access import AccessControl, Caller
from ..domain.administration import AccountAdministration
from ..domain.contracts import (
    AdminActionResult,
    CreateInvitationInput,
    DeleteAccountInput,
    DeleteUserInput,
    EmailChangeInput,
    InvitationResult,
    ManageInvitationInput,
    PasswordResetInput,
    ProvisionAccountInput,
    RegisterTrialInput,
    RegistrationResult,
    RemoveMembershipInput,
    UpdateAccountInput,
    UpdateMembershipRoleInput,
    UpdateUserInput,
)
from ..domain.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    OnboardingError,
    RateLimitedError,
    TransientExternalError,
    ValidationError,
)
from ..domain.invitations import InvitationLifecycleManager
from ..domain.models import AccountStatus, MembershipRole
from ..domain.profile_security import ProfileSecurity
from ..domain.registration import SelfServiceRegistrationGate
from ..security.tokens import caller_id_from_header, extract_bearer_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

# Ordered from most to least specific; RateLimitedError must precede ConflictError.
_ERROR_STATUS: tuple[tuple[type[OnboardingError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (RateLimitedError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ConflictError, status.HTTP_409_CONFLICT),
    (TransientExternalError, status.HTTP_502_BAD_GATEWAY),
)

_REGISTRATION_STATUS = {
    "INVALID_INPUT": status.HTTP_400_BAD_REQUEST,
    "FEATURE_DISABLED": status.HTTP_403_FORBIDDEN,
    "EMAIL_ALREADY_REGISTERED": status.HTTP_409_CONFLICT,
    "RATE_LIMITED": status.HTTP_429_TOO_MANY_REQUESTS,
    "REGISTRATION_SEED_FAILED": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_ACCEPTED_CODES = {"ACCOUNT_CREATED_EMAIL_FAILED", "RESET_ACCEPTED_EMAIL_FAILED"}

_UPSTREAM_FAILURE_CODES = {"LOOKUP_FAILED", "GHOST_USER_DELETE_FAILED"}


def status_for_error(exc: OnboardingError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_error_handlers(app: FastAPI) -> None:
    """Render domain errors as ``{"ok": false, "code", "message", ...meta}``."""

    @app.exception_handler(OnboardingError)
    async def handle_onboarding_error(request: Request, exc: OnboardingError) -> JSONResponse:
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.error("%s %s failed with %s: %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(
            status_code=status_code,
            content={**exc.meta, "ok": False, "code": exc.code, "message": exc.message},
        )


class CreateInvitationRequest(BaseModel):
    """Payload accepted when inviting an email into an account."""

    email: EmailStr
    role: MembershipRole = MembershipRole.VIEWER


class ManageInvitationRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class InvitationResponse(BaseModel):
    """Serialised outcome of create/revoke/resend."""

    ok: bool
    code: str | None = None
    message: str | None = None
    invitation_id: str | None = None
    new_invitation_id: str | None = None
    account_name: str | None = None
    email_sent: bool | None = None
    attempts: int = 0
    deleted_ghost_user: bool = False
    blocker_code: str | None = None
    rolled_back: bool = False
    audit_error: str | None = None

    @classmethod
    def from_domain(cls, result: InvitationResult) -> "InvitationResponse":
        return cls(
            ok=result.ok,
            code=result.code,
            message=result.message,
            invitation_id=result.invitation_id,
            new_invitation_id=result.new_invitation_id,
            account_name=result.account_name,
            email_sent=result.email_sent,
            attempts=result.attempts,
            deleted_ghost_user=result.deleted_ghost,
            blocker_code=result.blocker_code,
            rolled_back=result.rolled_back,
            audit_error=result.audit_error,
        )


class RegisterTrialRequest(BaseModel):
    """Public signup form. Any of the decoy fields being filled marks the request as automated."""

    full_name: str = ""
    company_name: str = ""
    email: str = ""
    honeypot: str = ""
    website: str = ""
    company: str = ""


class RegistrationResponse(BaseModel):
    ok: bool
    code: str
    message: str
    account_id: str | None = None
    account_slug: str | None = None
    reused_pending: bool | None = None
    existing_invitation_id: str | None = None
    email_sent: bool | None = None

    @classmethod
    def from_domain(cls, result: RegistrationResult) -> "RegistrationResponse":
        return cls(
            ok=result.ok,
            code=result.code,
            message=result.message,
            account_id=result.account_id,
            account_slug=result.account_slug,
            reused_pending=result.reused_pending,
            existing_invitation_id=result.existing_invitation_id,
            email_sent=result.email_sent,
        )


class ProvisionAccountRequest(BaseModel):
    account_name: str = Field(..., min_length=1, max_length=140)
    admin_email: EmailStr
    account_slug: str | None = None


class UpdateAccountRequest(BaseModel):
    name: str | None = None
    slug: str | None = None
    status: AccountStatus | None = None
    reason: str | None = None


class PasswordResetRequest(BaseModel):
    account_id: str
    email: EmailStr


class UpdateMembershipRoleRequest(BaseModel):
    role: MembershipRole
    reason: str | None = None
    override_last_admin: bool = False


class EmailChangeRequest(BaseModel):
    new_email: str = Field(..., max_length=320)


class UpdateUserRequest(BaseModel):
    """Omitted fields are left untouched; an empty ``full_name`` clears it."""

    full_name: str | None = None
    email: EmailStr | None = None
    password: str | None = None
    reason: str | None = None


def get_access(request: Request) -> AccessControl:
    access: AccessControl = request.app.state.access
    return access


def get_invitations(request: Request) -> InvitationLifecycleManager:
    manager: InvitationLifecycleManager = request.app.state.invitations
    return manager


def get_registration(request: Request) -> SelfServiceRegistrationGate:
    gate: SelfServiceRegistrationGate = request.app.state.registration
    return gate


def get_administration(request: Request) -> AccountAdministration:
    administration: AccountAdministration = request.app.state.administration
    return administration


def get_profile_security(request: Request) -> ProfileSecurity:
    profile_security: ProfileSecurity = request.app.state.profile_security
    return profile_security


def get_caller(
    authorization: str | None = Header(default=None),
    access: AccessControl = Depends(get_access),
) -> Caller:
    """Resolve the authenticated caller from the bearer token."""
    return access.load_caller(caller_id_from_header(authorization))


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = (request.headers.get(header) or "").strip()
        if value:
            return value
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _action_payload(result: AdminActionResult) -> dict[str, Any]:
    payload: dict[str, Any] = {"ok": True, **result.data}
    if result.code:
        payload["code"] = result.code
    if result.message:
        payload["message"] = result.message
    payload["audit_error"] = result.audit_error
    return payload


def _action_response(response: Response, result: AdminActionResult) -> dict[str, Any]:
    if result.code in _ACCEPTED_CODES:
        response.status_code = status.HTTP_202_ACCEPTED
    return _action_payload(result)


def _invitation_response(response: Response, result: InvitationResult) -> InvitationResponse:
    if not result.ok:
        if result.code in _UPSTREAM_FAILURE_CODES:
            response.status_code = status.HTTP_502_BAD_GATEWAY
        else:
            response.status_code = status.HTTP_409_CONFLICT
    return InvitationResponse.from_domain(result)


@router.post("/accounts/{account_id}/invitations", response_model=InvitationResponse)
def create_invitation(
    account_id: str,
    payload: CreateInvitationRequest,
    response: Response,
    caller: Caller = Depends(get_caller),
    manager: InvitationLifecycleManager = Depends(get_invitations),
) -> InvitationResponse:
    """Invite an email into an account and send the invite email."""
    result = manager.create(
        caller,
        CreateInvitationInput(account_id=account_id, email=payload.email, role=payload.role),
    )
    return _invitation_response(response, result)


@router.post("/accounts/{account_id}/invitations/{invitation_id}/revoke", response_model=InvitationResponse)
def revoke_invitation(
    account_id: str,
    invitation_id: str,
    response: Response,
    payload: ManageInvitationRequest | None = None,
    caller: Caller = Depends(get_caller),
    manager: InvitationLifecycleManager = Depends(get_invitations),
) -> InvitationResponse:
    result = manager.revoke(
        caller,
        ManageInvitationInput(
            account_id=account_id,
            invitation_id=invitation_id,
            reason=payload.reason if payload else None,
        ),
    )
    return _invitation_response(response, result)


@router.post("/accounts/{account_id}/invitations/{invitation_id}/resend", response_model=InvitationResponse)
def resend_invitation(
    account_id: str,
    invitation_id: str,
    response: Response,
    payload: ManageInvitationRequest | None = None,
    caller: Caller = Depends(get_caller),
    manager: InvitationLifecycleManager = Depends(get_invitations),
) -> InvitationResponse:
    """Revoke a pending invitation and issue a fresh one for the same email and role."""
    result = manager.resend(
        caller,
        ManageInvitationInput(
            account_id=account_id,
            invitation_id=invitation_id,
            reason=payload.reason if payload else None,
        ),
    )
    return _invitation_response(response, result)


@router.post("/public/register-trial", response_model=RegistrationResponse)
def register_trial(
    payload: RegisterTrialRequest,
    request: Request,
    response: Response,
    gate: SelfServiceRegistrationGate = Depends(get_registration),
) -> RegistrationResponse:
    """Unauthenticated trial signup."""
    result = gate.register(
        RegisterTrialInput(
            full_name=payload.full_name,
            company_name=payload.company_name,
            email=payload.email,
            honeypot=payload.honeypot or payload.website or payload.company,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
        )
    )
    response.status_code = _REGISTRATION_STATUS.get(result.code, status.HTTP_200_OK)
    return RegistrationResponse.from_domain(result)


@router.post("/platform/accounts")
def provision_account(
    payload: ProvisionAccountRequest,
    response: Response,
    caller: Caller = Depends(get_caller),
    administration: AccountAdministration = Depends(get_administration),
) -> dict[str, Any]:
    result = administration.provision_account(
        caller,
        ProvisionAccountInput(
            account_name=payload.account_name,
            admin_email=payload.admin_email,
            account_slug=payload.account_slug,
        ),
    )
    return _action_response(response, result)


@router.patch("/platform/accounts/{account_id}")
def update_account(
    account_id: str,
    payload: UpdateAccountRequest,
    response: Response,
    caller: Caller = Depends(get_caller),
    administration: AccountAdministration = Depends(get_administration),
) -> dict[str, Any]:
    result = administration.update_account(
        caller,
        UpdateAccountInput(
            account_id=account_id,
            name=payload.name,
            slug=payload.slug,
            status=payload.status,
            reason=payload.reason,
        ),
    )
    return _action_response(response, result)


@router.delete("/platform/accounts/{account_id}")
def delete_account(
    account_id: str,
    response: Response,
    dry_run: bool = Query(default=False),
    confirm_slug: str = Query(default=""),
    reason: str | None = Query(default=None),
    caller: Caller = Depends(get_caller),
    administration: AccountAdministration = Depends(get_administration),
) -> dict[str, Any]:
    """Hard-delete an account; pass ``dry_run=true`` to preview the affected rows."""
    result = administration.delete_account(
        caller,
        DeleteAccountInput(account_id=account_id, dry_run=dry_run, confirm_slug=confirm_slug, reason=reason),
    )
    return _action_response(response, result)


@router.get("/platform/overview")
def company_overview(
    response: Response,
    caller: Caller = Depends(get_caller),
    administration: AccountAdministration = Depends(get_administration),
) -> dict[str, Any]:
    return _action_response(response, administration.company_overview(caller))


@router.post("/platform/password-resets")
def send_password_reset(
    payload: PasswordResetRequest,
    response: Response,
    caller: Caller = Depends(get_caller),
    administration: AccountAdministration = Depends(get_administration),
) -> dict[str, Any]:
    result = administration.send_password_reset(
        caller, PasswordResetInput(account_id=payload.account_id, email=payload.email)
    )
    return _action_response(response, result)


@router.patch("/accounts/{account_id}/memberships/{membership_id}")
def update_membership_role(
    account_id: str,
    membership_id: str,
    payload: UpdateMembershipRoleRequest,
    response: Response,
    caller: Caller = Depends(get_caller),
    administration: AccountAdministration = Depends(get_administration),
) -> dict[str, Any]:
    result = administration.update_membership_role(
        caller,
        UpdateMembershipRoleInput(
            account_id=account_id,
            membership_id=membership_id,
            role=payload.role,
            reason=payload.reason,
            override_last_admin=payload.override_last_admin,
        ),
    )
    return _action_response(response, result)


@router.delete("/accounts/{account_id}/memberships/{membership_id}")
def remove_membership(
    account_id: str,
    membership_id: str,
    response: Response,
    reason: str | None = Query(default=None),
    override_last_admin: bool = Query(default=False),
    caller: Caller = Depends(get_caller),
    administration: AccountAdministration = Depends(get_administration),
) -> dict[str, Any]:
    result = administration.remove_membership(
        caller,
        RemoveMembershipInput(
            account_id=account_id,
            membership_id=membership_id,
            reason=reason,
            override_last_admin=override_last_admin,
        ),
    )
    return _action_response(response, result)


@router.patch("/accounts/{account_id}/users/{user_id}")
def update_user(
    account_id: str,
    user_id: str,
    payload: UpdateUserRequest,
    response: Response,
    caller: Caller = Depends(get_caller),
    administration: AccountAdministration = Depends(get_administration),
) -> dict[str, Any]:
    result = administration.update_user(
        caller,
        UpdateUserInput(
            account_id=account_id,
            user_id=user_id,
            full_name=payload.full_name,
            email=payload.email,
            password=payload.password,
            reason=payload.reason,
        ),
    )
    return _action_response(response, result)


@router.delete("/users/{user_id}")
def delete_user(
    user_id: str,
    response: Response,
    account_id: str | None = Query(default=None),
    reason: str | None = Query(default=None),
    caller: Caller = Depends(get_caller),
    administration: AccountAdministration = Depends(get_administration),
) -> dict[str, Any]:
    result = administration.delete_user(
        caller, DeleteUserInput(user_id=user_id, account_id=account_id, reason=reason)
    )
    return _action_response(response, result)


@router.post("/me/email-change")
def request_email_change(
    payload: EmailChangeRequest,
    response: Response,
    authorization: str | None = Header(default=None),
    caller: Caller = Depends(get_caller),
    profile_security: ProfileSecurity = Depends(get_profile_security),
) -> dict[str, Any]:
    """Start a confirmed email change for the signed-in user."""
    result = profile_security.request_email_change(
        caller,
        EmailChangeInput(access_token=extract_bearer_token(authorization) or "", new_email=payload.new_email),
    )
    return _action_response(response, result)


@router.post("/me/password-reset")
def request_own_password_reset(
    response: Response,
    caller: Caller = Depends(get_caller),
    profile_security: ProfileSecurity = Depends(get_profile_security),
) -> dict[str, Any]:
    return _action_response(response, profile_security.request_password_reset(caller))
