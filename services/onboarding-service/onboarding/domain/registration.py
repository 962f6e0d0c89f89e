"""Public self-service trial registration."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from prometheus_client import Counter

from ..identity.lookup import is_valid_email, normalize_email
from ..security.rate_limiter import SignupRateLimiter, hash_client_address
from ..security.signup_lock import SignupLock, SignupLockError
from .accounts import AccountWriter, create_unique_account
from .contracts import RegisterTrialInput, RegistrationResult
from .errors import OnboardingError
from .invitations import utcnow
from .models import Account, Invitation, InvitationSource, MembershipRole, SignupAttempt, TrialState
from .retry import InviteRetryEngine
from .targets import GhostUserReaper, InvitationTargetResolver

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 120
MAX_COMPANY_LENGTH = 140
MAX_EMAIL_LENGTH = 254
MAX_HONEYPOT_LENGTH = 200
MAX_USER_AGENT_LENGTH = 400
MIN_FIELD_LENGTH = 2
GHOST_SETTLE_SECONDS = 0.2

INVALID_INPUT = "INVALID_INPUT"
RATE_LIMITED = "RATE_LIMITED"
EMAIL_ALREADY_REGISTERED = "EMAIL_ALREADY_REGISTERED"
REGISTRATION_SEEDED = "REGISTRATION_SEEDED"
REGISTRATION_REUSED_PENDING = "REGISTRATION_REUSED_PENDING"
REGISTRATION_SEED_FAILED = "REGISTRATION_SEED_FAILED"
FEATURE_DISABLED = "FEATURE_DISABLED"

SEEDED_MESSAGE = "Registration prepared. Confirm your email address to continue."

SIGNUP_ATTEMPTS = Counter(
    "onboarding_signup_attempts_total",
    "Self-service registration attempts by result code.",
    ["result_code"],
)


class RegistrationStore(AccountWriter, Protocol):
    def insert_signup_attempt(self, attempt: SignupAttempt) -> None: ...

    def list_pending_invitations_for_email(self, email: str) -> list[Invitation]: ...

    def expire_invitations(self, invitation_ids: list[str]) -> int: ...

    def get_account(self, account_id: str) -> Account | None: ...

    def delete_account(self, account_id: str) -> bool: ...

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


def _trim(value: str | None, max_length: int) -> str:
    return (value or "").strip()[:max_length]


def _failed(message: str) -> RegistrationResult:
    return RegistrationResult(ok=False, code=REGISTRATION_SEED_FAILED, message=message)


def _already_registered(message: str, existing_invitation_id: str | None = None) -> RegistrationResult:
    return RegistrationResult(
        ok=False,
        code=EMAIL_ALREADY_REGISTERED,
        message=message,
        existing_invitation_id=existing_invitation_id,
    )


class SelfServiceRegistrationGate:
    """Seed a trial account plus a pending ADMIN invitation for an anonymous visitor.

    Each step can end the request early. Whatever the outcome, one row is written
    to the signup attempts log, which is also the rate limiter's only state.
    """

    def __init__(
        self,
        store: RegistrationStore,
        resolver: InvitationTargetResolver,
        reaper: GhostUserReaper,
        limiter: SignupRateLimiter,
        lock: SignupLock,
        *,
        ip_hash_salt: str,
        enabled: bool = True,
        trial_days: int = 14,
        invitation_ttl_days: int = 7,
        engine: InviteRetryEngine | None = None,
        redirect_url: str | None = None,
        max_retries: int = 2,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._reaper = reaper
        self._limiter = limiter
        self._lock = lock
        self._salt = ip_hash_salt
        self._enabled = enabled
        self._trial = timedelta(days=trial_days)
        self._invitation_ttl = timedelta(days=invitation_ttl_days)
        self._engine = engine
        self._redirect_url = redirect_url
        self._max_retries = max_retries
        self._clock = clock
        self._sleep = sleep

    def register(self, payload: RegisterTrialInput) -> RegistrationResult:
        ip_hash = hash_client_address(payload.ip_address or "unknown", self._salt)
        user_agent = _trim(payload.user_agent, MAX_USER_AGENT_LENGTH)
        email = normalize_email(_trim(payload.email, MAX_EMAIL_LENGTH))

        outcome = REGISTRATION_SEED_FAILED
        try:
            result = self._register(payload, email, ip_hash)
            outcome = result.code
            return result
        finally:
            self._log_attempt(ip_hash, outcome, email or None, user_agent)

    def _register(self, payload: RegisterTrialInput, email: str, ip_hash: str) -> RegistrationResult:
        if not self._enabled:
            return RegistrationResult(
                ok=False, code=FEATURE_DISABLED, message="Self-service registration is currently disabled."
            )

        # Bots get the same answer as a real registration.
        if _trim(payload.honeypot, MAX_HONEYPOT_LENGTH):
            return RegistrationResult(ok=True, code=REGISTRATION_SEEDED, message=SEEDED_MESSAGE)

        full_name = _trim(payload.full_name, MAX_NAME_LENGTH)
        company_name = _trim(payload.company_name, MAX_COMPANY_LENGTH)
        if (
            len(full_name) < MIN_FIELD_LENGTH
            or len(company_name) < MIN_FIELD_LENGTH
            or not email
            or not is_valid_email(email)
        ):
            return RegistrationResult(
                ok=False,
                code=INVALID_INPUT,
                message="Name, company name and a valid email address are required.",
            )

        if not self._limiter.allow(ip_hash=ip_hash, email_norm=email):
            return RegistrationResult(
                ok=False, code=RATE_LIMITED, message="Too many registration attempts. Try again later."
            )

        try:
            with self._lock.hold(email):
                return self._seed(email, full_name, company_name)
        except SignupLockError as exc:
            return _failed(str(exc))

    def _seed(self, email: str, full_name: str, company_name: str) -> RegistrationResult:
        try:
            target = self._resolver.resolve(email)
            if target.active_membership_count > 0:
                return _already_registered(
                    "This email already has active access. Sign in or reset the password."
                )
            if target.is_email_confirmed:
                return _already_registered("This email is already registered. Sign in or reset the password.")
            if target.can_delete_ghost and self._reaper.reap(target):
                self._sleep(GHOST_SETTLE_SECONDS)
                target = self._resolver.resolve(email)
        except OnboardingError as exc:
            return _failed(exc.message)

        # TODO: memberships created out-of-band between the reap and this re-check are not reconciled.
        if target.exists:
            return _already_registered("This email is already registered. Sign in or reset the password.")

        now = self._clock()
        pending = self._store.list_pending_invitations_for_email(email)
        expired_ids = [invitation.id for invitation in pending if invitation.is_expired(now)]
        if expired_ids:
            self._store.expire_invitations(expired_ids)
        fresh = [invitation for invitation in pending if not invitation.is_expired(now)]

        for invitation in fresh:
            if invitation.source != InvitationSource.SELF_REGISTER.value:
                return _already_registered(
                    "An open invitation already exists for this email. Use that invitation first.",
                    existing_invitation_id=invitation.id,
                )
        if fresh:
            return self._replay(fresh[0])

        trial_ends_at = now + self._trial
        try:
            account = create_unique_account(
                self._store,
                company_name,
                trial_started_at=now,
                trial_ends_at=trial_ends_at,
                trial_state=TrialState.TRIAL_ACTIVE,
            )
        except OnboardingError as exc:
            return _failed(exc.message)

        try:
            invitation = self._store.insert_invitation(
                account_id=account.id,
                email=email,
                role=MembershipRole.ADMIN,
                invited_by=None,
                expires_at=now + self._invitation_ttl,
                meta={
                    "source": InvitationSource.SELF_REGISTER.value,
                    "requested_full_name": full_name,
                    "trial_started_at": now.isoformat(),
                    "trial_ends_at": trial_ends_at.isoformat(),
                },
            )
        except Exception as exc:
            logger.warning("invitation insert failed, deleting seeded account %s: %s", account.id, exc)
            self._store.delete_account(account.id)
            return _failed(str(exc) or "Invitation create failed.")

        return RegistrationResult(
            ok=True,
            code=REGISTRATION_SEEDED,
            message=SEEDED_MESSAGE,
            account_id=account.id,
            account_slug=account.slug,
            reused_pending=False,
            existing_invitation_id=invitation.id,
            email_sent=self._send_confirmation(invitation, account),
        )

    def _replay(self, invitation: Invitation) -> RegistrationResult:
        account = self._store.get_account(invitation.account_id)
        if account is None:
            return _failed("Existing account for pending registration not found.")
        # The earlier confirmation link died with the reaped ghost identity.
        email_sent = self._send_confirmation(invitation, account)
        message = "A registration is already open. A new confirmation link can be sent now."
        if email_sent:
            message = "A registration is already open. A new confirmation link has been sent."
        return RegistrationResult(
            ok=True,
            code=REGISTRATION_REUSED_PENDING,
            message=message,
            account_id=account.id,
            account_slug=account.slug,
            reused_pending=True,
            existing_invitation_id=invitation.id,
            email_sent=email_sent,
        )

    def _send_confirmation(self, invitation: Invitation, account: Account) -> bool | None:
        if self._engine is None or not self._redirect_url:
            return None
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
            logger.warning("confirmation invite for account %s not sent: %s", account.id, exc.message)
            return False
        if not send.email_sent:
            logger.warning("confirmation invite for account %s not sent: %s", account.id, send.error_message)
        return send.email_sent

    def _log_attempt(self, ip_hash: str, result_code: str, email_norm: str | None, user_agent: str) -> None:
        SIGNUP_ATTEMPTS.labels(result_code=result_code).inc()
        attempt = SignupAttempt(
            ip_hash=ip_hash,
            result_code=result_code,
            email_norm=email_norm,
            user_agent=user_agent or None,
            created_at=self._clock(),
        )
        try:
            self._store.insert_signup_attempt(attempt)
        except Exception as exc:  # the attempt log never changes the response
            logger.error("self_signup_attempts insert failed for %s: %s", result_code, exc)
