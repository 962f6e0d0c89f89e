"""Bounded-retry invite delivery that resolves ambiguous duplicate registrations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from prometheus_client import Counter

from ..identity.gateway import IdentityGateway, IdentityGatewayError, is_already_registered_message
from ..identity.lookup import normalize_email
from .targets import GhostUserReaper, InvitationTargetResolver

logger = logging.getLogger(__name__)

BLOCKER_ACTIVE_MEMBERSHIP = "ACTIVE_MEMBERSHIP_EXISTS"
BLOCKER_CONFIRMED_USER = "CONFIRMED_USER_REQUIRES_MANUAL_ACTION"

BLOCKER_MESSAGES = {
    BLOCKER_ACTIVE_MEMBERSHIP: "An active membership already exists for this email.",
    BLOCKER_CONFIRMED_USER: (
        "This email is already registered. Sign in or reset the password instead."
    ),
}

BACKOFF_SECONDS = (0.25, 0.5)

INVITE_SENDS = Counter(
    "onboarding_invite_send_total",
    "Invite email deliveries by outcome.",
    ["outcome"],
)


@dataclass(slots=True)
class InviteSendResult:
    email_sent: bool
    attempts: int
    error_message: str | None = None
    deleted_ghost: bool = False
    blocker_code: str | None = None
    blocker_message: str | None = None

    @property
    def already_registered(self) -> bool:
        """True when delivery stopped on an unresolved duplicate-registration error."""
        return (
            not self.email_sent
            and self.blocker_code is None
            and is_already_registered_message(self.error_message)
        )

    @property
    def should_roll_back(self) -> bool:
        return self.blocker_code is not None or self.already_registered


class InviteRetryEngine:
    """Send invitation emails, reaping ghost identities between attempts when safe."""

    def __init__(
        self,
        gateway: IdentityGateway,
        resolver: InvitationTargetResolver,
        reaper: GhostUserReaper,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._gateway = gateway
        self._resolver = resolver
        self._reaper = reaper
        self._sleep = sleep

    def send(
        self,
        email: str,
        redirect_url: str,
        data: dict[str, Any],
        max_retries: int = 2,
    ) -> InviteSendResult:
        email = normalize_email(email)
        max_attempts = max(0, max_retries) + 1
        deleted_ghost = False
        last_error: str | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                self._gateway.send_invite(email, redirect_url, data)
            except IdentityGatewayError as exc:
                last_error = exc.message or "Invite send failed."
                if not exc.is_already_registered:
                    logger.warning("invite send failed permanently on attempt %s: %s", attempt, last_error)
                    return self._finish(False, attempt, last_error, deleted_ghost)
            else:
                return self._finish(True, attempt, None, deleted_ghost)

            # Duplicate registration is ambiguous: a stale ghost or a real user.

            target = self._resolver.resolve(email)
            if target.active_membership_count > 0:
                return self._finish(False, attempt, last_error, deleted_ghost, BLOCKER_ACTIVE_MEMBERSHIP)
            if target.is_email_confirmed:
                return self._finish(False, attempt, last_error, deleted_ghost, BLOCKER_CONFIRMED_USER)

            deleted = self._reaper.reap(target)
            deleted_ghost = deleted_ghost or deleted
            if not deleted or attempt >= max_attempts:
                return self._finish(False, attempt, last_error, deleted_ghost)

            delay = BACKOFF_SECONDS[min(attempt - 1, len(BACKOFF_SECONDS) - 1)]
            logger.info("ghost identity reaped, retrying invite in %.2fs (attempt %s)", delay, attempt)
            self._sleep(delay)

        return self._finish(False, max_attempts, last_error, deleted_ghost)

    def _finish(
        self,
        sent: bool,
        attempts: int,
        error_message: str | None,
        deleted_ghost: bool,
        blocker_code: str | None = None,
    ) -> InviteSendResult:
        if sent:
            INVITE_SENDS.labels(outcome="sent").inc()
        elif blocker_code:
            INVITE_SENDS.labels(outcome="blocked").inc()
        else:
            INVITE_SENDS.labels(outcome="failed").inc()
        return InviteSendResult(
            email_sent=sent,
            attempts=attempts,
            error_message=error_message,
            deleted_ghost=deleted_ghost,
            blocker_code=blocker_code,
            blocker_message=BLOCKER_MESSAGES.get(blocker_code) if blocker_code else None,
        )
