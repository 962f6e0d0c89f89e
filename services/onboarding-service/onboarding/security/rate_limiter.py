"""Sliding window signup limiter backed by the persisted attempts log."""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol


class AttemptLog(Protocol):
    def count_signup_attempts(
        self,
        *,
        since: datetime,
        ip_hash: str | None = None,
        email_norm: str | None = None,
    ) -> int: ...


def hash_client_address(ip_address: str, salt: str) -> str:
    """Return the salted SHA-256 hex digest stored in place of the client IP."""
    return hashlib.sha256(f"{salt}:{ip_address}".encode("utf-8")).hexdigest()


class SignupRateLimiter:
    """Per-IP and per-email sliding window over ``self_signup_attempts``.

    Every registration outcome is logged as an attempt, so the log itself is the
    limiter state and is shared by all service replicas.
    """

    def __init__(
        self,
        log: AttemptLog,
        *,
        per_ip: int,
        per_email: int,
        window_seconds: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialise thresholds and the clock used to compute the window start."""
        self._log = log
        self._per_ip = per_ip
        self._per_email = per_email
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def allow(self, *, ip_hash: str, email_norm: str) -> bool:
        """Return ``True`` when neither the IP nor the email has exhausted its window."""
        since = self._clock() - self._window
        if self._log.count_signup_attempts(since=since, ip_hash=ip_hash) >= self._per_ip:
            return False
        return self._log.count_signup_attempts(since=since, email_norm=email_norm) < self._per_email
