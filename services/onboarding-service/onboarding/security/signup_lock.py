"""Per-email advisory lock serializing concurrent self-registrations."""

from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from typing import ContextManager, Iterator, Protocol

import redis
from redis import Redis
from redis.exceptions import LockError, RedisError

from ..config import Settings

logger = logging.getLogger(__name__)


class SignupLockError(RuntimeError):
    """The lock backend is configured but could not grant the lock."""


class SignupLock(Protocol):
    def hold(self, email: str) -> ContextManager[None]: ...


class RedisSignupLock:
    """Distributed lock keyed by a digest of the normalized email."""

    def __init__(
        self,
        client: Redis,
        *,
        timeout_seconds: int = 30,
        blocking_timeout: float = 10.0,
        key_prefix: str = "signup-lock",
    ) -> None:
        self._client = client
        self._timeout = timeout_seconds
        self._blocking_timeout = blocking_timeout
        self._key_prefix = key_prefix

    @contextmanager
    def hold(self, email: str) -> Iterator[None]:
        digest = hashlib.sha256(email.encode("utf-8")).hexdigest()
        lock = self._client.lock(
            f"{self._key_prefix}:{digest}",
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        try:
            acquired = lock.acquire()
        except RedisError as exc:
            raise SignupLockError(f"signup lock failed: {exc}") from exc
        if not acquired:
            raise SignupLockError("signup lock failed: another registration for this email is in progress")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                logger.warning("signup lock %s expired before release", digest[:12])


class NullSignupLock:
    """Stand-in used when no lock backend is reachable; registration proceeds unserialized."""

    @contextmanager
    def hold(self, email: str) -> Iterator[None]:
        logger.warning("signup lock backend unavailable; continuing without advisory lock")
        yield


def build_signup_lock(settings: Settings) -> RedisSignupLock | NullSignupLock:
    """Instantiate the configured lock backend, degrading to a no-op when Redis is unreachable."""
    if settings.signup_lock_backend == "redis" and settings.redis_url:
        try:
            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("signup lock configured for redis backend")
            return RedisSignupLock(client, timeout_seconds=settings.signup_lock_timeout_seconds)
        except (RedisError, ValueError) as exc:
            logger.warning("redis signup lock unavailable, continuing without lock: %s", exc)

    logger.info("signup lock disabled")
    return NullSignupLock()
