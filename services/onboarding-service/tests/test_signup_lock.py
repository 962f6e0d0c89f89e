"""Tests for the Redis-backed per-email signup lock."""

from __future__ import annotations

import fakeredis
import pytest

from onboarding.config import Settings
from onboarding.security import signup_lock
from onboarding.security.signup_lock import (
    NullSignupLock,
    RedisSignupLock,
    SignupLockError,
    build_signup_lock,
)


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def test_lock_is_released_after_use(redis_client):
    lock = RedisSignupLock(redis_client, timeout_seconds=5, blocking_timeout=0.1, key_prefix="test")

    with lock.hold("ada@example.com"):
        assert len(redis_client.keys("test:*")) == 1

    assert redis_client.keys("test:*") == []


def test_second_holder_is_rejected(redis_client):
    lock = RedisSignupLock(redis_client, timeout_seconds=5, blocking_timeout=0.1, key_prefix="test")

    with lock.hold("ada@example.com"):
        with pytest.raises(SignupLockError):
            with lock.hold("ada@example.com"):
                pass
        with lock.hold("grace@example.com"):
            pass


def test_lock_is_released_when_body_raises(redis_client):
    lock = RedisSignupLock(redis_client, timeout_seconds=5, blocking_timeout=0.1, key_prefix="test")

    with pytest.raises(RuntimeError):
        with lock.hold("ada@example.com"):
            raise RuntimeError("seed failed")

    with lock.hold("ada@example.com"):
        pass


def test_null_lock_allows_entry():
    with NullSignupLock().hold("ada@example.com"):
        pass


def test_build_falls_back_without_redis_url():
    assert isinstance(build_signup_lock(Settings(signup_lock_backend="redis", redis_url="")), NullSignupLock)


def test_build_uses_redis_when_reachable(monkeypatch, redis_client):
    monkeypatch.setattr(signup_lock.redis, "from_url", lambda url: redis_client)

    lock = build_signup_lock(Settings(signup_lock_backend="redis", redis_url="redis://cache:6379/0"))

    assert isinstance(lock, RedisSignupLock)


def test_build_falls_back_when_redis_is_down(monkeypatch):
    server = fakeredis.FakeServer()
    server.connected = False
    broken = fakeredis.FakeStrictRedis(server=server)
    monkeypatch.setattr(signup_lock.redis, "from_url", lambda url: broken)

    lock = build_signup_lock(Settings(signup_lock_backend="redis", redis_url="redis://cache:6379/0"))

    assert isinstance(lock, NullSignupLock)
