"""Tests for the in-memory and Redis-backed sign-in throttles."""

from __future__ import annotations

import time

import fakeredis
import pytest

from signon.security.rate_limiter import SlidingWindowRateLimiter
from signon.security.redis_rate_limiter import RedisSlidingWindowRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def test_memory_limiter_blocks_excess_and_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=10, clock=clock)

    assert limiter.allow("signin:host:abc")
    assert limiter.allow("signin:host:abc")
    assert not limiter.allow("signin:host:abc")
    assert limiter.allow("signin:host:other")

    clock.now += 10
    assert limiter.allow("signin:host:abc")


def test_memory_limiter_reset_clears_key():
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60)

    assert limiter.allow("key")
    assert not limiter.allow("key")
    limiter.reset("key")
    assert limiter.allow("key")


def test_redis_rate_limiter_allows_within_threshold(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=3, window_seconds=1, key_prefix="test"
    )
    key = "signin:host:abc"
    assert limiter.allow(key)
    assert limiter.allow(key)
    assert limiter.allow(key)


def test_redis_rate_limiter_blocks_excess(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=2, window_seconds=1, key_prefix="test"
    )
    key = "signin:host:abc"
    assert limiter.allow(key)
    assert limiter.allow(key)
    assert not limiter.allow(key)


def test_redis_rate_limiter_reset_clears_key(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=1, window_seconds=60, key_prefix="test"
    )
    assert limiter.allow("key")
    assert not limiter.allow("key")
    limiter.reset("key")
    assert limiter.allow("key")


def test_redis_rate_limiter_expires_entries(redis_client):
    limiter = RedisSlidingWindowRateLimiter(
        redis_client, max_requests=1, window_seconds=1, key_prefix="test"
    )
    key = "signin:host:abc"
    assert limiter.allow(key)
    assert not limiter.allow(key)
    time.sleep(1.1)
    assert limiter.allow(key)
