"""Redis-backed sliding window throttle shared by every service replica."""

from __future__ import annotations

import time
import uuid
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError


class RedisSlidingWindowRateLimiter:
    """Distributed counterpart of ``SlidingWindowRateLimiter`` using one sorted set per key."""

    _ALLOW_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local now_ms = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local limit = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)
    if redis.call('ZCARD', key) >= limit then
        return 0
    end
    redis.call('ZADD', key, now_ms, ARGV[4])
    redis.call('PEXPIRE', key, window_ms)
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "signon:throttle",
    ) -> None:
        self._client = client
        self._max_requests = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._ALLOW_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def allow(self, key: str) -> bool:
        """Return ``True`` and count the request when ``key`` is under its limit."""
        redis_key = self._key(key)
        now_ms = int(time.time() * 1000)
        member = f"{now_ms}:{uuid.uuid4().hex}"
        try:
            allowed = self._script(
                keys=[redis_key], args=[now_ms, self._window_ms, self._max_requests, member]
            )
        except ResponseError as exc:
            if "unknown command" not in str(exc).lower():
                raise
            return self._allow_without_scripting(redis_key, now_ms, member)
        return int(allowed) == 1

    def reset(self, key: str) -> None:
        """Forget the recorded requests for ``key``."""
        self._client.delete(self._key(key))

    def _allow_without_scripting(self, redis_key: str, now_ms: int, member: str) -> bool:
        """Non-atomic path for Redis-compatible servers that disable EVAL."""
        self._client.zremrangebyscore(redis_key, "-inf", now_ms - self._window_ms)
        if self._client.zcard(redis_key) >= self._max_requests:
            return False
        self._client.zadd(redis_key, {member: now_ms})
        self._client.pexpire(redis_key, self._window_ms)
        return True
