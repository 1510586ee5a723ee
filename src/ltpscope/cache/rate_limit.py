"""
Sliding-window rate limiter.

The distributed path runs one Lua script against a sorted set, so
check-and-increment is a single atomic operation on the server. Without a
backend the same algorithm runs in-process; it contains no awaits between
the check and the increment, which makes it atomic on the event loop.
"""

import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from redis.exceptions import RedisError

from ..logger import get_logger
from .backend import CacheBackend

logger = get_logger(__name__)

SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local window_start = now - window_ms

redis.call('ZREMRANGEBYSCORE', key, '-inf', window_start)
local count = redis.call('ZCARD', key)

if count < limit then
  redis.call('ZADD', key, now, member)
  redis.call('PEXPIRE', key, window_ms)
  return {1, limit - count - 1, now + window_ms}
end

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local reset_at = now + window_ms
if oldest[2] then
  reset_at = tonumber(oldest[2]) + window_ms
end
return {0, 0, reset_at}
"""


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int  # epoch ms


class RateLimiter:
    """Check-and-increment rate limiter keyed by caller identity."""

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        key_prefix: str = "ratelimit:",
        clock_ms: Callable[[], int] = lambda: int(time.time() * 1000)
    ):
        self.backend = backend
        self.key_prefix = key_prefix
        self._clock_ms = clock_ms
        self._script = None
        self._windows: Dict[str, Deque[int]] = {}

    async def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        """
        Record one request for ``key`` if it is under ``limit`` in the window.

        Args:
            key: Caller identity (user id, IP, ...)
            limit: Maximum allowed requests per window
            window_ms: Window length in milliseconds

        Returns:
            Whether the request is allowed, how many remain and when the
            window resets. Fails open if the shared backend errors.
        """
        if limit <= 0:
            return RateLimitResult(allowed=False, remaining=0, reset_at=self._clock_ms() + window_ms)

        full_key = f"{self.key_prefix}{key}"
        if self.backend is not None and self.backend.is_available:
            return await self._check_distributed(full_key, limit, window_ms)
        return self._check_local(full_key, limit, window_ms)

    async def _check_distributed(self, full_key: str, limit: int, window_ms: int) -> RateLimitResult:
        now = self._clock_ms()
        try:
            if self._script is None:
                self._script = self.backend.client.register_script(SLIDING_WINDOW_SCRIPT)
            allowed, remaining, reset_at = await self._script(
                keys=[full_key],
                args=[now, window_ms, limit, f"{now}-{uuid.uuid4().hex[:12]}"]
            )
        except (RedisError, OSError) as e:
            self.backend.report_failure(e)
            logger.error(f"Rate limit check failed for {full_key}, allowing request: {e}")
            return RateLimitResult(allowed=True, remaining=limit, reset_at=now + window_ms)
        return RateLimitResult(
            allowed=bool(int(allowed)),
            remaining=max(0, int(remaining)),
            reset_at=int(reset_at)
        )

    def _check_local(self, full_key: str, limit: int, window_ms: int) -> RateLimitResult:
        now = self._clock_ms()
        window = self._windows.setdefault(full_key, deque())
        while window and window[0] <= now - window_ms:
            window.popleft()

        if len(window) < limit:
            window.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=limit - len(window),
                reset_at=now + window_ms
            )
        return RateLimitResult(allowed=False, remaining=0, reset_at=window[0] + window_ms)

    def reset(self, key: Optional[str] = None) -> None:
        """Forget local windows for ``key`` (or all keys)."""
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(f"{self.key_prefix}{key}", None)
