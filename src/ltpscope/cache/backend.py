"""
Cache backend: an optional Redis connection plus an in-process store.

Every Redis call goes through ``CacheBackend``, which fails open. A
connection or command error is logged once, the backend is treated as
unavailable for ``retry_interval`` seconds, and callers get
``Unavailable`` back instead of an exception.
"""

import fnmatch
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..logger import LogOnce, get_logger
from ..models.result import Ok, Result, Unavailable

logger = get_logger(__name__)

BACKEND_DOWN = "cache-backend-down"


class MemoryStore:
    """
    In-process key/value store with per-entry expiry.

    Values are stored as Python objects. Expired entries are dropped on
    read, so an entry is never returned after its TTL even if it has not
    been swept yet.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_matching(self, pattern: str) -> int:
        """Delete keys matching a glob pattern. Returns the number removed."""
        doomed = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class CacheBackend:
    """
    Fail-open wrapper around an optional ``redis.asyncio`` client.

    With no client (no ``REDIS_URL`` configured) every call returns
    ``Unavailable("not configured")`` and callers use their in-process
    fallback.
    """

    def __init__(
        self,
        client: Optional[aioredis.Redis] = None,
        retry_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.client = client
        self.retry_interval = retry_interval
        self._clock = clock
        self._unavailable_until = 0.0
        self._log_once = LogOnce(logger)

    @classmethod
    def from_url(
        cls,
        redis_url: Optional[str],
        max_connections: int = 25,
        socket_timeout: float = 2.0,
        **kwargs
    ) -> "CacheBackend":
        """Build a backend from a connection string; ``None`` gives a memory-only backend."""
        if not redis_url:
            logger.info("No REDIS_URL configured, cache runs in-process only")
            return cls(client=None, **kwargs)

        pool = aioredis.ConnectionPool.from_url(
            redis_url,
            max_connections=max_connections,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
            decode_responses=True
        )
        logger.info(f"Created Redis connection pool (max={max_connections})")
        return cls(client=aioredis.Redis(connection_pool=pool), **kwargs)

    @property
    def is_distributed(self) -> bool:
        return self.client is not None

    @property
    def is_available(self) -> bool:
        return self.client is not None and self._clock() >= self._unavailable_until

    def report_failure(self, error: Exception) -> Unavailable:
        """Record a backend failure and back off for ``retry_interval``."""
        self._unavailable_until = self._clock() + self.retry_interval
        self._log_once.warning(
            BACKEND_DOWN,
            f"Cache backend unavailable, falling back to in-process cache: {error}"
        )
        return Unavailable(reason=str(error))

    def report_success(self) -> None:
        if self._log_once.reset(BACKEND_DOWN):
            logger.info("Cache backend connection restored")

    def _check(self) -> Optional[Unavailable]:
        if self.client is None:
            return Unavailable(reason="not configured")
        if self._clock() < self._unavailable_until:
            return Unavailable(reason="backing off after failure")
        return None

    async def get(self, key: str) -> Result[Optional[str]]:
        """Get a raw value. ``Ok(None)`` is a miss, ``Unavailable`` a backend failure."""
        blocked = self._check()
        if blocked:
            return blocked
        try:
            value = await self.client.get(key)
        except (RedisError, OSError) as e:
            return self.report_failure(e)
        self.report_success()
        return Ok(value)

    async def setex(self, key: str, ttl: int, value: str) -> Result[bool]:
        blocked = self._check()
        if blocked:
            return blocked
        try:
            await self.client.setex(key, max(1, int(ttl)), value)
        except (RedisError, OSError) as e:
            return self.report_failure(e)
        self.report_success()
        return Ok(True)

    async def delete(self, *keys: str) -> Result[int]:
        blocked = self._check()
        if blocked:
            return blocked
        if not keys:
            return Ok(0)
        try:
            removed = await self.client.delete(*keys)
        except (RedisError, OSError) as e:
            return self.report_failure(e)
        return Ok(int(removed))

    async def delete_pattern(self, pattern: str, batch_size: int = 500) -> Result[int]:
        """Scan for keys matching ``pattern`` and delete them in batches."""
        blocked = self._check()
        if blocked:
            return blocked
        removed = 0
        batch = []
        try:
            async for key in self.client.scan_iter(match=pattern, count=batch_size):
                batch.append(key)
                if len(batch) >= batch_size:
                    removed += await self.client.delete(*batch)
                    batch = []
            if batch:
                removed += await self.client.delete(*batch)
        except (RedisError, OSError) as e:
            return self.report_failure(e)
        return Ok(int(removed))

    async def publish(self, channel: str, message: str) -> Result[int]:
        """Publish to a channel. Returns the number of receiving subscribers."""
        blocked = self._check()
        if blocked:
            return blocked
        try:
            receivers = await self.client.publish(channel, message)
        except (RedisError, OSError) as e:
            return self.report_failure(e)
        self.report_success()
        return Ok(int(receivers))

    async def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            await self.client.ping()
        except (RedisError, OSError) as e:
            self.report_failure(e)
            return False
        self._unavailable_until = 0.0
        self.report_success()
        return True

    async def close(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing cache backend: {e}")
        finally:
            self.client = None
