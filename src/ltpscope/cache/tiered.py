"""
Tiered get-or-compute cache.

Lookup order for ``TieredCache.get_or_compute``:

1. Hot cache: the latest tick written by the redistributor, used only when
   the caller names a symbol and it is younger than the freshness window.
2. Keyed compute cache: Redis under ``{prefix}:{key}``, then the in-process
   store, both bounded by the caller's TTL.
3. The compute function. Non-``None`` results are stored in both layers;
   ``None`` is never cached.

Backend failures never reach the caller; the cache degrades to in-process
storage. Redis writes run as background tasks so a slow or failing store
never delays the read.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TypeVar

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..logger import get_logger
from ..models.market_data import IndexQuote
from ..models.stream import CachedQuote, now_ms
from .backend import CacheBackend, MemoryStore

logger = get_logger(__name__)

T = TypeVar("T")


class HotCache:
    """
    Latest-tick cache keyed by ``{prefix}{SYMBOL}``.

    Entries carry their tick timestamp. Reads compare it against the
    freshness window explicitly, so a stale entry is never served even when
    the store has not evicted it yet.
    """

    def __init__(
        self,
        backend: CacheBackend,
        prefix: str = "quote:",
        ttl: int = 10,
        freshness_seconds: float = 5.0,
        memory: Optional[MemoryStore] = None,
        clock_ms: Callable[[], int] = now_ms
    ):
        self.backend = backend
        self.prefix = prefix
        self.ttl = ttl
        self.freshness_ms = freshness_seconds * 1000
        self.memory = memory or MemoryStore()
        self._clock_ms = clock_ms

    def key(self, symbol: str) -> str:
        return f"{self.prefix}{symbol.upper()}"

    async def write(self, quote: CachedQuote) -> bool:
        """Store the latest tick. Last writer wins."""
        key = self.key(quote.symbol)
        self.memory.set(key, quote, self.ttl)
        if not self.backend.is_distributed:
            return True
        result = await self.backend.setex(key, self.ttl, quote.model_dump_json())
        return result.is_ok()

    async def read(self, symbol: str) -> Optional[CachedQuote]:
        """Return the latest tick if it is within the freshness window."""
        key = self.key(symbol)
        cached: Optional[CachedQuote] = None

        result = await self.backend.get(key)
        if result.is_ok() and result.value:
            try:
                cached = CachedQuote.model_validate_json(result.value)
            except PydanticValidationError as e:
                logger.warning(f"Discarding malformed hot-cache entry {key}: {e}")
        if cached is None:
            cached = self.memory.get(key)

        if cached is None or not cached.is_fresh(self.freshness_ms, self._clock_ms()):
            return None
        return cached

    async def read_index(self, ticker: str) -> Optional[IndexQuote]:
        """Return a hot index value (``index:{TICKER}``) within the freshness window."""
        key = f"index:{ticker.upper()}"
        result = await self.backend.get(key)
        if not result.is_ok() or not result.value:
            return None
        try:
            document = json.loads(result.value)
            timestamp = document.get("timestamp")
            if not isinstance(timestamp, (int, float)):
                return None
            if self._clock_ms() - timestamp > self.freshness_ms:
                return None
            return IndexQuote.model_validate(document)
        except (ValueError, PydanticValidationError) as e:
            logger.warning(f"Discarding malformed hot index entry {key}: {e}")
            return None


class TieredCache:
    """Get-or-compute cache over a ``CacheBackend`` and an in-process store."""

    def __init__(
        self,
        backend: CacheBackend,
        hot: Optional[HotCache] = None,
        key_prefix: str = "market",
        memory: Optional[MemoryStore] = None
    ):
        self.backend = backend
        self.hot = hot
        self.key_prefix = key_prefix
        self.memory = memory or MemoryStore()
        self._adapters: Dict[Any, TypeAdapter] = {}
        self._pending: Set[asyncio.Task] = set()
        self.stats = {
            "hot_hits": 0,
            "store_hits": 0,
            "memory_hits": 0,
            "computed": 0,
            "write_failures": 0,
        }

    def _full_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def _adapter(self, schema: Any) -> TypeAdapter:
        adapter = self._adapters.get(schema)
        if adapter is None:
            adapter = TypeAdapter(schema)
            self._adapters[schema] = adapter
        return adapter

    async def get_or_compute(
        self,
        key: str,
        ttl: int,
        compute: Callable[[], Awaitable[Optional[T]]],
        schema: Any = None,
        hot_symbol: Optional[str] = None,
        from_hot: Optional[Callable[[CachedQuote], T]] = None
    ) -> Optional[T]:
        """
        Return a cached value for ``key`` or compute and store it.

        Args:
            key: Logical cache key (without the store prefix)
            ttl: Time-to-live in seconds for computed values
            compute: Coroutine function producing the value; may return None
            schema: Type used to (de)serialize the value for the shared store.
                Without one the value is only cached in-process.
            hot_symbol: Symbol whose hot-cache tick can answer this key
            from_hot: Converts a fresh hot-cache tick into the value type

        Returns:
            The cached or computed value, or None if compute produced none
        """
        if hot_symbol and from_hot and self.hot is not None:
            tick = await self.hot.read(hot_symbol)
            if tick is not None:
                self.stats["hot_hits"] += 1
                return from_hot(tick)

        cached = await self.get_value(key, schema)
        if cached is not None:
            return cached

        value = await compute()
        self.stats["computed"] += 1
        if value is None:
            return None

        self.memory.set(self._full_key(key), value, ttl)
        if schema is not None and self.backend.is_distributed:
            payload = self._adapter(schema).dump_json(value).decode()
            self._spawn(self._store(self._full_key(key), ttl, payload))
        return value

    async def get_value(self, key: str, schema: Any = None) -> Optional[Any]:
        """Read a value from the shared store, then the in-process store."""
        full_key = self._full_key(key)

        if schema is not None:
            result = await self.backend.get(full_key)
            if result.is_ok() and result.value is not None:
                try:
                    value = self._adapter(schema).validate_json(result.value)
                    self.stats["store_hits"] += 1
                    return value
                except PydanticValidationError as e:
                    logger.warning(f"Ignoring undecodable cache entry {full_key}: {e}")

        value = self.memory.get(full_key)
        if value is not None:
            self.stats["memory_hits"] += 1
        return value

    async def set_value(self, key: str, value: Any, ttl: int, schema: Any = None) -> None:
        full_key = self._full_key(key)
        self.memory.set(full_key, value, ttl)
        if schema is not None and self.backend.is_distributed:
            payload = self._adapter(schema).dump_json(value).decode()
            await self._store(full_key, ttl, payload)

    async def clear(self, symbol: Optional[str] = None) -> int:
        """Drop cached entries mentioning ``symbol``, or everything."""
        pattern = f"{self.key_prefix}:*{symbol.upper()}*" if symbol else f"{self.key_prefix}:*"
        removed = self.memory.delete_matching(pattern)
        result = await self.backend.delete_pattern(pattern)
        if result.is_ok():
            removed += result.value
        return removed

    async def _store(self, full_key: str, ttl: int, payload: str) -> None:
        result = await self.backend.setex(full_key, ttl, payload)
        if not result.is_ok():
            self.stats["write_failures"] += 1

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for outstanding background writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
