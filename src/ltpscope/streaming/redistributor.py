"""
Market Redistributor

Single ingestion write path for live ticks. ``publish_update`` publishes a
message to the per-symbol channel ``{channel_prefix}{SYMBOL}`` and, for
quote/trade/bar messages, writes the hot cache that every quote reader
checks first.

Readers subscribe with ``subscribe_to_updates``. One shared pub/sub
connection serves all subscriptions in the process:

    disconnected -> connecting -> ready -> disconnected (connection lost)
    any state    -> closed

A lost connection is re-established with exponential backoff and every
channel that still has handlers is subscribed again. Each subscription has
its own queue and delivery task, so a slow or failing handler never blocks
other handlers or the read loop.

Without a Redis backend, published messages are fanned out to in-process
subscribers directly.
"""

import asyncio
import inspect
import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Dict, FrozenSet, Iterable, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from ..cache.backend import CacheBackend
from ..cache.tiered import HotCache
from ..config import StreamConfig
from ..errors import CacheUnavailableError, StateTransitionError
from ..logger import LogOnce, get_logger
from ..models.stream import CachedQuote, StreamMessage

logger = get_logger(__name__)

Handler = Callable[[StreamMessage], Any]
Unsubscribe = Callable[[], None]

POLL_TIMEOUT = 1.0
QUEUE_FULL = "subscriber-queue-full"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


VALID_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.CLOSED},
    ConnectionState.CONNECTING: {ConnectionState.READY, ConnectionState.DISCONNECTED, ConnectionState.CLOSED},
    ConnectionState.READY: {ConnectionState.DISCONNECTED, ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before reconnect ``attempt`` (0-based): ``base * 2**attempt``, capped."""
    return min(base_delay * (2 ** attempt), max_delay)


@dataclass(eq=False)
class _Subscription:
    id: int
    symbols: FrozenSet[str]
    handler: Handler
    queue: asyncio.Queue
    task: Optional[asyncio.Task] = None
    active: bool = True
    delivered: int = 0


@dataclass
class RedistributorStats:
    messages_published: int = 0
    publish_failures: int = 0
    messages_received: int = 0
    messages_dropped: int = 0
    parse_errors: int = 0
    handler_errors: int = 0
    reconnects: int = 0


class MarketRedistributor:
    """
    Publishes ingested ticks and fans them out to subscribers.

    Args:
        backend: Cache backend providing publish and the pub/sub connection
        hot_cache: Hot cache written for quote/trade/bar messages
        config: Channel naming, reconnect and queue settings
        connect: Factory returning a new pub/sub object; defaults to
            ``backend.client.pubsub()``
        sleep: Sleep coroutine used between reconnect attempts
    """

    def __init__(
        self,
        backend: CacheBackend,
        hot_cache: HotCache,
        config: Optional[StreamConfig] = None,
        connect: Optional[Callable[[], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.backend = backend
        self.hot_cache = hot_cache
        self.config = config or StreamConfig()
        self._connect_factory = connect or self._default_connect
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._pubsub: Optional[Any] = None
        self._channels: Set[str] = set()
        self._subscriptions: Dict[int, _Subscription] = {}
        self._by_symbol: Dict[str, Set[int]] = {}
        self._ids = itertools.count(1)

        self._connect_task: Optional[asyncio.Task] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._background: Set[asyncio.Task] = set()

        self._log_once = LogOnce(logger)
        self.stats = RedistributorStats()

    # State

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        if self._state == ConnectionState.CLOSED:
            return False
        if not self.backend.is_distributed:
            return True
        return self._state == ConnectionState.READY

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def subscribed_symbols(self) -> List[str]:
        return sorted(self._by_symbol)

    def _transition(self, target: ConnectionState) -> None:
        if target == self._state:
            return
        if target not in VALID_TRANSITIONS[self._state]:
            raise StateTransitionError(self._state.value, target.value)
        logger.debug(f"Redistributor state {self._state.value} -> {target.value}")
        self._state = target

    def channel(self, symbol: str) -> str:
        return f"{self.config.channel_prefix}{symbol.upper()}"

    def _symbol_for(self, channel: str) -> str:
        if channel.startswith(self.config.channel_prefix):
            return channel[len(self.config.channel_prefix):]
        return channel

    def _wanted_channels(self) -> Set[str]:
        return {self.channel(symbol) for symbol, ids in self._by_symbol.items() if ids}

    # Publishing

    async def publish_update(self, symbol: str, message: StreamMessage) -> bool:
        """
        Publish a message for ``symbol`` and update the hot cache.

        Args:
            symbol: Ticker symbol
            message: Stream message; its symbol is set to ``symbol`` if missing

        Returns:
            True if the message reached the channel (or the local subscribers
            in degraded mode)
        """
        if self._state == ConnectionState.CLOSED:
            return False

        symbol = symbol.upper()
        if message.symbol != symbol:
            message = message.model_copy(update={'symbol': symbol})

        if message.type.updates_hot_cache:
            await self.hot_cache.write(CachedQuote.from_message(symbol, message))

        if not self.backend.is_distributed:
            self._dispatch(symbol, message)
            self.stats.messages_published += 1
            return True

        result = await self.backend.publish(
            self.channel(symbol),
            message.model_dump_json(exclude_none=True)
        )
        if not result.is_ok():
            # Subscribers in this process still get the tick while Redis is down
            self.stats.publish_failures += 1
            self._dispatch(symbol, message)
            return False

        self.stats.messages_published += 1
        return True

    async def get_cached_quote(self, symbol: str) -> Optional[CachedQuote]:
        """Latest fresh tick for ``symbol`` from the hot cache."""
        return await self.hot_cache.read(symbol)

    # Subscribing

    async def subscribe_to_updates(self, symbols: Iterable[str], handler: Handler) -> Unsubscribe:
        """
        Register ``handler`` for messages on ``symbols``.

        The shared pub/sub connection is opened on first use and any
        channels not yet subscribed are added to it.

        Args:
            symbols: Ticker symbols to follow
            handler: Called with each StreamMessage; may be a coroutine function

        Returns:
            Synchronous, idempotent unsubscribe callable
        """
        normalized = frozenset(s.strip().upper() for s in symbols if s and s.strip())
        if self._state == ConnectionState.CLOSED:
            logger.warning("subscribe_to_updates called on a closed redistributor")
            return lambda: None
        if not normalized:
            return lambda: None

        subscription = _Subscription(
            id=next(self._ids),
            symbols=normalized,
            handler=handler,
            queue=asyncio.Queue(maxsize=self.config.subscriber_queue_size)
        )
        subscription.task = asyncio.create_task(self._deliver(subscription))
        self._subscriptions[subscription.id] = subscription
        for symbol in normalized:
            self._by_symbol.setdefault(symbol, set()).add(subscription.id)

        logger.debug(f"Subscription {subscription.id} registered for {', '.join(sorted(normalized))}")

        if self.backend.is_distributed:
            await self._ensure_channels()

        def unsubscribe() -> None:
            self._remove_subscription(subscription.id)

        return unsubscribe

    def _remove_subscription(self, subscription_id: int) -> None:
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None or not subscription.active:
            return
        subscription.active = False
        if subscription.task is not None:
            subscription.task.cancel()

        orphaned = set()
        for symbol in subscription.symbols:
            ids = self._by_symbol.get(symbol)
            if ids is None:
                continue
            ids.discard(subscription_id)
            if not ids:
                del self._by_symbol[symbol]
                orphaned.add(self.channel(symbol))

        logger.debug(f"Subscription {subscription_id} removed")

        stale = orphaned & self._channels
        if stale and self._state == ConnectionState.READY:
            self._spawn(self._unsubscribe_channels(stale))

    async def _ensure_channels(self) -> None:
        if self._state == ConnectionState.CONNECTING and self._connect_task is not None:
            await self._connect_task

        if self._state == ConnectionState.DISCONNECTED:
            if self._reconnect_task is not None and not self._reconnect_task.done():
                return
            self._connect_task = asyncio.create_task(self._connect())
            if not await self._connect_task:
                self._schedule_reconnect()
            return

        if self._state != ConnectionState.READY:
            return

        missing = self._wanted_channels() - self._channels
        if not missing:
            return
        try:
            await self._pubsub.subscribe(*sorted(missing))
        except (RedisError, OSError) as e:
            self._connection_lost(e)
            return
        self._channels |= missing
        logger.info(f"Subscribed to {len(missing)} channel(s)")

    async def _unsubscribe_channels(self, channels: Set[str]) -> None:
        pending = {c for c in channels if not self._by_symbol.get(self._symbol_for(c))}
        if not pending or self._pubsub is None or self._state != ConnectionState.READY:
            self._channels -= pending
            return
        try:
            await self._pubsub.unsubscribe(*sorted(pending))
        except (RedisError, OSError) as e:
            self._connection_lost(e)
            return
        self._channels -= pending
        logger.info(f"Unsubscribed from {len(pending)} channel(s)")

        # A handler registered while the unsubscribe was in flight needs its channel back
        if self._wanted_channels() & pending:
            await self._ensure_channels()

    # Connection

    async def _default_connect(self) -> Any:
        if self.backend.client is None:
            raise CacheUnavailableError("No Redis client configured for pub/sub")
        return self.backend.client.pubsub()

    async def _connect(self) -> bool:
        self._transition(ConnectionState.CONNECTING)
        channels = self._wanted_channels()
        pubsub = None
        try:
            pubsub = await self._connect_factory()
            if channels:
                await pubsub.subscribe(*sorted(channels))
        except (RedisError, OSError, CacheUnavailableError) as e:
            logger.warning(f"Subscriber connection failed: {e}")
            await self._close_pubsub(pubsub)
            if self._state == ConnectionState.CONNECTING:
                self._transition(ConnectionState.DISCONNECTED)
            return False

        if self._state == ConnectionState.CLOSED:
            await self._close_pubsub(pubsub)
            return False

        self._pubsub = pubsub
        self._channels = set(channels)
        self._transition(ConnectionState.READY)
        if self._reconnect_attempts:
            self.stats.reconnects += 1
            logger.info(f"Subscriber reconnected, resubscribed to {len(channels)} channel(s)")
        else:
            logger.info(f"Subscriber connected ({len(channels)} channel(s))")
        self._reconnect_attempts = 0
        self._listener_task = asyncio.create_task(self._listen(pubsub))
        if self._wanted_channels() - self._channels:
            self._spawn(self._ensure_channels())
        return True

    async def _listen(self, pubsub: Any) -> None:
        """Read loop for the shared pub/sub connection."""
        try:
            while self._state == ConnectionState.READY and self._pubsub is pubsub:
                if not self._channels:
                    await self._sleep(POLL_TIMEOUT)
                    continue
                raw = await pubsub.get_message(ignore_subscribe_messages=True, timeout=POLL_TIMEOUT)
                if raw is None:
                    continue
                self._handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except (RedisError, OSError) as e:
            self._connection_lost(e)

    def _handle_raw(self, raw: Dict[str, Any]) -> None:
        if raw.get('type') not in ('message', 'pmessage'):
            return
        self.stats.messages_received += 1
        channel = raw.get('channel')
        try:
            message = StreamMessage.model_validate_json(raw.get('data') or "")
        except (PydanticValidationError, ValueError, TypeError) as e:
            self.stats.parse_errors += 1
            logger.warning(f"Discarding malformed message on {channel}: {e}")
            return

        symbol = self._symbol_for(str(channel))
        if message.symbol is None:
            message = message.model_copy(update={'symbol': symbol})
        self._dispatch(symbol, message)

    def _connection_lost(self, error: Exception) -> None:
        if self._state in (ConnectionState.CLOSED, ConnectionState.DISCONNECTED):
            return
        logger.warning(f"Subscriber connection lost: {error}")
        stale = self._pubsub
        self._pubsub = None
        self._channels = set()
        self._transition(ConnectionState.DISCONNECTED)
        if stale is not None:
            self._spawn(self._close_pubsub(stale))
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._state == ConnectionState.CLOSED:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        max_attempts = self.config.max_reconnect_attempts
        while self._state == ConnectionState.DISCONNECTED and self._wanted_channels():
            if self._reconnect_attempts >= max_attempts:
                logger.error(f"Subscriber reconnect gave up after {max_attempts} attempts")
                return

            delay = backoff_delay(
                self._reconnect_attempts,
                self.config.base_reconnect_delay,
                self.config.max_reconnect_delay
            )
            self._reconnect_attempts += 1
            logger.info(f"Reconnecting subscriber in {delay:.1f}s (attempt {self._reconnect_attempts}/{max_attempts})")
            await self._sleep(delay)

            if self._state != ConnectionState.DISCONNECTED:
                return
            if await self._connect():
                return

    async def _close_pubsub(self, pubsub: Optional[Any]) -> None:
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Error closing pub/sub connection: {e}")

    # Delivery

    def _dispatch(self, symbol: str, message: StreamMessage) -> None:
        for subscription_id in list(self._by_symbol.get(symbol, ())):
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None or not subscription.active:
                continue
            try:
                subscription.queue.put_nowait(message)
            except asyncio.QueueFull:
                self.stats.messages_dropped += 1
                self._log_once.warning(
                    f"{QUEUE_FULL}:{subscription_id}",
                    f"Subscription {subscription_id} queue full, dropping messages"
                )

    async def _deliver(self, subscription: _Subscription) -> None:
        while subscription.active:
            message = await subscription.queue.get()
            try:
                result = subscription.handler(message)
                if inspect.isawaitable(result):
                    await result
                subscription.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.handler_errors += 1
                logger.error(f"Error in stream handler for {message.symbol} (subscription {subscription.id}): {e}")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop; nothing left to clean up remotely
            coro.close()
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Shutdown

    async def close(self) -> None:
        """Cancel reconnect timers and tasks and close the subscriber connection."""
        if self._state == ConnectionState.CLOSED:
            return
        self._transition(ConnectionState.CLOSED)

        tasks = [t for t in (self._reconnect_task, self._listener_task, self._connect_task) if t is not None]
        tasks.extend(s.task for s in self._subscriptions.values() if s.task is not None)
        tasks.extend(self._background)
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for subscription in self._subscriptions.values():
            subscription.active = False
        self._subscriptions.clear()
        self._by_symbol.clear()
        self._channels.clear()

        await self._close_pubsub(self._pubsub)
        self._pubsub = None
        logger.info("Redistributor closed")

    def get_status(self) -> Dict[str, Any]:
        return {
            'state': self._state.value,
            'distributed': self.backend.is_distributed,
            'subscriptions': self.subscription_count,
            'symbols': self.subscribed_symbols,
            'channels': sorted(self._channels),
            'reconnect_attempts': self._reconnect_attempts,
            'messages_published': self.stats.messages_published,
            'publish_failures': self.stats.publish_failures,
            'messages_received': self.stats.messages_received,
            'messages_dropped': self.stats.messages_dropped,
            'parse_errors': self.stats.parse_errors,
            'handler_errors': self.stats.handler_errors,
            'reconnects': self.stats.reconnects,
        }
