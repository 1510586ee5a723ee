"""
Market data ingestion worker.

Keeps one WebSocket connection to the provider, authenticates, subscribes
to trades (``T``) and minute aggregates (``AM``) for the watchlist and
republishes every event through the ``MarketRedistributor``. Any number of
service instances then read the hot cache or subscribe to the channels
without opening their own upstream connection.
"""

import asyncio
import json
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import websockets
from websockets.exceptions import WebSocketException

from ..config import ProviderConfig, StreamConfig
from ..logger import get_logger
from ..models.stream import StreamData, StreamMessage, StreamMessageType
from .redistributor import MarketRedistributor, backoff_delay

logger = get_logger(__name__)

SILENCE_WARNING_SECONDS = 300


def translate_event(event: Dict[str, Any]) -> Optional[Tuple[str, StreamMessage]]:
    """
    Translate one provider event into a stream message.

    Args:
        event: Decoded provider event (``ev`` is T, Q, A or AM)

    Returns:
        (symbol, message), or None for events that carry no market data
    """
    ev = event.get('ev')
    symbol = event.get('sym')
    if not symbol or ev not in ('T', 'Q', 'A', 'AM'):
        return None
    symbol = str(symbol).upper()

    if ev in ('T', 'Q'):
        data = StreamData(price=event.get('p'), size=event.get('s'), timestamp=event.get('t'))
        kind = StreamMessageType.TRADE if ev == 'T' else StreamMessageType.QUOTE
    else:
        data = StreamData(
            open=event.get('o'),
            high=event.get('h'),
            low=event.get('l'),
            close=event.get('c'),
            volume=event.get('v'),
            vwap=event.get('vw'),
            timestamp=event.get('t') or event.get('s')
        )
        kind = StreamMessageType.BAR

    return symbol, StreamMessage(type=kind, symbol=symbol, data=data)


def subscription_params(symbols: Iterable[str]) -> List[str]:
    """Subscribe params for trades and minute aggregates."""
    symbols = list(symbols)
    return [
        ",".join(f"T.{s}" for s in symbols),
        ",".join(f"AM.{s}" for s in symbols),
    ]


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class IngestionWorker:
    """
    Single upstream WebSocket ingestion.

    Args:
        redistributor: Publish path for translated events
        provider: API key and WebSocket URL
        stream: Watchlist, reconnect and health-check settings
        connect: WebSocket connect function (``websockets.connect``)
        sleep: Sleep coroutine used for backoff and health checks
        clock: Wall clock in seconds
    """

    def __init__(
        self,
        redistributor: MarketRedistributor,
        provider: ProviderConfig,
        stream: Optional[StreamConfig] = None,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.time
    ):
        self.redistributor = redistributor
        self.provider = provider
        self.stream = stream or StreamConfig()
        self._connect = connect
        self._sleep = sleep
        self._clock = clock

        self.is_connected = False
        self.is_authenticated = False
        self.reconnect_attempts = 0
        self.subscribed_symbols: set = set()
        self.message_count = 0
        self.publish_failures = 0
        self.last_message_time = 0.0
        self.start_time = clock()

        self._running = False
        self._websocket = None
        self._health_task: Optional[asyncio.Task] = None

    def validate_config(self) -> List[str]:
        """Return configuration problems that prevent ingestion."""
        errors = []
        if not self.provider.api_key:
            errors.append("MARKET_API_KEY is required")
        if not self.redistributor.backend.is_distributed:
            errors.append("REDIS_URL is required")
        if not self.stream.watchlist:
            errors.append("MARKET_WATCHLIST is empty")
        return errors

    async def run(self) -> bool:
        """
        Run until stopped or reconnect attempts are exhausted.

        Returns:
            False if the worker could not start or gave up reconnecting
        """
        errors = self.validate_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration invalid: {error}")
            return False

        logger.info(f"Starting ingestion worker for {', '.join(self.stream.watchlist)}")
        self._running = True
        self.start_time = self._clock()
        self._health_task = asyncio.create_task(self._health_loop())

        try:
            while self._running:
                await self._session()
                if not self._running:
                    break

                if self.reconnect_attempts >= self.stream.worker_max_reconnect_attempts:
                    logger.error(
                        f"Max reconnect attempts ({self.stream.worker_max_reconnect_attempts}) reached, stopping"
                    )
                    return False

                delay = backoff_delay(
                    self.reconnect_attempts,
                    self.stream.worker_base_reconnect_delay,
                    self.stream.worker_max_reconnect_delay
                )
                self.reconnect_attempts += 1
                logger.info(
                    f"Reconnecting in {delay:.1f}s "
                    f"(attempt {self.reconnect_attempts}/{self.stream.worker_max_reconnect_attempts})"
                )
                await self._sleep(delay)
            return True
        finally:
            await self._shutdown()

    async def _session(self) -> None:
        """One connection lifetime: connect, authenticate, read until closed."""
        logger.info(f"Connecting to {self.provider.ws_url}")
        try:
            async with self._connect(self.provider.ws_url) as websocket:
                self._websocket = websocket
                self.is_connected = True
                self.reconnect_attempts = 0
                logger.info("WebSocket connected, authenticating")
                await websocket.send(json.dumps({"action": "auth", "params": self.provider.api_key}))

                async for raw in websocket:
                    await self.handle_raw(raw)
                    if not self._running:
                        break
        except asyncio.CancelledError:
            raise
        except (WebSocketException, OSError) as e:
            logger.warning(f"WebSocket connection lost: {e}")
        finally:
            self._websocket = None
            self.is_connected = False
            self.is_authenticated = False
            self.subscribed_symbols.clear()

    async def handle_raw(self, raw: Any) -> None:
        """Decode a frame (a JSON array of events) and process each event."""
        try:
            events = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to parse message: {e}")
            logger.debug(f"Raw message: {raw!r}")
            return

        if isinstance(events, dict):
            events = [events]
        for event in events:
            if isinstance(event, dict):
                await self.process_event(event)

    async def process_event(self, event: Dict[str, Any]) -> None:
        if event.get('ev') == 'status':
            await self._handle_status(event)
            return

        translated = translate_event(event)
        if translated is None:
            logger.debug(f"Unknown message type: {event}")
            return

        symbol, message = translated
        self.message_count += 1
        self.last_message_time = self._clock()
        try:
            if not await self.redistributor.publish_update(symbol, message):
                self.publish_failures += 1
                logger.warning(f"Failed to publish update for {symbol}")
        except Exception as e:
            self.publish_failures += 1
            logger.error(f"Error publishing update for {symbol}: {e}")

    async def _handle_status(self, event: Dict[str, Any]) -> None:
        status = event.get('status')
        if status == 'auth_success':
            logger.info("Authentication successful")
            self.is_authenticated = True
            await self._subscribe()
        elif status == 'auth_failed':
            logger.error(f"Authentication failed: {event.get('message')}")
            self.is_authenticated = False
        elif status == 'error':
            logger.error(f"Server error: {event.get('message')}")
        elif status == 'connected':
            logger.info("Connected status received")
        else:
            logger.debug(f"Status message: {event}")

    async def _subscribe(self) -> None:
        if self._websocket is None or not self.is_authenticated:
            logger.warning("Cannot subscribe, not ready")
            return
        symbols = self.stream.watchlist
        logger.info(f"Subscribing to {len(symbols)} symbols")
        for params in subscription_params(symbols):
            await self._websocket.send(json.dumps({"action": "subscribe", "params": params}))
        self.subscribed_symbols.update(symbols)

    def health_status(self) -> Dict[str, Any]:
        now = self._clock()
        last = f"{int(now - self.last_message_time)}s ago" if self.last_message_time else "never"
        return {
            'uptime': format_uptime(now - self.start_time),
            'connected': self.is_connected,
            'authenticated': self.is_authenticated,
            'subscribed_symbols': len(self.subscribed_symbols),
            'total_messages': self.message_count,
            'publish_failures': self.publish_failures,
            'last_message': last,
            'reconnect_attempts': self.reconnect_attempts,
        }

    def check_health(self) -> Dict[str, Any]:
        status = self.health_status()
        logger.info(f"Health check: {status}")
        if self.is_connected and self.is_authenticated and self.last_message_time:
            silence = self._clock() - self.last_message_time
            if silence > SILENCE_WARNING_SECONDS:
                logger.warning(
                    f"No messages received in {int(silence)}s, market may be closed or connection stale"
                )
        return status

    async def _health_loop(self) -> None:
        try:
            while self._running:
                await self._sleep(self.stream.health_check_interval)
                self.check_health()
        except asyncio.CancelledError:
            logger.debug("Health check loop stopped")

    async def stop(self) -> None:
        """Ask the worker to stop and close the current connection."""
        if not self._running:
            return
        logger.info("Stopping ingestion worker")
        self._running = False
        if self._websocket is not None:
            try:
                await self._websocket.close()
            except (WebSocketException, OSError) as e:
                logger.debug(f"Error closing WebSocket: {e}")

    async def _shutdown(self) -> None:
        self._running = False
        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None
        logger.info(f"Ingestion worker stopped after {self.message_count} messages")
