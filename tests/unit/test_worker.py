"""
Unit tests for the WebSocket ingestion worker.
"""

import asyncio
import json
from typing import Any, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from ltpscope.config import ProviderConfig, StreamConfig
from ltpscope.models.stream import StreamMessageType
from ltpscope.streaming.redistributor import MarketRedistributor
from ltpscope.streaming.worker import (
    IngestionWorker,
    format_uptime,
    subscription_params,
    translate_event,
)


class FakeWebSocket:
    """Replays a fixed list of frames and records what the worker sends."""

    def __init__(self, frames: List[Any]):
        self.frames = list(frames)
        self.sent: List[dict] = []
        self.closed = False

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            await asyncio.sleep(0)
            yield frame


class FakeConnect:
    """``websockets.connect`` stand-in; raises OSError once its sockets run out."""

    def __init__(self, *sockets: FakeWebSocket):
        self.sockets = list(sockets)
        self.urls: List[str] = []

    def __call__(self, url: str) -> "FakeConnect":
        self.urls.append(url)
        if not self.sockets:
            raise OSError("connection refused")
        self._current = self.sockets.pop(0)
        return self

    async def __aenter__(self) -> FakeWebSocket:
        return self._current

    async def __aexit__(self, *exc_info) -> bool:
        return False


async def no_sleep(delay: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def redistributor() -> MagicMock:
    mock = MagicMock(spec=MarketRedistributor)
    mock.backend = MagicMock(is_distributed=True)
    mock.publish_update = AsyncMock(return_value=True)
    return mock


def make_worker(redistributor: MagicMock, connect: Optional[FakeConnect] = None,
                api_key: Optional[str] = "test-key", **stream: Any) -> IngestionWorker:
    stream.setdefault("watchlist", ["SPY", "QQQ"])
    stream.setdefault("worker_max_reconnect_attempts", 1)
    return IngestionWorker(
        redistributor,
        ProviderConfig(api_key=api_key, ws_url="wss://stream.test.local/stocks"),
        StreamConfig(**stream),
        connect=connect or FakeConnect(),
        sleep=no_sleep,
        clock=lambda: 1_000.0
    )


class TestTranslateEvent:
    """Test provider event translation."""

    def test_trade(self) -> None:
        """Test that T events become trade messages."""
        symbol, message = translate_event({"ev": "T", "sym": "spy", "p": 501.2, "s": 100, "t": 1_741_786_200_000})

        assert symbol == "SPY"
        assert message.type == StreamMessageType.TRADE
        assert message.data.price == 501.2
        assert message.data.size == 100
        assert message.data.timestamp == 1_741_786_200_000

    def test_minute_aggregate(self) -> None:
        """Test that AM events become bar messages timed by their start."""
        symbol, message = translate_event({
            "ev": "AM", "sym": "QQQ", "o": 1, "h": 2, "l": 0.5, "c": 1.5, "v": 900, "vw": 1.2,
            "s": 1_741_786_200_000, "e": 1_741_786_260_000
        })

        assert message.type == StreamMessageType.BAR
        assert message.data.close == 1.5
        assert message.data.vwap == 1.2
        assert message.data.timestamp == 1_741_786_200_000

    def test_unknown_events_ignored(self) -> None:
        """Test that events without market data are skipped."""
        assert translate_event({"ev": "status", "status": "connected"}) is None
        assert translate_event({"ev": "T"}) is None
        assert translate_event({"ev": "LULD", "sym": "SPY"}) is None

    def test_subscription_params(self) -> None:
        """Test trade and minute-aggregate subscribe strings."""
        assert subscription_params(["SPY", "QQQ"]) == ["T.SPY,T.QQQ", "AM.SPY,AM.QQQ"]

    def test_format_uptime(self) -> None:
        """Test uptime rendering."""
        assert format_uptime(5) == "5s"
        assert format_uptime(65) == "1m 5s"
        assert format_uptime(3725) == "1h 2m 5s"


class TestIngestionWorker:
    """Test the worker's connection lifecycle."""

    def test_validate_config_reports_missing_settings(self, redistributor: MagicMock) -> None:
        """Test that missing API key, Redis and watchlist are all reported."""
        redistributor.backend.is_distributed = False
        worker = make_worker(redistributor, api_key=None, watchlist=[])

        errors = worker.validate_config()

        assert errors == [
            "MARKET_API_KEY is required",
            "REDIS_URL is required",
            "MARKET_WATCHLIST is empty",
        ]

    @pytest.mark.asyncio
    async def test_run_refuses_invalid_config(self, redistributor: MagicMock) -> None:
        """Test that the worker does not start without required settings."""
        connect = FakeConnect()
        worker = make_worker(redistributor, connect, api_key=None)

        assert await worker.run() is False
        assert connect.urls == []

    @pytest.mark.asyncio
    async def test_auth_subscribe_and_publish(self, redistributor: MagicMock) -> None:
        """Test the auth handshake, subscription and republishing of events."""
        websocket = FakeWebSocket([
            json.dumps([{"ev": "status", "status": "connected", "message": "Connected Successfully"}]),
            json.dumps([{"ev": "status", "status": "auth_success", "message": "authenticated"}]),
            json.dumps([
                {"ev": "T", "sym": "SPY", "p": 500.5, "s": 10, "t": 1_741_786_200_000},
                {"ev": "AM", "sym": "QQQ", "o": 1, "h": 2, "l": 0.5, "c": 1.5, "v": 900, "s": 1_741_786_200_000},
            ]),
            "not json",
        ])
        connect = FakeConnect(websocket)
        worker = make_worker(redistributor, connect)

        # The second connection attempt is refused, so the run ends after one backoff
        assert await worker.run() is False

        assert connect.urls == ["wss://stream.test.local/stocks", "wss://stream.test.local/stocks"]
        assert websocket.sent == [
            {"action": "auth", "params": "test-key"},
            {"action": "subscribe", "params": "T.SPY,T.QQQ"},
            {"action": "subscribe", "params": "AM.SPY,AM.QQQ"},
        ]
        published = [call.args for call in redistributor.publish_update.await_args_list]
        assert [symbol for symbol, _ in published] == ["SPY", "QQQ"]
        assert published[0][1].data.price == 500.5
        assert worker.message_count == 2
        assert worker.is_connected is False

    @pytest.mark.asyncio
    async def test_auth_failure_does_not_subscribe(self, redistributor: MagicMock) -> None:
        """Test that a failed auth never sends subscribe frames."""
        websocket = FakeWebSocket([json.dumps([{"ev": "status", "status": "auth_failed", "message": "bad key"}])])
        worker = make_worker(redistributor, FakeConnect(websocket))

        await worker.run()

        assert websocket.sent == [{"action": "auth", "params": "test-key"}]
        assert worker.is_authenticated is False

    @pytest.mark.asyncio
    async def test_publish_failures_counted(self, redistributor: MagicMock) -> None:
        """Test that failed publishes are counted without stopping ingestion."""
        redistributor.publish_update.side_effect = [False, RuntimeError("boom"), True]
        worker = make_worker(redistributor)

        await worker.handle_raw(json.dumps([
            {"ev": "T", "sym": "SPY", "p": 1.0},
            {"ev": "T", "sym": "SPY", "p": 2.0},
            {"ev": "T", "sym": "SPY", "p": 3.0},
        ]))

        assert worker.message_count == 3
        assert worker.publish_failures == 2

    @pytest.mark.asyncio
    async def test_single_event_frame_accepted(self, redistributor: MagicMock) -> None:
        """Test that a frame holding one object instead of an array is processed."""
        worker = make_worker(redistributor)

        await worker.handle_raw(json.dumps({"ev": "T", "sym": "SPY", "p": 1.0}))

        assert worker.message_count == 1

    @pytest.mark.asyncio
    async def test_reconnect_attempts_exhausted(self, redistributor: MagicMock) -> None:
        """Test that the worker gives up after the configured number of reconnects."""
        connect = FakeConnect()
        worker = make_worker(redistributor, connect, worker_max_reconnect_attempts=3)

        assert await worker.run() is False
        assert len(connect.urls) == 4
        assert worker.reconnect_attempts == 3

    def test_health_status(self, redistributor: MagicMock) -> None:
        """Test the health report fields."""
        worker = make_worker(redistributor)
        worker.message_count = 12
        worker.last_message_time = 990.0

        status = worker.health_status()

        assert status['uptime'] == "0s"
        assert status['total_messages'] == 12
        assert status['last_message'] == "10s ago"
        assert status['connected'] is False
