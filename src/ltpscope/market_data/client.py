"""
Market data provider client.

Thin async wrapper over the provider's REST API (Polygon-compatible
endpoints). It normalizes provider JSON into ``ltpscope.models`` types and
holds no state beyond its configuration and HTTP connection pool.

Error contract:
- No API key: every call returns ``None`` or an empty collection.
- Network errors, timeouts and non-2xx responses are logged and collapse
  to ``None``/empty. ``fetch`` itself returns a typed ``Ok``/``Unavailable``
  result so callers that care can tell "empty" from "failed".
- Malformed input (unparseable option tickers, non-finite bars) is
  filtered or rejected with a warning.

There are no retries here; callers bound latency with ``timeout``.
"""

import math
import re
import time
from collections import deque
from datetime import date, datetime, time as dtime, timedelta
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple
from zoneinfo import ZoneInfo

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..config import ProviderConfig
from ..errors import ValidationError
from ..logger import LogOnce, get_logger
from ..models.market_data import (
    Bar,
    ContractType,
    IndexQuote,
    IndicatorSeries,
    IndicatorValue,
    MACDSeries,
    MACDValue,
    MarketStatus,
    OptionContract,
    OptionsChain,
    Quote,
    TickerDetails,
    utc_now,
)
from ..models.result import Ok, Result, Unavailable, value_or_none

logger = get_logger(__name__)

EXCHANGE_TZ = ZoneInfo("America/New_York")

INDEX_TICKERS = {
    "VIX": "I:VIX",
    "SPX": "I:SPX",
    "NDX": "I:NDX",
    "DJI": "I:DJI",
    "RUT": "I:RUT",
    "DJIA": "I:DJI",
    "SP500": "I:SPX",
    "NASDAQ": "I:NDX",
    "RUSSELL": "I:RUT",
}

OPTION_TICKER_PATTERN = re.compile(r"^O?:?([A-Z]+)(\d{6})([CP])(\d+)$")

# Calendar days added to intraday look-backs so weekends and holidays
# still leave ``limit`` bars in the requested range.
INTRADAY_LOOKBACK_BUFFER_DAYS = 4


class ParsedOptionTicker(NamedTuple):
    underlying: str
    expiration: str
    contract_type: ContractType
    strike: float


def normalize_timespan(timespan: str) -> Tuple[int, str]:
    """
    Map a timespan label to the provider's (multiplier, timespan) pair.

    'day'/'daily' -> (1, 'day'), 'week'/'weekly' -> (1, 'week'),
    'hour'/'60' -> (1, 'hour'), '240' -> (4, 'hour'), any other integer N ->
    (N, 'minute'); anything else passes through with multiplier 1.
    """
    span = str(timespan).strip().lower()
    if span in ("day", "daily"):
        return 1, "day"
    if span in ("week", "weekly"):
        return 1, "week"
    if span in ("hour", "60"):
        return 1, "hour"
    if span == "240":
        return 4, "hour"
    try:
        return int(span), "minute"
    except ValueError:
        return 1, span


def lookback_days(span: str, limit: int) -> int:
    """Calendar days to request so the range covers ``limit`` bars."""
    if span == "week":
        return limit * 7
    if span == "day":
        return limit
    if span == "hour":
        return math.ceil(limit / 7) + INTRADAY_LOOKBACK_BUFFER_DAYS
    return math.ceil(limit / 78) + INTRADAY_LOOKBACK_BUFFER_DAYS


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def parse_bars(results: Optional[Iterable[Dict[str, Any]]]) -> List[Bar]:
    """Convert provider aggregate rows into bars, dropping malformed rows."""
    bars = []
    dropped = 0
    for row in results or []:
        if not all(_finite(row.get(k)) for k in ("t", "o", "h", "l", "c")):
            dropped += 1
            continue
        volume = row.get("v")
        vwap = row.get("vw")
        bars.append(Bar(
            timestamp=row["t"],
            open=row["o"],
            high=row["h"],
            low=row["l"],
            close=row["c"],
            volume=volume if _finite(volume) and volume >= 0 else 0.0,
            vwap=vwap if _finite(vwap) else None
        ))
    if dropped:
        logger.warning(f"Dropped {dropped} malformed aggregate bars")
    return bars


def parse_option_ticker(contract_ticker: str) -> ParsedOptionTicker:
    """
    Parse an OCC-style option ticker such as ``O:SPY250117C00500000``.

    Raises:
        ValidationError: If the ticker does not match the expected pattern
    """
    ticker = contract_ticker.upper().strip()
    match = OPTION_TICKER_PATTERN.match(ticker)
    if not match:
        raise ValidationError(f"Invalid options contract ticker: {contract_ticker}", contract_ticker)

    underlying, date_str, type_code, strike_raw = match.groups()
    expiration = f"{2000 + int(date_str[:2])}-{date_str[2:4]}-{date_str[4:6]}"
    try:
        date.fromisoformat(expiration)
    except ValueError as e:
        raise ValidationError(f"Invalid expiration in option ticker {contract_ticker}", contract_ticker) from e

    return ParsedOptionTicker(
        underlying=underlying,
        expiration=expiration,
        contract_type=ContractType.CALL if type_code == "C" else ContractType.PUT,
        strike=int(strike_raw) / 1000
    )


def next_friday(today: date) -> date:
    """Next Friday strictly after ``today`` (the usual weekly expiration)."""
    days_ahead = (4 - today.weekday()) % 7 or 7
    return today + timedelta(days=days_ahead)


def resolve_index_ticker(index: str) -> str:
    symbol = index.upper().strip()
    if symbol in INDEX_TICKERS:
        return INDEX_TICKERS[symbol]
    return symbol if symbol.startswith("I:") else f"I:{symbol}"


class RequestMonitor:
    """Rolling request latency and error statistics."""

    def __init__(self, window_size: int = 100):
        self.request_times = deque(maxlen=window_size)
        self.total_requests = 0
        self.failed_requests = 0
        self.timeouts = 0

    def record_request(self, duration: float, success: bool, timed_out: bool = False) -> None:
        self.total_requests += 1
        self.request_times.append(duration)
        if not success:
            self.failed_requests += 1
        if timed_out:
            self.timeouts += 1

    def get_stats(self) -> Dict[str, Any]:
        avg = sum(self.request_times) / len(self.request_times) if self.request_times else 0
        return {
            'total_requests': self.total_requests,
            'failed_requests': self.failed_requests,
            'timeouts': self.timeouts,
            'avg_response_time': avg,
            'success_rate': (
                (self.total_requests - self.failed_requests) / self.total_requests * 100
                if self.total_requests else 0
            ),
        }


class MarketDataClient:
    """
    Async client for the market data provider.

    Args:
        config: Provider settings (API key, base URL, default timeout)
        http_client: Optional pre-built ``httpx.AsyncClient`` (tests inject
            one backed by ``httpx.MockTransport``)
        clock: Returns the current UTC time; used for date ranges
    """

    def __init__(
        self,
        config: ProviderConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.config = config
        self._http = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
            headers={"Accept": "application/json"}
        )
        self._clock = clock
        self._log_once = LogOnce(logger)
        self.monitor = RequestMonitor()

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def close(self) -> None:
        await self._http.aclose()

    async def fetch(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Result[Dict[str, Any]]:
        """
        Issue an authenticated GET request.

        Args:
            endpoint: Path relative to the base URL
            params: Query parameters; ``None`` values are omitted
            timeout: Seconds before the request is aborted (defaults to the
                configured timeout)

        Returns:
            ``Ok(json)`` on a 2xx JSON response, otherwise ``Unavailable``
        """
        if not self.config.api_key:
            self._log_once.warning("no-api-key", "Market data API key not configured; returning empty results")
            return Unavailable(reason="not configured")

        query = {k: v for k, v in (params or {}).items() if v is not None}
        query["apiKey"] = self.config.api_key
        start_time = time.time()

        try:
            response = await self._http.get(
                f"{self.config.base_url}{endpoint}",
                params=query,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                timeout=timeout if timeout is not None else self.config.timeout
            )
        except httpx.TimeoutException as e:
            self.monitor.record_request(time.time() - start_time, False, timed_out=True)
            logger.error(f"Request to {endpoint} timed out: {e}")
            return Unavailable(reason="timeout", timed_out=True)
        except httpx.HTTPError as e:
            self.monitor.record_request(time.time() - start_time, False)
            logger.error(f"Request to {endpoint} failed: {e}")
            return Unavailable(reason=str(e))

        duration = time.time() - start_time
        if not response.is_success:
            self.monitor.record_request(duration, False)
            logger.error(f"API error for {endpoint}: {response.status_code} - {response.text[:200]}")
            return Unavailable(reason=f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            self.monitor.record_request(duration, False)
            logger.error(f"Invalid JSON from {endpoint}: {e}")
            return Unavailable(reason="invalid json")

        self.monitor.record_request(duration, True)
        logger.debug(f"GET {endpoint} succeeded in {duration:.3f}s")
        return Ok(payload if isinstance(payload, dict) else {"results": payload})

    async def _fetch_json(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                          timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        return value_or_none(await self.fetch(endpoint, params, timeout))

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def get_quote(self, symbol: str, timeout: Optional[float] = None) -> Optional[Quote]:
        """Get the snapshot quote for ``symbol``."""
        symbol = symbol.upper()
        data = await self._fetch_json(f"/v2/snapshot/locale/us/markets/stocks/tickers/{symbol}", timeout=timeout)
        ticker = (data or {}).get("ticker")
        if not ticker:
            return None

        last_trade = ticker.get("lastTrade") or {}
        day = ticker.get("day") or {}
        prev_day = ticker.get("prevDay") or {}
        price = last_trade.get("p") or prev_day.get("c") or 0.0

        return Quote(
            symbol=ticker.get("ticker") or symbol,
            price=price,
            last=price,
            change=ticker.get("todaysChange") or 0.0,
            change_percent=ticker.get("todaysChangePerc") or 0.0,
            open=day.get("o") or 0.0,
            high=day.get("h") or 0.0,
            low=day.get("l") or 0.0,
            close=prev_day.get("c") or 0.0,
            volume=day.get("v") or 0.0,
            vwap=day.get("vw") or 0.0,
            prev_close=prev_day.get("c") or 0.0,
            prev_high=prev_day.get("h") or 0.0,
            prev_low=prev_day.get("l") or 0.0,
            timestamp=self._clock()
        )

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def get_aggregates(
        self,
        symbol: str,
        timespan: str = "day",
        limit: int = 50,
        timeout: Optional[float] = None
    ) -> List[Bar]:
        """
        Get the most recent ``limit`` bars, ordered ascending by time.

        Args:
            symbol: Ticker symbol
            timespan: 'day', 'week', 'hour', '240' or a minute count such as '5'
            limit: Number of bars
            timeout: Request timeout in seconds
        """
        symbol = symbol.upper()
        multiplier, span = normalize_timespan(timespan)
        today = self._clock().date()
        start = today - timedelta(days=lookback_days(span, limit))

        data = await self._fetch_json(
            f"/v2/aggs/ticker/{symbol}/range/{multiplier}/{span}/{start.isoformat()}/{today.isoformat()}",
            {"limit": limit, "sort": "desc", "adjusted": "true"},
            timeout=timeout
        )
        bars = parse_bars((data or {}).get("results"))
        bars.sort(key=lambda b: b.timestamp)
        return bars[-limit:] if limit > 0 else bars

    async def get_range_bars(
        self,
        symbol: str,
        from_date: date,
        to_date: date,
        timespan: str = "minute",
        multiplier: int = 5,
        limit: int = 50000,
        timeout: Optional[float] = None
    ) -> List[Bar]:
        """Get all bars between two dates (inclusive), ascending."""
        symbol = symbol.upper()
        data = await self._fetch_json(
            f"/v2/aggs/ticker/{symbol}/range/{multiplier}/{timespan}/{from_date.isoformat()}/{to_date.isoformat()}",
            {"limit": limit, "sort": "asc"},
            timeout=timeout
        )
        return parse_bars((data or {}).get("results"))

    async def get_premarket_bars(self, symbol: str, session_date: Optional[date] = None,
                                 timeout: Optional[float] = None) -> List[Bar]:
        """1-minute bars from 04:00 to 09:30 exchange time on ``session_date`` (today by default)."""
        session_date = session_date or self._clock().astimezone(EXCHANGE_TZ).date()
        start = datetime.combine(session_date, dtime(4, 0), tzinfo=EXCHANGE_TZ)
        end = datetime.combine(session_date, dtime(9, 30), tzinfo=EXCHANGE_TZ)
        bars = await self.get_range_bars(symbol, session_date, session_date, "minute", 1, 500, timeout)
        return [b for b in bars if start <= b.timestamp < end]

    # ------------------------------------------------------------------
    # Market status and indices
    # ------------------------------------------------------------------

    async def get_market_status(self, timeout: Optional[float] = None) -> MarketStatus:
        data = await self._fetch_json("/v1/marketstatus/now", timeout=timeout)
        if not data:
            return MarketStatus()
        return MarketStatus(
            market=data.get("market") or "unknown",
            after_hours=bool(data.get("afterHours")),
            early_hours=bool(data.get("earlyHours")),
            server_time=data.get("serverTime")
        )

    async def get_index_quote(self, index: str, timeout: Optional[float] = None) -> Optional[IndexQuote]:
        """Get an index value, falling back to the previous day's aggregate."""
        symbol = index.upper()
        ticker = resolve_index_ticker(symbol)

        snapshot = await self._fetch_json(
            "/v3/snapshot/indices",
            {"ticker.gte": ticker, "ticker.lte": ticker, "limit": 1},
            timeout=timeout
        )
        results = (snapshot or {}).get("results") or []
        if results:
            row = results[0]
            session = row.get("session") or {}
            updated = row.get("last_updated")
            return IndexQuote(
                symbol=symbol,
                value=row.get("value") or session.get("close") or 0.0,
                open=session.get("open") or 0.0,
                high=session.get("high") or 0.0,
                low=session.get("low") or 0.0,
                change=session.get("change") or 0.0,
                change_percent=session.get("change_percent") or 0.0,
                # last_updated is nanoseconds
                timestamp=updated / 1_000_000 if updated else self._clock()
            )

        prev = await self._fetch_json(f"/v2/aggs/ticker/{ticker}/prev", timeout=timeout)
        rows = (prev or {}).get("results") or []
        if not rows:
            return None
        row = rows[0]
        close = row.get("c") or 0.0
        open_ = row.get("o") or 0.0
        return IndexQuote(
            symbol=symbol,
            value=close,
            open=open_,
            high=row.get("h") or 0.0,
            low=row.get("l") or 0.0,
            change=close - open_,
            change_percent=((close - open_) / open_ * 100) if open_ else 0.0,
            timestamp=row.get("t") or self._clock()
        )

    # ------------------------------------------------------------------
    # Indicators
    # ------------------------------------------------------------------

    async def get_indicator(
        self,
        indicator: str,
        symbol: str,
        period: int,
        timespan: str = "day",
        limit: int = 50,
        timeout: Optional[float] = None
    ) -> Optional[IndicatorSeries]:
        """Get an SMA, EMA or RSI series, most recent value first."""
        if indicator not in ("sma", "ema", "rsi"):
            raise ValueError(f"Unsupported indicator: {indicator}")
        symbol = symbol.upper()
        data = await self._fetch_json(
            f"/v1/indicators/{indicator}/{symbol}",
            {"timespan": timespan, "window": period, "limit": limit, "series_type": "close"},
            timeout=timeout
        )
        values = ((data or {}).get("results") or {}).get("values")
        if values is None:
            return None
        return IndicatorSeries(
            indicator=indicator,
            period=period,
            values=[
                IndicatorValue(timestamp=v["timestamp"], value=v["value"])
                for v in values
                if _finite(v.get("value")) and v.get("timestamp") is not None
            ]
        )

    async def get_macd(
        self,
        symbol: str,
        timespan: str = "day",
        short_window: int = 12,
        long_window: int = 26,
        signal_window: int = 9,
        limit: int = 50,
        timeout: Optional[float] = None
    ) -> Optional[MACDSeries]:
        symbol = symbol.upper()
        data = await self._fetch_json(
            f"/v1/indicators/macd/{symbol}",
            {
                "timespan": timespan,
                "short_window": short_window,
                "long_window": long_window,
                "signal_window": signal_window,
                "limit": limit,
                "series_type": "close",
            },
            timeout=timeout
        )
        values = ((data or {}).get("results") or {}).get("values")
        if values is None:
            return None
        return MACDSeries(values=[
            MACDValue(
                timestamp=v["timestamp"],
                macd=v["value"],
                signal=v.get("signal") or 0.0,
                histogram=v.get("histogram") or 0.0
            )
            for v in values
            if _finite(v.get("value")) and v.get("timestamp") is not None
        ])

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_contract(row: Dict[str, Any], underlying: str) -> Optional[OptionContract]:
        details = row.get("details")
        if not details or details.get("contract_type") not in ("call", "put"):
            return None
        ticker = details.get("ticker")
        strike = details.get("strike_price")
        expiration = details.get("expiration_date")
        if not ticker or strike is None or not expiration:
            logger.warning(f"Skipping {underlying} option row missing ticker, strike or expiration: {details}")
            return None
        quote = row.get("last_quote") or {}
        trade = row.get("last_trade") or {}
        day = row.get("day") or {}
        greeks = row.get("greeks") or {}
        try:
            return OptionContract(
                ticker=ticker,
                underlying=(row.get("underlying_asset") or {}).get("ticker") or underlying,
                contract_type=details["contract_type"],
                strike=strike,
                expiration=expiration,
                bid=quote.get("bid") or 0.0,
                ask=quote.get("ask") or 0.0,
                last=trade.get("price") or day.get("close") or 0.0,
                volume=day.get("volume") or 0.0,
                open_interest=row.get("open_interest") or 0.0,
                implied_volatility=row.get("implied_volatility") or 0.0,
                delta=greeks.get("delta") or 0.0,
                gamma=greeks.get("gamma") or 0.0,
                theta=greeks.get("theta") or 0.0,
                vega=greeks.get("vega") or 0.0
            )
        except PydanticValidationError as e:
            logger.warning(f"Skipping malformed {underlying} option row {ticker}: {e}")
            return None

    def default_expiration(self) -> str:
        return next_friday(self._clock().date()).isoformat()

    async def get_options_chain(
        self,
        symbol: str,
        expiration_date: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> Optional[OptionsChain]:
        """Get calls and puts for one expiration (next Friday by default)."""
        symbol = symbol.upper()
        expiration = expiration_date or self.default_expiration()
        data = await self._fetch_json(
            f"/v3/snapshot/options/{symbol}",
            {"expiration_date": expiration, "limit": 250},
            timeout=timeout
        )
        results = (data or {}).get("results") or []
        if not results:
            return None

        calls, puts = [], []
        for row in results:
            contract = self._parse_contract(row, symbol)
            if contract is None:
                continue
            if contract.contract_type == ContractType.CALL:
                calls.append(contract)
            else:
                puts.append(contract)

        return OptionsChain(
            underlying=symbol,
            expiration_date=expiration,
            calls=sorted(calls, key=lambda c: c.strike),
            puts=sorted(puts, key=lambda c: c.strike)
        )

    async def get_options_contract(self, contract_ticker: str,
                                   timeout: Optional[float] = None) -> Optional[OptionContract]:
        """Get a single contract snapshot; malformed tickers yield ``None``."""
        try:
            parsed = parse_option_ticker(contract_ticker)
        except ValidationError as e:
            logger.warning(str(e))
            return None

        data = await self._fetch_json(
            f"/v3/snapshot/options/{parsed.underlying}",
            {
                "strike_price": parsed.strike,
                "expiration_date": parsed.expiration,
                "contract_type": parsed.contract_type.value,
                "limit": 1,
            },
            timeout=timeout
        )
        results = (data or {}).get("results") or []
        if not results:
            return None
        return self._parse_contract(results[0], parsed.underlying)

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def get_ticker_details(self, symbol: str, timeout: Optional[float] = None) -> Optional[TickerDetails]:
        """Get reference data for ``symbol``, including its next earnings date when published."""
        symbol = symbol.upper()
        data = await self._fetch_json(f"/v3/reference/tickers/{symbol}", timeout=timeout)
        results = (data or {}).get("results")
        if not isinstance(results, dict):
            return None
        try:
            return TickerDetails(
                ticker=results.get("ticker") or symbol,
                name=results.get("name"),
                market_cap=results.get("market_cap"),
                next_earnings_date=results.get("next_earnings_date") or None
            )
        except PydanticValidationError as e:
            logger.warning(f"Ignoring malformed ticker details for {symbol}: {e}")
            return None
