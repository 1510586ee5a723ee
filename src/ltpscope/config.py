"""
Configuration management for ltpscope.

Settings are read from the environment (optionally seeded from a .env file).
A missing provider API key or cache URL is not an error: the affected
subsystems run in degraded mode.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator


DEFAULT_WATCHLIST = "SPY,QQQ,NVDA,AAPL,TSLA,AMD,META,GOOGL,AMZN,MSFT"


class ProviderConfig(BaseModel):
    """Upstream market data provider settings."""

    api_key: Optional[str] = None
    base_url: str = Field(default="https://api.massive.com")
    ws_url: str = Field(default="wss://socket.massive.com/stocks")
    timeout: float = Field(default=10.0, gt=0, description="Request timeout in seconds")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


class CacheConfig(BaseModel):
    """Tiered cache settings. TTLs are in seconds."""

    redis_url: Optional[str] = None
    key_prefix: str = Field(default="market")
    hot_freshness_seconds: float = Field(default=5.0, gt=0)

    quote_ttl: int = Field(default=5, ge=1)
    index_ttl: int = Field(default=10, ge=1)
    snapshot_ttl: int = Field(default=10, ge=1)
    levels_ttl: int = Field(default=30, ge=1)
    options_ttl: int = Field(default=30, ge=1)
    aggregates_ttl: int = Field(default=60, ge=1)
    indicators_ttl: int = Field(default=60, ge=1)
    historical_ttl: int = Field(default=600, ge=1)

    @property
    def is_distributed(self) -> bool:
        return bool(self.redis_url)


class StreamConfig(BaseModel):
    """Redistributor and ingestion worker settings."""

    channel_prefix: str = Field(default="market:stream:")
    hot_prefix: str = Field(default="quote:")
    hot_ttl: int = Field(default=10, ge=1)
    max_reconnect_attempts: int = Field(default=10, ge=1)
    base_reconnect_delay: float = Field(default=1.0, gt=0)
    max_reconnect_delay: float = Field(default=30.0, gt=0)
    subscriber_queue_size: int = Field(default=1000, ge=1)

    watchlist: List[str] = Field(default_factory=lambda: DEFAULT_WATCHLIST.split(","))
    worker_max_reconnect_attempts: int = Field(default=20, ge=1)
    worker_base_reconnect_delay: float = Field(default=1.0, gt=0)
    worker_max_reconnect_delay: float = Field(default=60.0, gt=0)
    health_check_interval: float = Field(default=60.0, gt=0)

    @field_validator("watchlist")
    @classmethod
    def normalize_watchlist(cls, v: List[str]) -> List[str]:
        return [s.strip().upper() for s in v if s.strip()]


class LTPConfig(BaseModel):
    """Confluence scoring constants."""

    at_level_pct: float = Field(default=0.3, gt=0)
    near_level_pct: float = Field(default=0.8, gt=0)
    level_weight: float = Field(default=0.35, ge=0, le=1)
    trend_weight: float = Field(default=0.40, ge=0, le=1)
    patience_weight: float = Field(default=0.25, ge=0, le=1)
    max_level_distance_pct: float = Field(default=5.0, gt=0)
    max_swing_levels: int = Field(default=4, ge=1)
    lesson_catalog_path: Optional[str] = None

    @model_validator(mode="after")
    def validate_thresholds(self) -> "LTPConfig":
        if self.near_level_pct < self.at_level_pct:
            raise ValueError("near_level_pct must be >= at_level_pct")
        total = self.level_weight + self.trend_weight + self.patience_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"LTP weights must sum to 1.0, got {total}")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO")
    file_path: str = Field(default="./logs/ltpscope.log")
    max_size: str = Field(default="10MB")
    backup_count: int = Field(default=5)


class Config(BaseModel):
    """Main configuration class."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    ltp: LTPConfig = Field(default_factory=LTPConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load_from_env(cls, env_file: Optional[str] = None) -> "Config":
        """Load configuration from environment variables."""
        if env_file:
            load_dotenv(env_file)
        else:
            env_path = Path(".env")
            if env_path.exists():
                load_dotenv(env_path)

        provider = ProviderConfig(
            api_key=os.getenv("MARKET_API_KEY") or os.getenv("MASSIVE_API_KEY") or None,
            base_url=os.getenv("MARKET_API_BASE_URL", "https://api.massive.com"),
            ws_url=os.getenv("MARKET_WS_URL", "wss://socket.massive.com/stocks"),
            timeout=float(os.getenv("MARKET_API_TIMEOUT", "10.0"))
        )

        cache = CacheConfig(
            redis_url=os.getenv("REDIS_URL") or None,
            key_prefix=os.getenv("CACHE_KEY_PREFIX", "market"),
            hot_freshness_seconds=float(os.getenv("HOT_CACHE_FRESHNESS_SECONDS", "5.0"))
        )

        watchlist = os.getenv("MARKET_WATCHLIST", DEFAULT_WATCHLIST).split(",")
        stream = StreamConfig(
            watchlist=watchlist,
            max_reconnect_attempts=int(os.getenv("STREAM_MAX_RECONNECT_ATTEMPTS", "10")),
            health_check_interval=float(os.getenv("WORKER_HEALTH_CHECK_INTERVAL", "60.0"))
        )

        ltp = LTPConfig(
            at_level_pct=float(os.getenv("LTP_AT_LEVEL_PCT", "0.3")),
            near_level_pct=float(os.getenv("LTP_NEAR_LEVEL_PCT", "0.8")),
            level_weight=float(os.getenv("LTP_LEVEL_WEIGHT", "0.35")),
            trend_weight=float(os.getenv("LTP_TREND_WEIGHT", "0.40")),
            patience_weight=float(os.getenv("LTP_PATIENCE_WEIGHT", "0.25")),
            lesson_catalog_path=os.getenv("LESSON_CATALOG_PATH") or None
        )

        logging = LoggingConfig(
            level=os.getenv("LOG_LEVEL", "INFO"),
            file_path=os.getenv("LOG_FILE_PATH", "./logs/ltpscope.log"),
            max_size=os.getenv("LOG_MAX_SIZE", "10MB"),
            backup_count=int(os.getenv("LOG_BACKUP_COUNT", "5"))
        )

        return cls(
            provider=provider,
            cache=cache,
            stream=stream,
            ltp=ltp,
            logging=logging
        )

    def describe_degraded_modes(self) -> List[str]:
        """List the subsystems running without their external backend."""
        degraded = []
        if not self.provider.is_configured:
            degraded.append("provider: no API key, market data calls return empty results")
        if not self.cache.is_distributed:
            degraded.append("cache: no REDIS_URL, using in-process cache and local fan-out")
        return degraded
