"""
Logging infrastructure for ltpscope.
"""

import logging
import logging.handlers
import sys
import threading
from pathlib import Path
from typing import Optional, Set


class StructuredFormatter(logging.Formatter):
    """Formatter that prefixes market context carried on the record."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        if hasattr(record, 'symbol'):
            prefix += f"[{record.symbol}] "
        if hasattr(record, 'timeframe'):
            prefix += f"[{record.timeframe}] "
        if not prefix:
            return super().format(record)
        original = record.msg
        record.msg = f"{prefix}{original}"
        try:
            return super().format(record)
        finally:
            record.msg = original


class ColoredFormatter(StructuredFormatter):
    """Colored formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def setup_logger(
    name: str,
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size: str = "10MB",
    backup_count: int = 5,
    console_output: bool = True
) -> logging.Logger:
    """
    Set up a logger with file rotation and optional console output.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (optional)
        max_size: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        console_output: Whether to output to console

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(ColoredFormatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=_parse_size(max_size),
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(StructuredFormatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(file_handler)

    # Records still propagate so pytest's caplog and host apps can see them.
    logger.propagate = True

    return logger


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    """
    Get a module logger.

    Handlers are only attached to the package root logger (see
    ``configure_logging``); module loggers inherit them through propagation.

    Args:
        name: Logger name, usually ``__name__``
        level: Logging level

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    if not logger.level:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger


def configure_logging(
    level: str = "INFO",
    log_file: Optional[str] = "./logs/ltpscope.log",
    max_size: str = "10MB",
    backup_count: int = 5,
    console_output: bool = True
) -> logging.Logger:
    """Attach console and rotating file handlers to the ``ltpscope`` logger."""
    return setup_logger(
        name="ltpscope",
        level=level,
        log_file=log_file,
        max_size=max_size,
        backup_count=backup_count,
        console_output=console_output
    )


def _parse_size(size_str: str) -> int:
    """
    Parse size string (e.g., '10MB', '1GB') to bytes.

    Args:
        size_str: Size string with unit

    Returns:
        Size in bytes
    """
    size_str = size_str.upper().strip()

    # Longest suffixes first so 'MB' is not read as 'B'
    size_map = (
        ('GB', 1024 * 1024 * 1024),
        ('MB', 1024 * 1024),
        ('KB', 1024),
        ('B', 1),
    )

    for unit, multiplier in size_map:
        if size_str.endswith(unit):
            number = size_str[:-len(unit)].strip()
            try:
                return int(float(number) * multiplier)
            except ValueError:
                break

    try:
        return int(size_str)
    except ValueError:
        return 10 * 1024 * 1024


class LogOnce:
    """
    Emit a message for a condition only the first time it is seen.

    Used for conditions that would otherwise log on every request, such as
    an unreachable cache backend or a missing API key. ``reset`` re-arms a
    condition once it has cleared.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger
        self._seen: Set[str] = set()
        self._lock = threading.Lock()

    def log(self, key: str, level: int, msg: str) -> bool:
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
        self._logger.log(level, msg)
        return True

    def warning(self, key: str, msg: str) -> bool:
        return self.log(key, logging.WARNING, msg)

    def reset(self, key: str) -> bool:
        with self._lock:
            if key in self._seen:
                self._seen.discard(key)
                return True
            return False

    def is_active(self, key: str) -> bool:
        return key in self._seen


class MarketLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that attaches symbol/timeframe context to records."""

    def process(self, msg: str, kwargs: dict) -> tuple:
        extra = dict(self.extra)
        extra.update(kwargs.get('extra', {}))
        kwargs['extra'] = extra
        return msg, kwargs


def get_market_adapter(
    name: str,
    symbol: Optional[str] = None,
    timeframe: Optional[str] = None
) -> MarketLoggerAdapter:
    """
    Get a logger adapter with market context.

    Args:
        name: Logger name
        symbol: Ticker symbol (e.g., 'SPY')
        timeframe: Bar timeframe (e.g., '5m')

    Returns:
        Logger adapter with market context
    """
    extra = {}
    if symbol:
        extra['symbol'] = symbol
    if timeframe:
        extra['timeframe'] = timeframe
    return MarketLoggerAdapter(get_logger(name), extra)
