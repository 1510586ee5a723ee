"""
Unit tests for logging helpers.
"""

import logging

from ltpscope.logger import LogOnce, StructuredFormatter, _parse_size, get_market_adapter


class TestLogger:
    """Test logging helpers."""

    def test_parse_size(self) -> None:
        """Test size strings with and without units."""
        assert _parse_size("10MB") == 10 * 1024 * 1024
        assert _parse_size("512kb") == 512 * 1024
        assert _parse_size("2048") == 2048
        assert _parse_size("lots") == 10 * 1024 * 1024

    def test_log_once(self, caplog) -> None:
        """Test that a condition logs once until reset."""
        log_once = LogOnce(logging.getLogger("ltpscope.test"))

        with caplog.at_level(logging.WARNING, logger="ltpscope.test"):
            assert log_once.warning("redis", "cache down") is True
            assert log_once.warning("redis", "cache down") is False
            assert log_once.reset("redis") is True
            assert log_once.warning("redis", "cache down") is True

        assert [r.getMessage() for r in caplog.records].count("cache down") == 2

    def test_market_adapter_prefix(self) -> None:
        """Test that symbol and timeframe context is prefixed on output."""
        adapter = get_market_adapter("ltpscope.test", symbol="SPY", timeframe="5m")
        msg, kwargs = adapter.process("patience candle", {})
        record = logging.LogRecord("ltpscope.test", logging.INFO, __file__, 1, msg, None, None)
        for key, value in kwargs['extra'].items():
            setattr(record, key, value)

        assert StructuredFormatter("%(message)s").format(record) == "[SPY] [5m] patience candle"
