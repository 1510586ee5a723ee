"""
Unit tests for the command line interface.
"""

import os
from pathlib import Path
from unittest.mock import patch

from click.testing import CliRunner

from ltpscope.cli import main


class TestCLI:
    """Test CLI commands that need no network."""

    def test_status_shows_configuration(self, mock_env_vars: dict, temp_dir: Path) -> None:
        """Test the status table and degraded-mode warning."""
        with patch.dict(os.environ, {"LOG_FILE_PATH": str(temp_dir / "ltpscope.log")}):
            result = CliRunner().invoke(main, ["status"])

        assert result.exit_code == 0, result.output
        assert "NVDA" in result.output
        assert "no REDIS_URL" in result.output

    def test_invalid_weights_exit(self, mock_env_vars: dict, temp_dir: Path) -> None:
        """Test that a configuration error stops the CLI."""
        env = {"LOG_FILE_PATH": str(temp_dir / "ltpscope.log"), "LTP_LEVEL_WEIGHT": "0.9"}
        with patch.dict(os.environ, env):
            result = CliRunner().invoke(main, ["status"])

        assert result.exit_code == 1
        assert "Error loading configuration" in result.output
