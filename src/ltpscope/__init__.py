"""
ltpscope: Levels / Trend / Patience market intelligence

Ingests quotes and bars for equity tickers, shares them across service
instances through a tiered cache and grades trade setups with a
deterministic Levels / Trend / Patience confluence score.
"""

__version__ = "0.1.0"
__author__ = "ltpscope Team"
__description__ = "Levels / Trend / Patience market intelligence"

# Package-level imports for convenience
from .config import Config
from .logger import get_logger

__all__ = ["Config", "get_logger", "__version__"]
