"""
Live tick distribution: the redistributor and the ingestion worker.
"""

from .redistributor import ConnectionState, MarketRedistributor, backoff_delay
from .worker import IngestionWorker, translate_event

__all__ = [
    "ConnectionState",
    "IngestionWorker",
    "MarketRedistributor",
    "backoff_delay",
    "translate_event",
]
