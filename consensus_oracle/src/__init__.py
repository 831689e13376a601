"""
Consensus Price Oracle - Aggregation and Circuit Breaker Module

This module turns untrusted multi-source quotes into trusted prices:
- MedianAggregator: Staleness filter, median and confidence per asset
- TWAPEngine: Time-weighted averages over 5m/15m/1h windows
- CircuitBreaker: Per-asset deviation / source-count breaker with alerts
- SourceManager: Per-source failure tracking with exponential backoff
- PriceOracle: Main orchestrator running one cycle per scheduler tick
- fetchers: REST fetchers and the Binance trade stream
"""

from .CircuitBreaker import Alert, BreakerState, CircuitBreaker, TripCause
from .errors import (
    ConfigurationError,
    OracleError,
    PersistenceFailure,
    SettlementSyncFailure,
    SourceUnavailable,
)
from .MedianAggregator import aggregate_prices, calculate_confidence, calculate_median
from .OracleConfig import OracleConfig
from .OracleState import OracleState
from .PriceOracle import OracleHandle, OracleStatus, PriceOracle, init_oracle
from .Quote import AggregatedPrice, RawQuote
from .SourceManager import SourceManager, SourceStatus
from .TWAPEngine import TWAPEngine, TWAPState

__all__ = [
    "AggregatedPrice",
    "Alert",
    "BreakerState",
    "CircuitBreaker",
    "ConfigurationError",
    "OracleConfig",
    "OracleError",
    "OracleHandle",
    "OracleState",
    "OracleStatus",
    "PersistenceFailure",
    "PriceOracle",
    "RawQuote",
    "SettlementSyncFailure",
    "SourceManager",
    "SourceStatus",
    "SourceUnavailable",
    "TWAPEngine",
    "TWAPState",
    "TripCause",
    "aggregate_prices",
    "calculate_confidence",
    "calculate_median",
    "init_oracle",
]
