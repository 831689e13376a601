"""OracleState: Per-instance mutable state of one oracle pipeline.

The circuit breaker, the TWAP engine and the orchestrator all receive the
same OracleState by reference. Two oracles built with two states share
nothing, which keeps tests isolated.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .CircuitBreaker import Alert, BreakerState
    from .Quote import AggregatedPrice
    from .TWAPEngine import TWAPSample, TWAPState

DEFAULT_MAX_ALERTS = 100


@dataclass
class OracleState:
    """Container for breaker, TWAP, latest-price and cycle state.

    :ivar breakers: Breaker state per asset, created on first observation.
    :ivar alerts: Alert log, oldest evicted first once ``max_alerts`` is hit.
    :ivar twap_samples: Retained TWAP samples per asset.
    :ivar twap_states: Last computed TWAP snapshot per asset.
    :ivar latest_prices: Latest trusted aggregated price per asset.
    :ivar last_cycle_ts: Completion time of the last cycle.
    :ivar last_cycle_duration: Duration of the last cycle in seconds.
    :ivar lock: Serializes mutations between the tick and admin actions.
    """

    max_alerts: int = DEFAULT_MAX_ALERTS
    breakers: dict[str, BreakerState] = field(default_factory=dict)
    alerts: deque[Alert] = field(init=False)
    twap_samples: dict[str, list[TWAPSample]] = field(default_factory=dict)
    twap_states: dict[str, TWAPState] = field(default_factory=dict)
    latest_prices: dict[str, AggregatedPrice] = field(default_factory=dict)
    last_cycle_ts: float | None = None
    last_cycle_duration: float | None = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __post_init__(self) -> None:
        self.alerts = deque(maxlen=self.max_alerts)
