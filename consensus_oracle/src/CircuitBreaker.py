"""CircuitBreaker: Per-asset price anomaly protection.

A breaker trips when the source count for an asset drops below the
configured minimum, or when a new price deviates from the last valid price
by more than the threshold. While tripped the breaker keeps observing but
withholds trust until the recovery window has elapsed or an operator resets
it. The anomalous reading never replaces the last valid price.

.. code-block:: python

    >>> breaker = CircuitBreaker(OracleState(), deviation_threshold=0.10)
    >>> breaker.check_circuit_breaker("BTC", 60000.0, 2).is_tripped
    False
    >>> breaker.check_circuit_breaker("BTC", 48000.0, 2).is_tripped
    True
    >>> breaker.get_breaker_state("BTC").last_valid_price
    60000.0
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from .OracleState import OracleState

logger = logging.getLogger(__name__)

DEFAULT_DEVIATION_THRESHOLD = 0.10
DEFAULT_RECOVERY_WINDOW_SECONDS = 60.0
DEFAULT_MIN_SOURCES = 1

ALERT_TRIP = "circuit_breaker_trip"
ALERT_RECOVER = "circuit_breaker_recover"


class TripCause(str, Enum):
    """Why a breaker tripped."""

    DEVIATION = "deviation"
    INSUFFICIENT_SOURCES = "insufficient_sources"


@dataclass
class BreakerState:
    """Circuit breaker state for one asset.

    :ivar asset: Asset symbol.
    :ivar is_tripped: True while trust is withheld.
    :ivar last_valid_price: Last price accepted as trusted.
    :ivar reason: Human-readable trip reason.
    :ivar cause: Machine-readable trip cause.
    :ivar tripped_at: Trip time (Unix seconds).
    :ivar recovers_at: Earliest automatic recovery time.
    """

    asset: str
    is_tripped: bool = False
    last_valid_price: float | None = None
    reason: str | None = None
    cause: TripCause | None = None
    tripped_at: float | None = None
    recovers_at: float | None = None

    def clear_trip(self) -> None:
        """Return to NORMAL, keeping the last valid price."""
        self.is_tripped = False
        self.reason = None
        self.cause = None
        self.tripped_at = None
        self.recovers_at = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "asset": self.asset,
            "is_tripped": self.is_tripped,
            "last_valid_price": self.last_valid_price,
            "reason": self.reason,
            "cause": self.cause.value if self.cause else None,
            "tripped_at": self.tripped_at,
            "recovers_at": self.recovers_at,
        }


@dataclass(frozen=True)
class Alert:
    """Entry in the breaker alert log."""

    id: str
    type: str
    asset: str
    message: str
    severity: str
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "id": self.id,
            "type": self.type,
            "asset": self.asset,
            "message": self.message,
            "severity": self.severity,
            "timestamp": self.timestamp,
        }


class CircuitBreaker:
    """Per-asset NORMAL/TRIPPED state machine with hysteresis.

    Every public method holds the state lock, so a manual reset issued from
    another thread is serialized with the evaluation done by a running tick.

    :ivar state: Shared oracle state holding breakers and alerts.
    :ivar deviation_threshold: Max relative move vs last valid price.
    :ivar recovery_window: Seconds a trip lasts before auto-recovery.
    :ivar min_sources: Minimum contributing sources per asset.
    """

    def __init__(
        self,
        state: OracleState,
        deviation_threshold: float = DEFAULT_DEVIATION_THRESHOLD,
        recovery_window: float = DEFAULT_RECOVERY_WINDOW_SECONDS,
        min_sources: int = DEFAULT_MIN_SOURCES,
    ) -> None:
        """Initialize the breaker.

        :param state: Oracle state to keep breakers and alerts in.
        :param deviation_threshold: Fractional deviation that trips (0.10 = 10%).
        :param recovery_window: Seconds before a tripped breaker may recover.
        :param min_sources: Minimum source count; fewer trips the breaker.
        :raises ValueError: If parameters are invalid.
        """
        if deviation_threshold <= 0:
            raise ValueError("deviation_threshold must be positive")
        if recovery_window <= 0:
            raise ValueError("recovery_window must be positive")
        if min_sources < 1:
            raise ValueError("min_sources must be at least 1")

        self.state = state
        self.deviation_threshold = deviation_threshold
        self.recovery_window = recovery_window
        self.min_sources = min_sources

    def check_circuit_breaker(
        self, asset: str, new_price: float, source_count: int
    ) -> BreakerState:
        """Evaluate a new aggregated price for an asset.

        :param asset: Asset symbol.
        :param new_price: Newly aggregated price.
        :param source_count: Number of sources behind the price.
        :returns: Snapshot of the breaker state after evaluation.
        """
        now = time.time()
        with self.state.lock:
            breaker = self.state.breakers.get(asset)

            if breaker is None:
                # First observation always seeds a NORMAL breaker
                breaker = BreakerState(asset=asset, last_valid_price=new_price)
                self.state.breakers[asset] = breaker
                return replace(breaker)

            if (
                breaker.is_tripped
                and breaker.recovers_at is not None
                and now >= breaker.recovers_at
            ):
                breaker.clear_trip()
                self._add_alert(
                    ALERT_RECOVER,
                    asset,
                    f"Circuit breaker recovered for {asset} (auto-recovery)",
                    "info",
                    now,
                )
                logger.info(f"{asset}: circuit breaker auto-recovered")

            if breaker.is_tripped:
                return replace(breaker)

            if source_count < self.min_sources:
                self._trip_insufficient(breaker, source_count, now)
                return replace(breaker)

            last_valid = breaker.last_valid_price
            if last_valid is not None and last_valid > 0:
                deviation = abs(new_price - last_valid) / last_valid
                if deviation >= self.deviation_threshold:
                    reason = (
                        f"Price deviation {deviation * 100:.1f}% for {asset} "
                        f"breaches threshold {self.deviation_threshold * 100:.0f}%"
                    )
                    self._trip(breaker, reason, TripCause.DEVIATION, now)
                    return replace(breaker)

            breaker.last_valid_price = new_price
            return replace(breaker)

    def reset_circuit_breaker(self, asset: str) -> bool:
        """Manually reset a breaker (admin action).

        :param asset: Asset symbol.
        :returns: True if the asset was known and reset.
        """
        now = time.time()
        with self.state.lock:
            breaker = self.state.breakers.get(asset)
            if breaker is None:
                logger.warning(f"{asset}: reset requested for unknown breaker")
                return False

            breaker.clear_trip()
            self._add_alert(
                ALERT_RECOVER,
                asset,
                f"Circuit breaker manually reset for {asset}",
                "info",
                now,
            )
        logger.info(f"{asset}: circuit breaker manually reset")
        return True

    def get_breaker_state(self, asset: str) -> BreakerState | None:
        """Get a snapshot of one asset's breaker, or None if never observed."""
        with self.state.lock:
            breaker = self.state.breakers.get(asset)
            return replace(breaker) if breaker else None

    def get_all_breaker_states(self) -> list[BreakerState]:
        """Get snapshots of every breaker ever observed."""
        with self.state.lock:
            return [replace(b) for b in self.state.breakers.values()]

    def get_alerts(self) -> list[Alert]:
        """Get the alert log, oldest first."""
        with self.state.lock:
            return list(self.state.alerts)

    def _trip_insufficient(
        self, breaker: BreakerState, source_count: int, now: float
    ) -> None:
        reason = (
            f"Insufficient sources for {breaker.asset}: "
            f"{source_count} < {self.min_sources}"
        )
        self._trip(breaker, reason, TripCause.INSUFFICIENT_SOURCES, now)

    def _trip(
        self, breaker: BreakerState, reason: str, cause: TripCause, now: float
    ) -> None:
        breaker.is_tripped = True
        breaker.reason = reason
        breaker.cause = cause
        breaker.tripped_at = now
        breaker.recovers_at = now + self.recovery_window
        self._add_alert(ALERT_TRIP, breaker.asset, reason, "warning", now)
        logger.warning(f"{breaker.asset}: circuit breaker tripped: {reason}")

    def _add_alert(
        self, alert_type: str, asset: str, message: str, severity: str, now: float
    ) -> None:
        self.state.alerts.append(
            Alert(
                id=uuid.uuid4().hex,
                type=alert_type,
                asset=asset,
                message=message,
                severity=severity,
                timestamp=now,
            )
        )
