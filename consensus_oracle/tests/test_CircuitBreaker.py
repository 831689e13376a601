"""Unit tests for CircuitBreaker."""

import threading
from unittest.mock import patch

import pytest

from consensus_oracle.src.CircuitBreaker import (
    ALERT_RECOVER,
    ALERT_TRIP,
    CircuitBreaker,
    TripCause,
)
from consensus_oracle.src.OracleState import OracleState

T0 = 1_700_000_000.0


@pytest.fixture
def clock():
    with patch("consensus_oracle.src.CircuitBreaker.time.time") as mock_time:
        mock_time.return_value = T0
        yield mock_time


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(OracleState(), deviation_threshold=0.10, recovery_window=60.0)


class TestCircuitBreakerInit:
    """Test parameter validation."""

    @pytest.mark.parametrize(
        "kwargs, match",
        [
            ({"deviation_threshold": 0}, "deviation_threshold"),
            ({"recovery_window": -1}, "recovery_window"),
            ({"min_sources": 0}, "min_sources"),
        ],
    )
    def test_invalid_params(self, kwargs, match) -> None:
        """Non-positive parameters are rejected."""
        with pytest.raises(ValueError, match=match):
            CircuitBreaker(OracleState(), **kwargs)


class TestFirstObservation:
    """Test lazily created breaker state."""

    def test_first_price_seeds_last_valid(self, breaker) -> None:
        """The first price is accepted and remembered."""
        state = breaker.check_circuit_breaker("BTC", 60000.0, 2)
        assert state.is_tripped is False
        assert state.last_valid_price == 60000.0

    def test_first_price_never_trips_on_deviation(self, breaker) -> None:
        """Any first price is fine, however extreme."""
        assert breaker.check_circuit_breaker("BTC", 1e-6, 1).is_tripped is False

    def test_first_observation_ignores_source_count(self, clock) -> None:
        """A first observation is NORMAL even below min_sources."""
        breaker = CircuitBreaker(OracleState(), min_sources=2)
        state = breaker.check_circuit_breaker("ETH", 3000.0, 1)

        assert state.is_tripped is False
        assert state.last_valid_price == 3000.0
        assert breaker.get_alerts() == []

    def test_source_guard_from_second_observation(self, clock) -> None:
        """The source guard applies once the breaker exists."""
        breaker = CircuitBreaker(OracleState(), min_sources=2)
        breaker.check_circuit_breaker("ETH", 3000.0, 1)
        state = breaker.check_circuit_breaker("ETH", 3000.0, 1)

        assert state.is_tripped is True
        assert state.cause == TripCause.INSUFFICIENT_SOURCES
        assert state.reason == "Insufficient sources for ETH: 1 < 2"
        assert state.last_valid_price == 3000.0


class TestDeviationTrip:
    """Test deviation-based tripping."""

    def test_small_move_accepted(self, breaker) -> None:
        """A move below the threshold updates the last valid price."""
        breaker.check_circuit_breaker("BTC", 60000.0, 2)
        state = breaker.check_circuit_breaker("BTC", 63000.0, 2)
        assert state.is_tripped is False
        assert state.last_valid_price == 63000.0

    def test_large_drop_trips(self, breaker) -> None:
        """A 20% drop trips and keeps the last valid price."""
        breaker.check_circuit_breaker("BTC", 60000.0, 2)
        state = breaker.check_circuit_breaker("BTC", 48000.0, 2)

        assert state.is_tripped is True
        assert state.cause == TripCause.DEVIATION
        assert state.last_valid_price == 60000.0
        assert state.tripped_at == T0
        assert state.recovers_at == T0 + 60.0
        assert state.reason == "Price deviation 20.0% for BTC breaches threshold 10%"

    def test_exact_threshold_trips(self, breaker) -> None:
        """A move of exactly the threshold trips."""
        breaker.check_circuit_breaker("BTC", 100.0, 2)
        assert breaker.check_circuit_breaker("BTC", 110.0, 2).is_tripped is True

    def test_trip_records_alert(self, breaker) -> None:
        """Tripping appends a warning alert."""
        breaker.check_circuit_breaker("BTC", 60000.0, 2)
        breaker.check_circuit_breaker("BTC", 48000.0, 2)

        alerts = breaker.get_alerts()
        assert len(alerts) == 1
        assert alerts[0].type == ALERT_TRIP
        assert alerts[0].asset == "BTC"
        assert alerts[0].severity == "warning"
        assert alerts[0].timestamp == T0

    def test_insufficient_sources_after_seed(self, clock) -> None:
        """Dropping below min_sources trips even at an unchanged price."""
        breaker = CircuitBreaker(OracleState(), min_sources=2)
        breaker.check_circuit_breaker("BTC", 60000.0, 3)
        state = breaker.check_circuit_breaker("BTC", 60000.0, 1)
        assert state.cause == TripCause.INSUFFICIENT_SOURCES
        assert state.last_valid_price == 60000.0


class TestRecovery:
    """Test hysteresis and recovery."""

    def test_stays_tripped_within_window(self, breaker, clock) -> None:
        """A normal price inside the window does not clear the trip."""
        breaker.check_circuit_breaker("BTC", 60000.0, 2)
        breaker.check_circuit_breaker("BTC", 48000.0, 2)

        clock.return_value = T0 + 30
        state = breaker.check_circuit_breaker("BTC", 60000.0, 3)
        assert state.is_tripped is True
        assert state.last_valid_price == 60000.0

    def test_auto_recovers_after_window(self, breaker, clock) -> None:
        """After the window a normal price recovers the breaker."""
        breaker.check_circuit_breaker("BTC", 60000.0, 2)
        breaker.check_circuit_breaker("BTC", 48000.0, 2)

        clock.return_value = T0 + 60
        state = breaker.check_circuit_breaker("BTC", 60500.0, 2)

        assert state.is_tripped is False
        assert state.reason is None
        assert state.last_valid_price == 60500.0
        assert [a.type for a in breaker.get_alerts()] == [ALERT_TRIP, ALERT_RECOVER]

    def test_retrips_after_window_if_still_deviating(self, breaker, clock) -> None:
        """Recovery is followed by a normal evaluation of the new price."""
        breaker.check_circuit_breaker("BTC", 60000.0, 2)
        breaker.check_circuit_breaker("BTC", 48000.0, 2)

        clock.return_value = T0 + 61
        state = breaker.check_circuit_breaker("BTC", 48000.0, 2)

        assert state.is_tripped is True
        assert state.tripped_at == T0 + 61
        assert state.last_valid_price == 60000.0
        assert [a.type for a in breaker.get_alerts()] == [ALERT_TRIP, ALERT_RECOVER, ALERT_TRIP]

    def test_manual_reset(self, breaker) -> None:
        """Reset clears the trip but keeps the last valid price."""
        breaker.check_circuit_breaker("BTC", 60000.0, 2)
        breaker.check_circuit_breaker("BTC", 48000.0, 2)

        assert breaker.reset_circuit_breaker("BTC") is True
        state = breaker.get_breaker_state("BTC")

        assert state.is_tripped is False
        assert state.tripped_at is None
        assert state.recovers_at is None
        assert state.cause is None
        assert state.last_valid_price == 60000.0
        assert breaker.get_alerts()[-1].type == ALERT_RECOVER

    def test_reset_unknown_asset(self, breaker) -> None:
        """Resetting a never-observed asset returns False."""
        assert breaker.reset_circuit_breaker("DOGE") is False
        assert breaker.get_alerts() == []


class TestAlertsAndSnapshots:
    """Test alert log and state snapshots."""

    def test_alerts_capped_oldest_evicted(self, clock) -> None:
        """The alert log keeps only the newest max_alerts entries."""
        breaker = CircuitBreaker(OracleState(max_alerts=3), min_sources=2)
        for i in range(5):
            breaker.check_circuit_breaker(f"A{i}", 1.0, 2)
            breaker.check_circuit_breaker(f"A{i}", 1.0, 1)

        assets = [a.asset for a in breaker.get_alerts()]
        assert assets == ["A2", "A3", "A4"]

    def test_alert_ids_unique(self, clock) -> None:
        """Every alert gets its own id."""
        breaker = CircuitBreaker(OracleState(), min_sources=2)
        for i in range(10):
            breaker.check_circuit_breaker(f"A{i}", 1.0, 2)
            breaker.check_circuit_breaker(f"A{i}", 1.0, 1)
        assert len({a.id for a in breaker.get_alerts()}) == 10

    def test_snapshots_are_copies(self, breaker) -> None:
        """Mutating a returned state does not affect the breaker."""
        snapshot = breaker.check_circuit_breaker("BTC", 60000.0, 2)
        snapshot.last_valid_price = 1.0
        assert breaker.get_breaker_state("BTC").last_valid_price == 60000.0

    def test_get_all_breaker_states(self, breaker) -> None:
        """Every observed asset is listed."""
        breaker.check_circuit_breaker("BTC", 60000.0, 2)
        breaker.check_circuit_breaker("ETH", 3000.0, 2)
        assert {b.asset for b in breaker.get_all_breaker_states()} == {"BTC", "ETH"}

    def test_unknown_state_is_none(self, breaker) -> None:
        """An unseen asset has no state."""
        assert breaker.get_breaker_state("DOGE") is None

    def test_to_dict(self, breaker) -> None:
        """to_dict serializes the cause as its value."""
        breaker.check_circuit_breaker("BTC", 60000.0, 2)
        data = breaker.check_circuit_breaker("BTC", 30000.0, 2).to_dict()
        assert data["cause"] == "deviation"
        assert data["is_tripped"] is True


class TestConcurrency:
    """Test serialization of evaluations and resets."""

    def test_concurrent_reset_and_check(self, clock) -> None:
        """Resets racing with evaluations leave a consistent state."""
        breaker = CircuitBreaker(OracleState())
        breaker.check_circuit_breaker("BTC", 100.0, 2)

        def evaluate() -> None:
            for _ in range(200):
                breaker.check_circuit_breaker("BTC", 150.0, 2)

        def reset() -> None:
            for _ in range(200):
                breaker.reset_circuit_breaker("BTC")

        threads = [threading.Thread(target=evaluate), threading.Thread(target=reset)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        state = breaker.get_breaker_state("BTC")
        assert state.last_valid_price == 100.0
        assert state.is_tripped == (state.recovers_at is not None)
