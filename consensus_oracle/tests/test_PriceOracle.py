"""End-to-end tests for the PriceOracle pipeline."""

import asyncio
import time

import pytest

from consensus_oracle.src.Broadcaster import ChannelBroadcaster
from consensus_oracle.src.CircuitBreaker import ALERT_TRIP
from consensus_oracle.src.errors import SettlementSyncFailure
from consensus_oracle.src.fetchers import BaseFetcher, FetcherError
from consensus_oracle.src.NavPriceTable import NAV_SOURCE, NavPriceTable
from consensus_oracle.src.OracleConfig import OracleConfig
from consensus_oracle.src.PriceOracle import (
    DEGRADED,
    DOWN,
    HEALTHY,
    PriceOracle,
    init_oracle,
    price_topic,
)
from consensus_oracle.src.SettlementSync import ContractSettlementSync


class FakeFetcher(BaseFetcher):
    """Fetcher answering from a mutable price table."""

    def __init__(self, name: str, prices: dict[str, float]):
        super().__init__()
        self.name = name
        self.prices = prices

    async def fetch(self, asset: str) -> float | None:
        return self.prices.get(asset)


class DownFetcher(BaseFetcher):
    """Fetcher whose every request fails."""

    def __init__(self, name: str):
        super().__init__()
        self.name = name

    async def fetch(self, asset: str) -> float | None:
        raise FetcherError("connection refused", self.name)


class RecordingStore:
    def __init__(self):
        self.rows = []

    def append(self, asset, price, confidence, source, timestamp):
        self.rows.append((asset, price, source))

    def history(self, asset, limit=100):
        return []


class RecordingSettlement:
    def __init__(self, error: Exception | None = None):
        self.synced = []
        self.error = error

    async def sync(self, prices):
        self.synced.append(dict(prices))
        if self.error is not None:
            raise self.error
        return len(prices)


def make_oracle(fetchers, **kwargs):
    """Oracle over BTC and ETH with an empty NAV table and a recording subscriber."""
    config = kwargs.pop("config", None) or OracleConfig(
        assets=["BTC", "ETH"], sources=list(fetchers)
    )
    broadcaster = ChannelBroadcaster()
    published = []
    broadcaster.subscribe("*", lambda topic, payload: published.append((topic, payload)))
    oracle = PriceOracle(
        config,
        fetchers=fetchers,
        stream_sources=[],
        nav_table=NavPriceTable({}),
        broadcaster=broadcaster,
        **kwargs,
    )
    return oracle, published


def payloads_for(published, asset):
    return [p for topic, p in published if topic == price_topic(asset)]


class TestCycle:
    """Test a full oracle cycle."""

    def test_median_published(self) -> None:
        """Two sources are aggregated to their median and published as trusted."""
        oracle, published = make_oracle(
            {
                "coinbase": FakeFetcher("coinbase", {"BTC": 60000.0, "ETH": 3000.0}),
                "kraken": FakeFetcher("kraken", {"BTC": 61000.0, "ETH": 3010.0}),
            }
        )

        trusted = asyncio.run(oracle.run_oracle_cycle())

        assert trusted["BTC"].median_price == 60500.0
        assert trusted["ETH"].median_price == 3005.0

        (payload,) = payloads_for(published, "BTC")
        assert payload["asset"] == "BTC"
        assert payload["price"] == 60500.0
        assert payload["observed_price"] == 60500.0
        assert payload["trusted"] is True
        assert payload["change"] == 0.0
        assert sorted(payload["sources"]) == ["coinbase", "kraken"]
        assert payload["breaker"]["is_tripped"] is False
        assert payload["twap"]["price_5m"] == 60500.0

        assert oracle.get_asset_price("btc").median_price == 60500.0
        assert oracle.get_asset_twap("BTC").sample_count == 1

    def test_change_relative_to_previous_price(self) -> None:
        """The published change is relative to the previous trusted price."""
        fetcher = FakeFetcher("coinbase", {"BTC": 60000.0})
        oracle, published = make_oracle({"coinbase": fetcher})

        asyncio.run(oracle.run_oracle_cycle())
        fetcher.prices["BTC"] = 60600.0
        asyncio.run(oracle.run_oracle_cycle())

        payload = payloads_for(published, "BTC")[-1]
        assert payload["change"] == pytest.approx(0.01)
        assert oracle.get_asset_twap("BTC").sample_count == 2

    def test_failing_source_isolated(self) -> None:
        """A failing source is reported but the cycle still prices assets."""
        oracle, _ = make_oracle(
            {
                "coinbase": FakeFetcher("coinbase", {"BTC": 60000.0}),
                "kraken": DownFetcher("kraken"),
            }
        )

        trusted = asyncio.run(oracle.run_oracle_cycle())

        assert trusted["BTC"].median_price == 60000.0
        statuses = oracle.get_source_statuses()
        assert statuses["coinbase"].is_connected
        assert not statuses["kraken"].is_connected
        assert "connection refused" in statuses["kraken"].last_error
        assert statuses["kraken"].backoff_until > time.time()
        assert statuses[NAV_SOURCE].is_connected

    def test_source_in_backoff_skipped(self) -> None:
        """A failed source is not queried again while in backoff."""
        calls = []

        class CountingDown(DownFetcher):
            async def fetch(self, asset):
                calls.append(asset)
                return await super().fetch(asset)

        oracle, _ = make_oracle(
            {
                "coinbase": FakeFetcher("coinbase", {"BTC": 60000.0}),
                "kraken": CountingDown("kraken"),
            },
            config=OracleConfig(assets=["BTC"], sources=["coinbase", "kraken"]),
        )

        asyncio.run(oracle.run_oracle_cycle())
        asyncio.run(oracle.run_oracle_cycle())

        assert calls == ["BTC"]

    def test_nav_prices_included(self) -> None:
        """NAV table entries are priced alongside market assets."""
        oracle, published = make_oracle({"coinbase": FakeFetcher("coinbase", {"BTC": 60000.0})})
        oracle.nav_table.set_price("T-BILL-2026", 99.87)

        trusted = asyncio.run(oracle.run_oracle_cycle())

        assert trusted["T-BILL-2026"].median_price == 99.87
        assert trusted["T-BILL-2026"].source_names == [NAV_SOURCE]
        assert payloads_for(published, "T-BILL-2026")[0]["trusted"] is True

    def test_no_quotes_no_prices(self) -> None:
        """An asset no source prices is simply absent."""
        oracle, published = make_oracle({"coinbase": FakeFetcher("coinbase", {})})

        assert asyncio.run(oracle.run_oracle_cycle()) == {}
        assert published == []
        assert oracle.get_latest_prices() == {}


class TestCircuitBreakerIntegration:
    """Test how tripped assets flow through the pipeline."""

    def test_tripped_asset_published_untrusted(self) -> None:
        """A price jump is published untrusted with the last valid price."""
        fetcher = FakeFetcher("coinbase", {"BTC": 60000.0})
        store = RecordingStore()
        settlement = RecordingSettlement()
        oracle, published = make_oracle(
            {"coinbase": fetcher}, store=store, settlement=settlement
        )

        asyncio.run(oracle.run_oracle_cycle())
        fetcher.prices["BTC"] = 70000.0
        trusted = asyncio.run(oracle.run_oracle_cycle())

        assert "BTC" not in trusted
        payload = payloads_for(published, "BTC")[-1]
        assert payload["trusted"] is False
        assert payload["price"] == 60000.0
        assert payload["observed_price"] == 70000.0
        assert payload["breaker"]["is_tripped"] is True
        assert payload["breaker"]["cause"] == "deviation"

        assert oracle.get_asset_price("BTC").median_price == 60000.0
        assert oracle.get_asset_twap("BTC").sample_count == 1
        assert store.rows == [("BTC", 60000.0, "coinbase")]
        assert [list(s) for s in settlement.synced] == [["BTC"]]
        assert [a.type for a in oracle.get_alerts()] == [ALERT_TRIP]

    def test_first_cycle_trusted_with_few_sources(self) -> None:
        """The first observation of an asset is trusted whatever its source count."""
        oracle, published = make_oracle(
            {"coinbase": FakeFetcher("coinbase", {"BTC": 60000.0})},
            config=OracleConfig(assets=["BTC"], sources=["coinbase"], min_sources=2),
        )

        assert "BTC" in asyncio.run(oracle.run_oracle_cycle())
        (payload,) = payloads_for(published, "BTC")
        assert payload["trusted"] is True
        assert payload["price"] == 60000.0
        assert payload["breaker"]["is_tripped"] is False

    def test_insufficient_sources(self) -> None:
        """Losing a source below min_sources trips and keeps the last valid price."""
        kraken = FakeFetcher("kraken", {"BTC": 60200.0})
        oracle, published = make_oracle(
            {"coinbase": FakeFetcher("coinbase", {"BTC": 60000.0}), "kraken": kraken},
            config=OracleConfig(assets=["BTC"], sources=["coinbase", "kraken"], min_sources=2),
        )

        asyncio.run(oracle.run_oracle_cycle())
        kraken.prices.clear()
        assert asyncio.run(oracle.run_oracle_cycle()) == {}

        payload = payloads_for(published, "BTC")[-1]
        assert payload["trusted"] is False
        assert payload["price"] == 60100.0
        assert payload["observed_price"] == 60000.0
        assert payload["breaker"]["cause"] == "insufficient_sources"
        assert oracle.get_asset_price("BTC").median_price == 60100.0

    def test_manual_reset(self) -> None:
        """Resetting clears the trip; unknown assets report False."""
        fetcher = FakeFetcher("coinbase", {"BTC": 60000.0})
        oracle, _ = make_oracle({"coinbase": fetcher})
        asyncio.run(oracle.run_oracle_cycle())
        fetcher.prices["BTC"] = 70000.0
        asyncio.run(oracle.run_oracle_cycle())

        assert oracle.reset_circuit_breaker("btc") is True
        (state,) = oracle.get_all_breaker_states()
        assert not state.is_tripped
        assert state.last_valid_price == 60000.0
        assert oracle.reset_circuit_breaker("DOGE") is False


class TestCollaboratorFailures:
    """Test that sink failures never abort a cycle."""

    def test_settlement_failure_swallowed(self) -> None:
        """A failing settlement sync is logged and the cycle completes."""
        settlement = RecordingSettlement(SettlementSyncFailure("reverted", asset="BTC"))
        oracle, _ = make_oracle(
            {"coinbase": FakeFetcher("coinbase", {"BTC": 60000.0})}, settlement=settlement
        )

        trusted = asyncio.run(oracle.run_oracle_cycle())

        assert "BTC" in trusted
        assert len(settlement.synced) == 1
        assert oracle.is_healthy()

    def test_failing_subscriber_swallowed(self) -> None:
        """A raising subscriber does not stop the cycle."""
        oracle, _ = make_oracle({"coinbase": FakeFetcher("coinbase", {"BTC": 60000.0})})

        def broken(topic, payload):
            raise RuntimeError("client gone")

        oracle.broadcaster.subscribe(price_topic("BTC"), broken)

        assert "BTC" in asyncio.run(oracle.run_oracle_cycle())


class TestHealth:
    """Test health reporting."""

    def test_down_before_first_cycle(self) -> None:
        """Without prices the oracle is down."""
        oracle, _ = make_oracle({"coinbase": FakeFetcher("coinbase", {"BTC": 60000.0})})
        assert not oracle.is_healthy()
        assert oracle.get_oracle_status().health == DOWN

    def test_healthy_after_cycle(self) -> None:
        """All sources up and no trips is healthy; a stale cycle is not."""
        oracle, _ = make_oracle({"coinbase": FakeFetcher("coinbase", {"BTC": 60000.0})})
        asyncio.run(oracle.run_oracle_cycle())

        status = oracle.get_oracle_status()
        assert status.health == HEALTHY
        assert status.is_healthy
        assert status.last_cycle_duration >= 0
        assert status.to_dict()["aggregated_prices"]["BTC"]["median_price"] == 60000.0
        assert not oracle.is_healthy(now=time.time() + 1000)

    def test_degraded_with_source_down(self) -> None:
        """Prices flowing but a source down is degraded."""
        oracle, _ = make_oracle(
            {
                "coinbase": FakeFetcher("coinbase", {"BTC": 60000.0}),
                "kraken": DownFetcher("kraken"),
            }
        )
        asyncio.run(oracle.run_oracle_cycle())
        assert oracle.get_oracle_status().health == DEGRADED

    def test_clear_twap_data(self) -> None:
        """Clearing TWAP data forgets every sample."""
        oracle, _ = make_oracle({"coinbase": FakeFetcher("coinbase", {"BTC": 60000.0})})
        asyncio.run(oracle.run_oracle_cycle())

        oracle.clear_twap_data()
        assert oracle.get_asset_twap("BTC") is None


class TestInitOracle:
    """Test startup and shutdown."""

    def test_init_runs_first_cycle_and_shuts_down(self) -> None:
        """init_oracle starts the timer, which prices immediately."""

        async def scenario():
            config = OracleConfig(assets=["BTC"], sources=["coinbase"], cycle_interval=60.0)
            handle = await init_oracle(
                config,
                fetchers={"coinbase": FakeFetcher("coinbase", {"BTC": 60000.0})},
                stream_sources=[],
                nav_table=NavPriceTable({}),
            )
            await asyncio.sleep(0.05)
            price = handle.oracle.get_asset_price("BTC")
            await handle.shutdown()
            return price, handle

        price, handle = asyncio.run(scenario())
        assert price.median_price == 60000.0
        assert not handle.scheduler.is_started
        assert handle.scheduler.completed_ticks == 1

    def test_unreachable_settlement_node(self) -> None:
        """A dead RPC node does not stop startup or pricing."""

        async def scenario():
            config = OracleConfig(
                assets=["BTC"],
                sources=["coinbase"],
                cycle_interval=60.0,
                settlement_enabled=True,
                rpc_url="http://127.0.0.1:1",
                feed_directory="0x0000000000000000000000000000000000000001",
            )
            handle = await init_oracle(
                config,
                fetchers={"coinbase": FakeFetcher("coinbase", {"BTC": 60000.0})},
                stream_sources=[],
                nav_table=NavPriceTable({}),
            )
            await asyncio.sleep(0.05)
            price = handle.oracle.get_asset_price("BTC")
            await handle.shutdown()
            return price, handle

        price, handle = asyncio.run(scenario())
        assert isinstance(handle.oracle.settlement, ContractSettlementSync)
        assert price.median_price == 60000.0
        assert handle.scheduler.completed_ticks == 1
        assert handle.oracle.is_healthy()

    def test_init_rejects_invalid_config(self) -> None:
        """Invalid configuration fails before anything starts."""
        config = OracleConfig(sources=["bloomberg"])
        with pytest.raises(ValueError, match="bloomberg"):
            asyncio.run(init_oracle(config))
