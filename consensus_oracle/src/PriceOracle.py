"""PriceOracle: Main orchestrator of the consensus price pipeline.

Each cycle:
    1. Gather quotes from the REST sources (concurrently, skipping sources in
       backoff), the trade streams and the manual NAV table
    2. Aggregate them into one median price per asset
    3. Evaluate the circuit breaker per asset
    4. Feed trusted prices into the TWAP engine and keep them as latest
    5. Publish every asset on ``prices:<ASSET>``, tripped ones flagged untrusted
    6. Persist and settle trusted prices (best effort)
    7. Record cycle timing for health reporting

Every step catches its own failures, so one broken source or collaborator
never aborts a cycle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .BatchFetchCoordinator import BatchFetchCoordinator, FetchResult
from .Broadcaster import Broadcaster, ChannelBroadcaster
from .CircuitBreaker import Alert, BreakerState, CircuitBreaker
from .errors import PersistenceFailure, SettlementSyncFailure
from .fetchers import BaseFetcher, BinanceStreamSource, get_available_fetchers, get_fetcher
from .JobScheduler import JobScheduler
from .MedianAggregator import aggregate_prices
from .NavPriceTable import NAV_SOURCE, NavPriceTable
from .OracleConfig import OracleConfig
from .OracleState import OracleState
from .PriceStore import PriceStore, SqlitePriceStore
from .Quote import AggregatedPrice, RawQuote
from .SettlementSync import ContractSettlementSync, SettlementSync
from .SourceManager import SourceManager, SourceStatus
from .TWAPEngine import TWAPEngine, TWAPState

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
DOWN = "down"


def price_topic(asset: str) -> str:
    """Broadcast topic of an asset."""
    return f"prices:{asset}"


@dataclass
class OracleStatus:
    """Pipeline health snapshot.

    :ivar health: "healthy", "degraded" or "down".
    :ivar is_healthy: Latest prices exist and the last cycle is recent.
    :ivar source_statuses: Per-source up/down status.
    :ivar aggregated_prices: Latest trusted price per asset.
    :ivar circuit_breakers: Breaker state of every observed asset.
    :ivar last_cycle_ts: Completion time of the last cycle.
    :ivar last_cycle_duration: Duration of the last cycle in seconds.
    """

    health: str
    is_healthy: bool
    source_statuses: dict[str, SourceStatus]
    aggregated_prices: dict[str, AggregatedPrice]
    circuit_breakers: list[BreakerState]
    last_cycle_ts: float | None
    last_cycle_duration: float | None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "health": self.health,
            "is_healthy": self.is_healthy,
            "source_statuses": {n: s.to_dict() for n, s in self.source_statuses.items()},
            "aggregated_prices": {a: p.to_dict() for a, p in self.aggregated_prices.items()},
            "circuit_breakers": [b.to_dict() for b in self.circuit_breakers],
            "last_cycle_ts": self.last_cycle_ts,
            "last_cycle_duration": self.last_cycle_duration,
        }


class PriceOracle:
    """Consensus oracle pipeline for one set of assets.

    Collaborators left as None are built from the configuration; pass them
    explicitly to replace them (tests pass fakes).

    :ivar config: Oracle configuration.
    :ivar state: Mutable pipeline state.
    :ivar fetchers: REST fetchers by source name.
    :ivar stream_sources: Push-based sources exposing latest_quotes().
    :ivar nav_table: Manual NAV prices.
    :ivar broadcaster: Receives every published snapshot.
    :ivar store: Optional price history store.
    :ivar settlement: Optional settlement sync.
    """

    def __init__(
        self,
        config: OracleConfig | None = None,
        fetchers: dict[str, BaseFetcher] | None = None,
        stream_sources: list[BinanceStreamSource] | None = None,
        nav_table: NavPriceTable | None = None,
        broadcaster: Broadcaster | None = None,
        store: PriceStore | None = None,
        settlement: SettlementSync | None = None,
        state: OracleState | None = None,
    ) -> None:
        """Initialize the oracle.

        :param config: Configuration; defaults to OracleConfig().
        :param fetchers: REST fetchers; built from ``config.sources`` if None.
        :param stream_sources: Stream sources; a Binance stream if enabled.
        :param nav_table: NAV table; loaded from ``config.nav_file`` if None.
        :param broadcaster: Publisher; an in-process ChannelBroadcaster if None.
        :param store: Price store; SQLite at ``config.db_path`` if set.
        :param settlement: Settlement sync; built if settlement is enabled.
        :param state: State container; a fresh one if None.
        """
        self.config = config or OracleConfig()
        self.state = state or OracleState(max_alerts=self.config.max_alerts)

        if fetchers is None:
            fetchers = {
                name: get_fetcher(
                    name,
                    api_key=self.config.api_keys.get(name),
                    timeout=self.config.fetch_timeout,
                )
                for name in self.config.sources
            }
        self.fetchers = fetchers

        if stream_sources is None:
            stream_sources = (
                [BinanceStreamSource(self.config.assets)]
                if self.config.stream_enabled
                else []
            )
        self.stream_sources = stream_sources

        self.nav_table = nav_table or NavPriceTable(path=self.config.nav_file)
        self.broadcaster = broadcaster or ChannelBroadcaster()

        if store is None and self.config.db_path:
            store = SqlitePriceStore(self.config.db_path)
        self.store = store

        if settlement is None and self.config.settlement_enabled:
            settlement = ContractSettlementSync.from_rpc(
                self.config.rpc_url, self.config.feed_directory
            )
        self.settlement = settlement

        self.twap_engine = TWAPEngine(self.state, self.config.twap_windows)
        self.circuit_breaker = CircuitBreaker(
            self.state,
            deviation_threshold=self.config.deviation_threshold,
            recovery_window=self.config.recovery_window,
            min_sources=self.config.min_sources,
        )
        self.source_manager = SourceManager(
            list(self.fetchers)
            + [s.name for s in self.stream_sources]
            + [NAV_SOURCE]
        )
        self.batch_coordinator = BatchFetchCoordinator(
            self.fetchers, fetch_timeout=self.config.fetch_timeout
        )

    async def run_oracle_cycle(self) -> dict[str, AggregatedPrice]:
        """Run one full cycle.

        :returns: Prices trusted in this cycle, keyed by asset.
        """
        started = time.time()
        now = started

        quotes = await self._gather_quotes(now)

        try:
            aggregated = aggregate_prices(quotes, now, self.config.staleness_window)
        except Exception as e:
            logger.error(f"Aggregation failed: {e}")
            aggregated = {}

        trusted: dict[str, AggregatedPrice] = {}
        tripped: list[str] = []
        for asset, price in aggregated.items():
            try:
                if self._process_asset(price, now):
                    trusted[asset] = price
                else:
                    tripped.append(asset)
            except Exception as e:
                logger.error(f"{asset}: processing failed: {e}")

        await self._persist(trusted)
        await self._settle(trusted)

        finished = time.time()
        with self.state.lock:
            self.state.last_cycle_ts = finished
            self.state.last_cycle_duration = finished - started

        logger.info(
            f"Cycle complete: {len(quotes)} quotes, {len(trusted)} trusted, "
            f"{len(tripped)} tripped in {finished - started:.2f}s"
        )
        if tripped:
            logger.debug(f"Tripped assets: {', '.join(sorted(tripped))}")
        return trusted

    async def _gather_quotes(self, now: float) -> list[RawQuote]:
        quotes: list[RawQuote] = []

        active = self.source_manager.get_active_sources()
        if self.fetchers and not any(s in self.fetchers for s in active):
            logger.warning("All REST sources in backoff")
        try:
            result = await self.batch_coordinator.fetch_all(
                self.config.assets, now, active_sources=active
            )
        except Exception as e:
            logger.error(f"REST fetch failed: {e}")
            result = FetchResult(quotes=[], outcomes={})

        for source, outcome in result.outcomes.items():
            if outcome.ok:
                self.source_manager.record_success(source, len(outcome.quotes))
            else:
                backoff = self.source_manager.record_failure(source, str(outcome.error))
                logger.info(f"[{source}] Backing off for {backoff:.0f}s")
        quotes.extend(result.quotes)

        for stream in self.stream_sources:
            stream_quotes = stream.latest_quotes()
            if stream.is_connected:
                self.source_manager.record_success(stream.name, len(stream_quotes))
            else:
                self.source_manager.record_failure(
                    stream.name, stream.last_error or "disconnected"
                )
            quotes.extend(stream_quotes)

        try:
            self.nav_table.refresh()
            nav_quotes = self.nav_table.quotes(now)
        except Exception as e:
            logger.warning(f"[{NAV_SOURCE}] Failed to read NAV prices: {e}")
            self.source_manager.record_failure(NAV_SOURCE, str(e))
        else:
            self.source_manager.record_success(NAV_SOURCE, len(nav_quotes))
            quotes.extend(nav_quotes)

        return quotes

    def _process_asset(self, price: AggregatedPrice, now: float) -> bool:
        asset = price.asset
        breaker = self.circuit_breaker.check_circuit_breaker(
            asset, price.median_price, len(price.sources)
        )

        with self.state.lock:
            previous = self.state.latest_prices.get(asset)

        if breaker.is_tripped:
            twap = self.twap_engine.get_twap(asset)
            payload = self._build_payload(
                price, breaker, previous, twap, breaker.last_valid_price, trusted=False
            )
        else:
            price.twap = self.twap_engine.update_twap(asset, price.median_price, now)
            with self.state.lock:
                self.state.latest_prices[asset] = price
            payload = self._build_payload(
                price, breaker, previous, price.twap, price.median_price, trusted=True
            )

        try:
            self.broadcaster.publish(price_topic(asset), payload)
        except Exception as e:
            logger.warning(f"{asset}: publish failed: {e}")

        return not breaker.is_tripped

    @staticmethod
    def _build_payload(
        price: AggregatedPrice,
        breaker: BreakerState,
        previous: AggregatedPrice | None,
        twap: TWAPState | None,
        published_price: float | None,
        trusted: bool,
    ) -> dict[str, Any]:
        change = 0.0
        if published_price is not None and previous is not None and previous.median_price > 0:
            change = (published_price - previous.median_price) / previous.median_price

        return {
            "asset": price.asset,
            "price": published_price,
            "observed_price": price.median_price,
            "change": change,
            "confidence": price.confidence,
            "sources": price.source_names,
            "trusted": trusted,
            "twap": twap.to_dict() if twap else None,
            "breaker": breaker.to_dict(),
            "ts": datetime.fromtimestamp(price.timestamp, tz=timezone.utc).isoformat(),
        }

    async def _persist(self, prices: dict[str, AggregatedPrice]) -> None:
        if self.store is None:
            return
        for asset, price in prices.items():
            try:
                await asyncio.to_thread(
                    self.store.append,
                    asset,
                    price.median_price,
                    price.confidence,
                    ",".join(price.source_names),
                    price.timestamp,
                )
            except PersistenceFailure as e:
                logger.warning(f"{asset}: persistence failed: {e}")
            except Exception as e:
                logger.error(f"{asset}: unexpected persistence error: {e}")

    async def _settle(self, prices: dict[str, AggregatedPrice]) -> None:
        if self.settlement is None or not prices:
            return
        try:
            submitted = await self.settlement.sync(prices)
            logger.debug(f"Settlement sync submitted {submitted} prices")
        except SettlementSyncFailure as e:
            logger.warning(f"Settlement sync failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected settlement sync error: {e}")

    def get_latest_prices(self) -> dict[str, AggregatedPrice]:
        """Latest trusted price of every asset."""
        with self.state.lock:
            return dict(self.state.latest_prices)

    def get_asset_price(self, asset: str) -> AggregatedPrice | None:
        with self.state.lock:
            return self.state.latest_prices.get(asset.upper())

    def get_asset_twap(self, asset: str) -> TWAPState | None:
        return self.twap_engine.get_twap(asset.upper())

    def get_source_statuses(self) -> dict[str, SourceStatus]:
        return self.source_manager.get_all_status()

    def get_all_breaker_states(self) -> list[BreakerState]:
        return self.circuit_breaker.get_all_breaker_states()

    def get_alerts(self) -> list[Alert]:
        """Breaker alerts, oldest first."""
        return self.circuit_breaker.get_alerts()

    def reset_circuit_breaker(self, asset: str) -> bool:
        """Manually reset an asset's breaker.

        :returns: False if the asset was never observed.
        """
        return self.circuit_breaker.reset_circuit_breaker(asset.upper())

    def clear_twap_data(self) -> None:
        self.twap_engine.clear_twap_data()

    def is_healthy(self, now: float | None = None) -> bool:
        """True if some price is known and the last cycle is recent enough."""
        now = time.time() if now is None else now
        with self.state.lock:
            has_prices = bool(self.state.latest_prices)
            last_cycle = self.state.last_cycle_ts
        return (
            has_prices
            and last_cycle is not None
            and now - last_cycle < self.config.health_max_age
        )

    def get_oracle_status(self) -> OracleStatus:
        """Snapshot of pipeline health, sources, prices and breakers."""
        is_healthy = self.is_healthy()
        sources = self.get_source_statuses()
        breakers = self.get_all_breaker_states()

        if not is_healthy:
            health = DOWN
        elif all(s.is_connected for s in sources.values()) and not any(
            b.is_tripped for b in breakers
        ):
            health = HEALTHY
        else:
            health = DEGRADED

        with self.state.lock:
            last_cycle_ts = self.state.last_cycle_ts
            last_cycle_duration = self.state.last_cycle_duration

        return OracleStatus(
            health=health,
            is_healthy=is_healthy,
            source_statuses=sources,
            aggregated_prices=self.get_latest_prices(),
            circuit_breakers=breakers,
            last_cycle_ts=last_cycle_ts,
            last_cycle_duration=last_cycle_duration,
        )


@dataclass
class OracleHandle:
    """A running oracle and its scheduler."""

    oracle: PriceOracle
    scheduler: JobScheduler

    async def shutdown(self) -> None:
        """Stop the timer, let an in-flight cycle finish and release resources."""
        await self.scheduler.shutdown()
        for stream in self.oracle.stream_sources:
            await stream.close()
        await BaseFetcher.close_shared_client()
        logger.info("Oracle stopped")


async def init_oracle(
    config: OracleConfig | None = None, **collaborators: Any
) -> OracleHandle:
    """Validate the configuration, build the oracle and start its timer.

    Must be awaited on the event loop that will run the cycles.

    :param config: Configuration; read from the environment if None.
    :param collaborators: Passed through to PriceOracle.
    :returns: Handle used to inspect and stop the oracle.
    :raises ConfigurationError: If the configuration is invalid.
    """
    config = config or OracleConfig.from_env()
    config.validate(get_available_fetchers())

    oracle = PriceOracle(config, **collaborators)
    for stream in oracle.stream_sources:
        stream.start()

    scheduler = JobScheduler("oracle-cycle", config.cycle_interval, oracle.run_oracle_cycle)
    scheduler.start()
    logger.info(
        f"Oracle started for {len(config.assets)} assets, "
        f"{len(oracle.fetchers)} REST sources, {len(oracle.stream_sources)} streams"
    )
    return OracleHandle(oracle=oracle, scheduler=scheduler)
