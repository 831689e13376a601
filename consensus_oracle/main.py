#!/usr/bin/env python3
"""Consensus Price Oracle.

Gathers prices from multiple REST sources, an optional Binance trade stream
and a manual NAV table, computes a median consensus price per asset,
guards it with a circuit breaker and publishes trusted prices and TWAPs.

Configure with CLI arguments or ORACLE_* environment variables.
"""

import argparse
import asyncio
import logging
import signal
import sys

from .src.errors import ConfigurationError
from .src.fetchers import get_available_fetchers
from .src.OracleConfig import OracleConfig, parse_api_keys, parse_list
from .src.PriceOracle import init_oracle

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def build_parser(defaults: OracleConfig, available_sources: list[str]) -> argparse.ArgumentParser:
    """Build the CLI parser with defaults taken from the environment config."""
    parser = argparse.ArgumentParser(
        description="Consensus Price Oracle: median aggregation with circuit breakers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price sources:
  {', '.join(available_sources)}

Examples:
  # BTC and ETH from all REST sources
  python -m consensus_oracle.main --assets BTC,ETH --sources coinbase,kraken,coingecko

  # Add the Binance trade stream and require two sources per asset
  python -m consensus_oracle.main --assets BTC,ETH --stream --min-sources 2

  # Persist trusted prices and read NAV prices from a file
  python -m consensus_oracle.main --db-path prices.db --nav-file nav.json

Environment variables (CLI args take precedence):
  ORACLE_ASSETS, ORACLE_SOURCES, ORACLE_DEVIATION_THRESHOLD, ORACLE_MIN_SOURCES,
  ORACLE_CYCLE_INTERVAL, ORACLE_STREAM_ENABLED, ORACLE_DB_PATH, ORACLE_NAV_FILE,
  ORACLE_COINGECKO_API_KEY, etc.
""",
    )

    parser.add_argument(
        "--assets",
        type=str,
        help="Comma-separated asset symbols (e.g., BTC,ETH,SOL)",
        default=",".join(defaults.assets),
    )
    parser.add_argument(
        "--sources",
        type=str,
        help=f"Comma-separated REST sources. Available: {', '.join(available_sources)}",
        default=",".join(defaults.sources),
    )
    parser.add_argument(
        "--min-sources",
        dest="min_sources",
        type=int,
        help=f"Minimum sources per asset before the breaker trips (default: {defaults.min_sources})",
        default=defaults.min_sources,
    )
    parser.add_argument(
        "--deviation-threshold",
        dest="deviation_threshold",
        type=float,
        help=f"Relative move that trips the breaker (default: {defaults.deviation_threshold})",
        default=defaults.deviation_threshold,
    )
    parser.add_argument(
        "--recovery-window",
        dest="recovery_window",
        type=float,
        help=f"Seconds before a tripped breaker recovers (default: {defaults.recovery_window})",
        default=defaults.recovery_window,
    )
    parser.add_argument(
        "--staleness-window",
        dest="staleness_window",
        type=float,
        help=f"Maximum quote age in seconds (default: {defaults.staleness_window})",
        default=defaults.staleness_window,
    )
    parser.add_argument(
        "--cycle-interval",
        dest="cycle_interval",
        type=float,
        help=f"Seconds between oracle cycles (default: {defaults.cycle_interval})",
        default=defaults.cycle_interval,
    )
    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help=f"Per-source fetch timeout in seconds (default: {defaults.fetch_timeout})",
        default=defaults.fetch_timeout,
    )
    parser.add_argument(
        "--stream",
        dest="stream_enabled",
        action="store_true",
        help="Enable the Binance trade stream",
        default=defaults.stream_enabled,
    )
    parser.add_argument(
        "--nav-file",
        dest="nav_file",
        type=str,
        help="JSON file with manual NAV prices",
        default=defaults.nav_file,
    )
    parser.add_argument(
        "--db-path",
        dest="db_path",
        type=str,
        help="SQLite file for trusted price history (disabled if unset)",
        default=defaults.db_path,
    )
    parser.add_argument(
        "--settlement",
        dest="settlement_enabled",
        action="store_true",
        help="Submit trusted prices to on-chain aggregator contracts",
        default=defaults.settlement_enabled,
    )
    parser.add_argument(
        "--rpc-url",
        dest="rpc_url",
        type=str,
        help="JSON-RPC endpoint used for settlement",
        default=defaults.rpc_url,
    )
    parser.add_argument(
        "--feed-directory",
        dest="feed_directory",
        type=str,
        help="Address of the feed directory contract",
        default=defaults.feed_directory,
    )
    parser.add_argument(
        "--api-keys",
        dest="api_keys",
        type=str,
        help="Comma-separated API keys (e.g., coingecko=demo:CG-abc)",
        default=None,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    return parser


def config_from_args(args: argparse.Namespace, defaults: OracleConfig) -> OracleConfig:
    """Overlay parsed CLI arguments on the environment config."""
    api_keys = dict(defaults.api_keys)
    api_keys.update(parse_api_keys(args.api_keys))
    return OracleConfig(
        assets=parse_list(args.assets),
        sources=parse_list(args.sources),
        deviation_threshold=args.deviation_threshold,
        recovery_window=args.recovery_window,
        min_sources=args.min_sources,
        staleness_window=args.staleness_window,
        twap_windows=defaults.twap_windows,
        cycle_interval=args.cycle_interval,
        fetch_timeout=args.fetch_timeout,
        max_alerts=defaults.max_alerts,
        health_max_age=defaults.health_max_age,
        stream_enabled=args.stream_enabled,
        settlement_enabled=args.settlement_enabled,
        rpc_url=args.rpc_url,
        feed_directory=args.feed_directory,
        nav_file=args.nav_file,
        db_path=args.db_path,
        api_keys=api_keys,
    )


async def run(config: OracleConfig) -> None:
    """Start the oracle and run until cancelled or SIGTERM."""
    handle = await init_oracle(config)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, stop.set)
    except NotImplementedError:
        # Windows event loops have no signal handlers
        pass

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await handle.shutdown()


def main() -> None:
    """Main entry point for the Consensus Price Oracle CLI."""
    available_sources = get_available_fetchers()

    try:
        defaults = OracleConfig.from_env()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    parser = build_parser(defaults, available_sources)
    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = config_from_args(args, defaults)
    try:
        config.validate(available_sources)
    except ConfigurationError as e:
        parser.error(str(e))

    # Log configuration
    logger.info("=" * 60)
    logger.info("Consensus Price Oracle")
    logger.info("=" * 60)
    logger.info(f"Assets:            {', '.join(config.assets)}")
    logger.info(f"Sources:           {', '.join(config.sources) or 'none'}")
    logger.info(f"Binance Stream:    {'enabled' if config.stream_enabled else 'disabled'}")
    logger.info(f"Min Sources:       {config.min_sources}")
    logger.info(f"Deviation Trip:    {config.deviation_threshold * 100:.1f}%")
    logger.info(f"Recovery Window:   {config.recovery_window}s")
    logger.info(f"Staleness Window:  {config.staleness_window}s")
    logger.info(f"Cycle Interval:    {config.cycle_interval}s")
    logger.info(f"Fetch Timeout:     {config.fetch_timeout}s")
    logger.info(f"NAV File:          {config.nav_file or 'defaults'}")
    logger.info(f"Price Store:       {config.db_path or 'disabled'}")
    logger.info(f"Settlement:        {config.feed_directory if config.settlement_enabled else 'disabled'}")
    if config.api_keys:
        logger.info(f"API Keys:          {', '.join(config.api_keys.keys())}")
    logger.info("=" * 60)

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Stopped")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
