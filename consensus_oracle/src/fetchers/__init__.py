"""
Price sources for the consensus oracle.

REST fetchers share one interface and normalize vendor payloads into
RawQuote objects. The Binance trade stream is push-based and exposes its
latest quotes instead.

Usage:
    from consensus_oracle.src.fetchers import get_fetcher, get_available_fetchers

    available = get_available_fetchers()
    # ['coinbase', 'coingecko', 'kraken']

    fetcher = get_fetcher("coinbase")
    quotes = await fetcher.fetch_quotes(["BTC", "ETH"], time.time())
"""

from .base import (
    FETCHER_REGISTRY,
    BaseFetcher,
    FetcherError,
    FetcherHTTPError,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)

# Import all fetcher implementations to trigger registration
from .binance_stream import BinanceStreamSource, parse_trade_message
from .coinbase import CoinbaseFetcher
from .coingecko import CoinGeckoFetcher
from .kraken import KrakenFetcher

__all__ = [
    # Base classes
    "BaseFetcher",
    "FetcherError",
    "FetcherHTTPError",
    # Registry functions
    "register_fetcher",
    "get_fetcher",
    "get_available_fetchers",
    "FETCHER_REGISTRY",
    # Sources
    "CoinbaseFetcher",
    "CoinGeckoFetcher",
    "KrakenFetcher",
    "BinanceStreamSource",
    "parse_trade_message",
]
