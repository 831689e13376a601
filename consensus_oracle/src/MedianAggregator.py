"""MedianAggregator: Consensus price per asset from many source quotes.

Algorithm:
    1. Drop malformed quotes (NaN, infinite, zero or negative price)
    2. Group quotes by asset
    3. Drop quotes older than the staleness window relative to ``now``
    4. Skip assets left with no quotes
    5. Median of the surviving prices, confidence from source count

.. code-block:: python

    >>> quotes = [
    ...     RawQuote("BTC", 60000.0, "coinbase", 1000.0, 0.95),
    ...     RawQuote("BTC", 61000.0, "kraken", 1000.0, 0.95),
    ... ]
    >>> result = aggregate_prices(quotes, now=1010.0)
    >>> result["BTC"].median_price
    60500.0
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from statistics import median as _median

from .Quote import AggregatedPrice, RawQuote

logger = logging.getLogger(__name__)

# Maximum age of a quote eligible for aggregation (5 minutes)
DEFAULT_STALENESS_SECONDS = 300.0

# Sources needed for the full confidence bonus
FULL_CONFIDENCE_SOURCES = 3

# Lower bound so a reported price never carries zero confidence
MIN_CONFIDENCE = 0.01


def calculate_median(values: Iterable[float]) -> float:
    """Calculate the median of a list of prices.

    For an even count the mean of the two central values is returned.
    An empty input yields ``0``.

    :param values: Prices in any order.
    :returns: Median value, or 0 for empty input.

    .. code-block:: python

        >>> calculate_median([10, 20])
        15.0
        >>> calculate_median([3, 1, 2])
        2
    """
    prices = list(values)
    if not prices:
        return 0
    return _median(prices)


def calculate_confidence(quotes: list[RawQuote]) -> float:
    """Calculate a confidence score for a set of surviving quotes.

    Average source confidence scaled by a bonus that grows with the number
    of sources and saturates at three. Result lies in (0, 1].

    :param quotes: Surviving quotes for one asset.
    :returns: Confidence score.
    """
    if not quotes:
        return 0.0

    avg_confidence = sum(q.confidence for q in quotes) / len(quotes)
    source_bonus = min(len(quotes) / FULL_CONFIDENCE_SOURCES, 1.0)
    confidence = avg_confidence * (0.8 + 0.2 * source_bonus)
    return max(MIN_CONFIDENCE, min(confidence, 1.0))


def aggregate_prices(
    quotes: Iterable[RawQuote],
    now: float,
    staleness_seconds: float = DEFAULT_STALENESS_SECONDS,
) -> dict[str, AggregatedPrice]:
    """Aggregate raw quotes into one median-based price per asset.

    :param quotes: Quotes for any number of assets.
    :param now: Reference time for the staleness check (Unix seconds).
    :param staleness_seconds: Maximum quote age.
    :returns: Dict mapping asset symbol to AggregatedPrice. Assets whose
        quotes are all stale or invalid are absent.
    """
    grouped: dict[str, list[RawQuote]] = {}
    dropped = 0
    for quote in quotes:
        if not quote.is_valid:
            dropped += 1
            continue
        grouped.setdefault(quote.asset, []).append(quote)

    if dropped:
        logger.debug(f"Dropped {dropped} malformed quotes before aggregation")

    results: dict[str, AggregatedPrice] = {}
    for asset, asset_quotes in grouped.items():
        fresh = [q for q in asset_quotes if now - q.timestamp < staleness_seconds]
        if not fresh:
            logger.debug(f"{asset}: no fresh quotes, skipping aggregation")
            continue

        results[asset] = AggregatedPrice(
            asset=asset,
            median_price=calculate_median(q.price for q in fresh),
            sources=fresh,
            confidence=calculate_confidence(fresh),
            timestamp=now,
        )

    logger.debug(f"Aggregated prices for {len(results)} assets")
    return results
