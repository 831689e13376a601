"""Quote types shared by the sources, the aggregator and the orchestrator.

Every vendor payload is converted into a :class:`RawQuote` at the fetcher
boundary. The aggregation, breaker and TWAP code only ever see this shape.

.. code-block:: python

    >>> q = RawQuote("btc", 60000.0, "coinbase", 1700000000.0, 0.97)
    >>> q.asset
    'BTC'
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .TWAPEngine import TWAPState


@dataclass(frozen=True)
class RawQuote:
    """One source's reported USD price for an asset at a point in time.

    :ivar asset: Upper-case asset symbol (e.g. "BTC").
    :ivar price: Reported price in USD.
    :ivar source: Identifier of the reporting source.
    :ivar timestamp: Unix timestamp (seconds) of the observation.
    :ivar confidence: Source reliability in [0, 1].
    """

    asset: str
    price: float
    source: str
    timestamp: float
    confidence: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "asset", self.asset.upper())

    @property
    def is_valid(self) -> bool:
        """Check that the price is a finite positive number."""
        return (
            isinstance(self.price, (int, float))
            and math.isfinite(self.price)
            and self.price > 0
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "source": self.source,
            "price": self.price,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }


@dataclass
class AggregatedPrice:
    """Consensus price for one asset, recomputed every cycle.

    :ivar asset: Upper-case asset symbol.
    :ivar median_price: Median across surviving quotes.
    :ivar sources: Quotes that contributed to the median.
    :ivar confidence: Derived confidence in (0, 1].
    :ivar timestamp: Aggregation time (Unix seconds).
    :ivar twap: TWAP snapshot attached by the orchestrator, if any.
    """

    asset: str
    median_price: float
    sources: list[RawQuote]
    confidence: float
    timestamp: float
    twap: TWAPState | None = field(default=None)

    @property
    def source_names(self) -> list[str]:
        """Names of the contributing sources."""
        return [q.source for q in self.sources]

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "asset": self.asset,
            "median_price": self.median_price,
            "sources": [q.to_dict() for q in self.sources],
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "twap": self.twap.to_dict() if self.twap else None,
        }
