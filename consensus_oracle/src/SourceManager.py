"""SourceManager: Per-source health tracking with exponential backoff.

When a source fails (raises or times out), it is marked down and enters a
backoff period. The backoff doubles with each consecutive failure, up to a
maximum (default 5 minutes). A successful fetch marks the
source up again and resets the counter.

The tracked status doubles as the per-source up/down report exposed by
``PriceOracle.get_oracle_status()``.

.. code-block:: python

    >>> manager = SourceManager(["coingecko", "kraken"])
    >>> manager.record_failure("kraken", "timeout")
    5.0
    >>> manager.get_active_sources()
    ['coingecko']
    >>> manager.get_source_status("kraken").last_error
    'timeout'
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any


@dataclass
class SourceStatus:
    """Tracks the status of a single source.

    :ivar source: Source name.
    :ivar is_connected: False after a failure until the next success.
    :ivar last_fetch_ts: Time of the last successful fetch.
    :ivar last_error: Message of the most recent failure.
    :ivar asset_count: Quotes returned by the last successful fetch.
    :ivar consecutive_failures: Number of consecutive failures.
    :ivar backoff_until: Unix timestamp when backoff period ends.
    :ivar total_failures: Total failures since tracking began.
    :ivar total_successes: Total successes since tracking began.
    """

    source: str = ""
    is_connected: bool = True
    last_fetch_ts: float | None = None
    last_error: str | None = None
    asset_count: int = 0
    consecutive_failures: int = 0
    backoff_until: float = 0.0
    total_failures: int = 0
    total_successes: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "source": self.source,
            "is_connected": self.is_connected,
            "last_fetch_ts": self.last_fetch_ts,
            "last_error": self.last_error,
            "asset_count": self.asset_count,
            "consecutive_failures": self.consecutive_failures,
            "backoff_until": self.backoff_until,
        }


class SourceManager:
    """Manages source health tracking with exponential backoff.

    Tracks per-source failures and applies exponential backoff:
        - First failure: 5 second backoff
        - Second failure: 10 second backoff
        - Third failure: 20 second backoff
        - ... up to max_backoff_seconds (default 300 = 5 minutes)

    :ivar sources: List of tracked source names.
    :ivar base_backoff_seconds: Initial backoff duration after first failure.
    :ivar max_backoff_seconds: Maximum backoff duration.
    """

    DEFAULT_BASE_BACKOFF_SECONDS = 5
    DEFAULT_MAX_BACKOFF_SECONDS = 300  # 5 minutes

    def __init__(
        self,
        sources: list[str],
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
    ) -> None:
        """Initialize the source manager.

        :param sources: List of source names to track.
        :param base_backoff_seconds: Initial backoff duration after first failure.
        :param max_backoff_seconds: Maximum backoff duration (caps exponential growth).
        """
        self.sources = list(sources)
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._status: dict[str, SourceStatus] = {
            s: SourceStatus(source=s) for s in sources
        }

    def _get_or_create(self, source: str) -> SourceStatus:
        if source not in self._status:
            self._status[source] = SourceStatus(source=source)
        return self._status[source]

    def record_failure(self, source: str, error: str | None = None) -> float:
        """Record a failure for a source and apply exponential backoff.

        :param source: Source name that failed.
        :param error: Optional failure description, kept for status reports.
        :returns: The backoff duration in seconds.
        """
        status = self._get_or_create(source)
        status.is_connected = False
        status.last_error = error
        status.consecutive_failures += 1
        status.total_failures += 1

        # Exponential backoff: base * 2^(failures-1), capped at max
        backoff_seconds = min(
            self.base_backoff_seconds * (2 ** (status.consecutive_failures - 1)),
            self.max_backoff_seconds,
        )
        status.backoff_until = time.time() + backoff_seconds

        return float(backoff_seconds)

    def record_success(self, source: str, asset_count: int = 0) -> None:
        """Record a successful fetch, resetting the failure counter.

        :param source: Source name that succeeded.
        :param asset_count: Number of quotes the fetch produced.
        """
        status = self._get_or_create(source)
        status.is_connected = True
        status.last_fetch_ts = time.time()
        status.last_error = None
        status.asset_count = asset_count
        status.consecutive_failures = 0
        status.backoff_until = 0.0
        status.total_successes += 1

    def get_active_sources(self) -> list[str]:
        """Get sources that are not currently in backoff.

        :returns: List of source names available for fetching.
        """
        now = time.time()
        return [s for s in self.sources if now >= self._status[s].backoff_until]

    def get_source_status(self, source: str) -> SourceStatus | None:
        """Get the status of a specific source.

        :param source: Source name to query.
        :returns: SourceStatus or None if source not tracked.
        """
        return self._status.get(source)

    def get_all_status(self) -> dict[str, SourceStatus]:
        """Get a copy of the status of all sources.

        :returns: Dict mapping source names to their status.
        """
        return {name: replace(status) for name, status in self._status.items()}

