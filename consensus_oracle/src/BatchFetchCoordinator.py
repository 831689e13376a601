"""BatchFetchCoordinator: Concurrent quote gathering across REST sources.

Architecture:
    - Queries every active source concurrently, one task per source
    - Each source uses its batch endpoint where available (see fetch_quotes)
    - Each source is bounded by its own timeout
    - A failing source contributes zero quotes and is reported, never raised
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import SourceUnavailable
from .Quote import RawQuote

if TYPE_CHECKING:
    from .fetchers import BaseFetcher

logger = logging.getLogger(__name__)


@dataclass
class FetchOutcome:
    """Result of querying one source in one cycle.

    :ivar source: Source name.
    :ivar quotes: Quotes produced (empty on failure).
    :ivar error: Failure, or None if the source answered.
    """

    source: str
    quotes: list[RawQuote] = field(default_factory=list)
    error: SourceUnavailable | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FetchResult:
    """Merged quotes plus per-source outcomes for one cycle."""

    quotes: list[RawQuote]
    outcomes: dict[str, FetchOutcome]


class BatchFetchCoordinator:
    """Coordinates concurrent fetching from multiple price sources.

    :ivar fetchers: Dict mapping source names to fetcher instances.
    :ivar fetch_timeout: Per-source timeout in seconds.
    """

    def __init__(
        self,
        fetchers: dict[str, BaseFetcher],
        fetch_timeout: float = 10.0,
    ) -> None:
        """Initialize the batch fetch coordinator.

        :param fetchers: Dict mapping source names to fetcher instances.
        :param fetch_timeout: Per-source timeout (default: 10.0).
        """
        self.fetchers = fetchers
        self.fetch_timeout = fetch_timeout

    async def fetch_all(
        self,
        assets: list[str],
        now: float,
        active_sources: list[str] | None = None,
    ) -> FetchResult:
        """Fetch quotes for all assets from all active sources.

        :param assets: Upper-case asset symbols.
        :param now: Timestamp stamped on every quote.
        :param active_sources: Sources to query. If None, all sources are used.
        :returns: Merged quotes and one outcome per queried source.
        """
        sources = [
            s for s in self.fetchers
            if active_sources is None or s in active_sources
        ]
        if not assets or not sources:
            return FetchResult(quotes=[], outcomes={})

        results = await asyncio.gather(
            *(self._fetch_source(s, assets, now) for s in sources),
            return_exceptions=True,
        )

        quotes: list[RawQuote] = []
        outcomes: dict[str, FetchOutcome] = {}
        for source, result in zip(sources, results, strict=True):
            if isinstance(result, BaseException):
                # _fetch_source catches Exception; this is e.g. cancellation
                logger.warning(f"[{source}] Fetch aborted: {result!r}")
                outcome = FetchOutcome(
                    source=source, error=SourceUnavailable(source, repr(result))
                )
            else:
                outcome = result
            outcomes[source] = outcome
            quotes.extend(outcome.quotes)

        return FetchResult(quotes=quotes, outcomes=outcomes)

    async def _fetch_source(
        self, source: str, assets: list[str], now: float
    ) -> FetchOutcome:
        fetcher = self.fetchers[source]
        try:
            quotes = await asyncio.wait_for(
                fetcher.fetch_quotes(assets, now),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{source}] Fetch timeout after {self.fetch_timeout}s")
            return FetchOutcome(
                source=source,
                error=SourceUnavailable(source, f"timeout after {self.fetch_timeout}s"),
            )
        except SourceUnavailable as e:
            logger.warning(f"Fetch failed: {e}")
            return FetchOutcome(source=source, error=e)
        except Exception as e:
            logger.warning(f"[{source}] Fetch error: {e}")
            return FetchOutcome(source=source, error=SourceUnavailable(source, str(e)))

        logger.debug(f"[{source}] {len(quotes)} quotes")
        return FetchOutcome(source=source, quotes=quotes)
