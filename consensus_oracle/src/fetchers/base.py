"""Base fetcher interface and shared HTTP client management.

All REST price fetchers inherit from BaseFetcher and implement fetch().
A shared httpx.AsyncClient is used across all fetchers to avoid connection
overhead.

Fetchers speak in upper-case asset symbols and USD prices. fetch_quotes()
is the normalization boundary: whatever the vendor returns is turned into
RawQuote objects tagged with the fetcher name and its confidence, so vendor
quirks never reach the aggregation code.

.. code-block:: python

    @register_fetcher
    class MyFetcher(BaseFetcher):
        name = "myfetcher"
        confidence = 0.9

        async def fetch(self, asset: str) -> float | None:
            response = await self._get(f"https://api.example.com/{asset}/usd")
            return float(response.json()["price"])
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import ClassVar

import httpx

from ..errors import SourceUnavailable
from ..Quote import RawQuote

logger = logging.getLogger(__name__)


class FetcherError(SourceUnavailable):
    """Raised when a fetcher cannot produce prices for this cycle."""

    def __init__(self, message: str, source: str = "http"):
        """Initialize the fetcher error.

        :param message: Error message.
        :param source: Name of the failing fetcher.
        """
        super().__init__(source, message)


class FetcherHTTPError(FetcherError):
    """Raised when HTTP request fails.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str, source: str = "http"):
        """Initialize the HTTP error.

        :param status_code: HTTP status code.
        :param message: Error message from response.
        :param source: Name of the failing fetcher.
        """
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}", source)


class BaseFetcher(ABC):
    """Abstract base class for REST price fetchers.

    Subclasses must implement:
        - name: Class variable identifying the source (e.g., "coinbase")
        - fetch(): Async method returning the USD price of one asset

    :cvar name: Unique identifier for this fetcher.
    :cvar confidence: Reliability score attached to every quote.
    :cvar DEFAULT_TIMEOUT: Default HTTP request timeout in seconds.
    :ivar api_key: Optional API key for authenticated endpoints.
    :ivar timeout: Request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    name: ClassVar[str] = ""
    confidence: ClassVar[float] = 0.9

    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the fetcher.

        :param api_key: Optional API key for authenticated endpoints.
        :param timeout: Request timeout in seconds (default: 10).
        :param client: Optional client to use instead of the shared one.
        """
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._client = client

    @property
    def has_api_key(self) -> bool:
        """Check if this fetcher has an API key configured."""
        return self.api_key is not None and len(self.api_key) > 0

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        :returns: Shared httpx.AsyncClient instance.
        """
        if BaseFetcher._shared_client is None or BaseFetcher._shared_client.is_closed:
            BaseFetcher._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return BaseFetcher._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = BaseFetcher._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        BaseFetcher._shared_client = None

    @abstractmethod
    async def fetch(self, asset: str) -> float | None:
        """Fetch the current USD price of an asset.

        :param asset: Upper-case asset symbol (e.g., "BTC").
        :returns: Current price, or None if the vendor has no price.
        :raises FetcherError: On transport or HTTP failure.
        """
        pass

    def supports_asset(self, asset: str) -> bool:
        """Check if this fetcher can price the given asset.

        :param asset: Upper-case asset symbol.
        :returns: True if supported.
        """
        return True

    @property
    def supports_batch(self) -> bool:
        """Check if this fetcher implements fetch_batch() with one API call."""
        return False

    async def fetch_batch(self, assets: list[str]) -> dict[str, float | None]:
        """Fetch prices for several assets.

        Default implementation falls back to sequential individual fetches.

        :param assets: Upper-case asset symbols.
        :returns: Dict mapping asset to price or None.
        """
        return {asset: await self.fetch(asset) for asset in assets}

    async def fetch_quotes(self, assets: list[str], now: float) -> list[RawQuote]:
        """Fetch all supported assets and normalize them into RawQuotes.

        :param assets: Upper-case asset symbols requested this cycle.
        :param now: Timestamp stamped on every quote.
        :returns: Quotes for the assets the vendor priced.
        :raises FetcherError: If the underlying request fails.
        """
        supported = [a for a in assets if self.supports_asset(a)]
        if not supported:
            return []

        if self.supports_batch:
            prices = await self.fetch_batch(supported)
        else:
            prices = {asset: await self.fetch(asset) for asset in supported}

        return [
            RawQuote(
                asset=asset,
                price=price,
                source=self.name,
                timestamp=now,
                confidence=self.confidence,
            )
            for asset, price in prices.items()
            if price is not None
        ]

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises FetcherHTTPError: On non-2xx response.
        :raises FetcherError: On network/timeout errors.
        """
        client = self._client or self.get_shared_client()
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise FetcherError(f"Request timeout: {e}", self.name) from e
        except httpx.RequestError as e:
            raise FetcherError(f"Request failed: {e}", self.name) from e

        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise FetcherHTTPError(
                response.status_code, response.text[:200], self.name
            )
        return response


# Registry of available fetchers (populated by subclass imports)
FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Decorator to register a fetcher class in the global registry.

    :param cls: Fetcher class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If fetcher has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Fetcher {cls.__name__} must define a 'name' class variable")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(
    name: str,
    api_key: str | None = None,
    timeout: float | None = None,
) -> BaseFetcher:
    """Get a fetcher instance by name.

    :param name: Fetcher name (e.g., "coinbase", "kraken").
    :param api_key: Optional API key.
    :param timeout: Optional request timeout in seconds.
    :returns: Fetcher instance.
    :raises ValueError: If fetcher name is unknown.
    """
    if name not in FETCHER_REGISTRY:
        available = ", ".join(sorted(FETCHER_REGISTRY.keys()))
        raise ValueError(f"Unknown fetcher '{name}'. Available: {available}")
    return FETCHER_REGISTRY[name](api_key=api_key, timeout=timeout)


def get_available_fetchers() -> list[str]:
    """Get list of available fetcher names.

    :returns: Sorted list of registered fetcher names.
    """
    return sorted(FETCHER_REGISTRY.keys())
