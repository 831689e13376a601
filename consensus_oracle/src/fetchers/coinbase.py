"""Coinbase Exchange fetcher.

Endpoint: https://api.exchange.coinbase.com/products/{ASSET}-USD/ticker
Rate Limit: High (no key required)
"""

import logging

from .base import BaseFetcher, FetcherHTTPError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class CoinbaseFetcher(BaseFetcher):
    """Fetcher for the Coinbase Exchange public ticker.

    One request per asset; no batch endpoint.
    """

    name = "coinbase"
    confidence = 0.97
    BASE_URL = "https://api.exchange.coinbase.com"

    async def fetch(self, asset: str) -> float | None:
        """Fetch the last trade price of ``<ASSET>-USD``.

        :param asset: Upper-case asset symbol.
        :returns: Last trade price, or None for an unlisted product.
        :raises FetcherError: On transport failure or non-404 HTTP errors.
        """
        product = f"{asset.upper()}-USD"
        try:
            response = await self._get(f"{self.BASE_URL}/products/{product}/ticker")
        except FetcherHTTPError as e:
            if e.status_code == 404:
                logger.debug(f"[coinbase] Product {product} not listed")
                return None
            raise

        try:
            return float(response.json()["price"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[coinbase] Failed to parse response for {product}: {e}")
            return None
