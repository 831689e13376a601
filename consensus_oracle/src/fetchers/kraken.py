"""Kraken fetcher.

Endpoint: https://api.kraken.com/0/public/Ticker?pair={PAIRS}
Rate Limit: High (no key required)
"""

import logging

from .base import BaseFetcher, FetcherError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class KrakenFetcher(BaseFetcher):
    """Fetcher for the Kraken public ticker.

    Kraken answers with its own pair names (``XXBTZUSD`` for ``XBTUSD``), so
    results are matched back by prefix-insensitive lookup.
    """

    name = "kraken"
    confidence = 0.97
    BASE_URL = "https://api.kraken.com/0/public"

    # Kraken uses XBT instead of BTC
    SYMBOL_MAP = {"BTC": "XBT"}

    def _pair(self, asset: str) -> str:
        return f"{self.SYMBOL_MAP.get(asset.upper(), asset.upper())}USD"

    @staticmethod
    def _find(result: dict, pair: str) -> dict | None:
        if pair in result:
            return result[pair]
        base, quote = pair[:-3], pair[-3:]
        for key, value in result.items():
            if key.endswith(quote) and base in key:
                return value
        return None

    @property
    def supports_batch(self) -> bool:
        """/Ticker accepts comma-separated pairs."""
        return True

    async def fetch(self, asset: str) -> float | None:
        return (await self.fetch_batch([asset])).get(asset)

    async def fetch_batch(self, assets: list[str]) -> dict[str, float | None]:
        """Fetch USD prices for several assets in a single API call.

        :param assets: Upper-case asset symbols.
        :returns: Dict mapping asset to price, None where Kraken has none.
        :raises FetcherError: If the request fails or Kraken reports an error
            without any result.
        """
        results: dict[str, float | None] = {a: None for a in assets}
        if not assets:
            return results

        pairs = {asset: self._pair(asset) for asset in assets}
        response = await self._get(
            f"{self.BASE_URL}/Ticker", params={"pair": ",".join(pairs.values())}
        )
        try:
            data = response.json()
        except ValueError as e:
            raise FetcherError(f"Invalid JSON: {e}", self.name) from e

        result = data.get("result") or {}
        if data.get("error"):
            if not result:
                raise FetcherError(f"API error: {data['error']}", self.name)
            logger.warning(f"[kraken] Partial API error: {data['error']}")

        for asset, pair in pairs.items():
            ticker = self._find(result, pair)
            if ticker is None:
                logger.debug(f"[kraken] No ticker for {pair}")
                continue
            try:
                # 'c' is the last trade closed array: [price, lot volume]
                results[asset] = float(ticker["c"][0])
            except (KeyError, IndexError, TypeError, ValueError) as e:
                logger.warning(f"[kraken] Failed to parse ticker for {pair}: {e}")

        return results
