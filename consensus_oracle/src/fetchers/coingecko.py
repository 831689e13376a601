"""CoinGecko fetcher.

Endpoint: https://api.coingecko.com/api/v3/simple/price?ids={ids}&vs_currencies=usd
Rate Limit: 30 calls/min (free), higher with API key
"""

import logging

from .base import BaseFetcher, FetcherError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class CoinGeckoFetcher(BaseFetcher):
    """Fetcher for CoinGecko API.

    Aggregator quotes are slightly less trusted than exchange prints, hence
    the lower confidence.

    API tiers:
        - Free: api.coingecko.com (no key, 30 calls/min)
        - Demo: api.coingecko.com + x-cg-demo-api-key header
        - Pro: pro-api.coingecko.com + x-cg-pro-api-key header

    To use a demo key, prefix with "demo:": ORACLE_COINGECKO_API_KEY=demo:CG-xxxxx
    """

    name = "coingecko"
    confidence = 0.95
    BASE_URL_FREE = "https://api.coingecko.com/api/v3"
    BASE_URL_PRO = "https://pro-api.coingecko.com/api/v3"

    COIN_IDS = {
        "BTC": "bitcoin",
        "ETH": "ethereum",
        "SOL": "solana",
        "AVAX": "avalanche-2",
        "LINK": "chainlink",
        "DOT": "polkadot",
        "ATOM": "cosmos",
        "UNI": "uniswap",
        "AAVE": "aave",
        "USDC": "usd-coin",
        "USDT": "tether",
    }

    def __init__(self, api_key: str | None = None, timeout: float | None = None, **kwargs):
        self._is_demo = False
        if api_key and api_key.lower().startswith("demo:"):
            self._is_demo = True
            api_key = api_key[5:]
        super().__init__(api_key=api_key, timeout=timeout, **kwargs)

    @property
    def base_url(self) -> str:
        if self.has_api_key and not self._is_demo:
            return self.BASE_URL_PRO
        return self.BASE_URL_FREE

    def _headers(self) -> dict | None:
        if not self.has_api_key:
            return None
        header_name = "x-cg-demo-api-key" if self._is_demo else "x-cg-pro-api-key"
        return {header_name: self.api_key}

    def supports_asset(self, asset: str) -> bool:
        return asset.upper() in self.COIN_IDS

    @property
    def supports_batch(self) -> bool:
        """/simple/price accepts comma-separated ids."""
        return True

    async def fetch(self, asset: str) -> float | None:
        return (await self.fetch_batch([asset])).get(asset)

    async def fetch_batch(self, assets: list[str]) -> dict[str, float | None]:
        """Fetch USD prices for several assets in a single API call.

        :param assets: Upper-case asset symbols.
        :returns: Dict mapping asset to price, None where CoinGecko has none.
        :raises FetcherError: If the request itself fails.
        """
        ids = {a: self.COIN_IDS[a] for a in assets if a in self.COIN_IDS}
        results: dict[str, float | None] = {a: None for a in assets}
        if not ids:
            return results

        response = await self._get(
            f"{self.base_url}/simple/price",
            params={"ids": ",".join(sorted(set(ids.values()))), "vs_currencies": "usd"},
            headers=self._headers(),
        )
        try:
            data = response.json()
        except ValueError as e:
            raise FetcherError(f"Invalid JSON: {e}", self.name) from e

        for asset, coin_id in ids.items():
            try:
                results[asset] = float(data[coin_id]["usd"])
            except (KeyError, TypeError, ValueError):
                logger.warning(f"[coingecko] No USD price for {asset} ({coin_id})")

        return results
