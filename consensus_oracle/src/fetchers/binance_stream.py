"""Binance trade-stream source.

Endpoint: wss://stream.binance.com:9443/stream?streams=btcusdt@trade/ethusdt@trade

Unlike the REST fetchers this source is push-based: a background task keeps
one websocket open and remembers the latest trade per asset. The oracle
cycle only reads that cache through latest_quotes(), so a slow or broken
stream never blocks a tick. USDT pairs are treated as USD.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import websockets

from ..Quote import RawQuote

logger = logging.getLogger(__name__)

BINANCE_STREAM_URL = "wss://stream.binance.com:9443/stream"
BINANCE_CONFIDENCE = 0.98


def parse_trade_message(raw: str | bytes | dict[str, Any]) -> RawQuote | None:
    """Parse one Binance trade event into a RawQuote.

    Accepts both the raw ``{"e": "trade", ...}`` event and the combined
    stream envelope ``{"stream": ..., "data": {...}}``.

    :param raw: Message text or already-decoded JSON.
    :returns: Quote, or None for non-trade or malformed messages.
    """
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    if "data" in data and isinstance(data["data"], dict):
        data = data["data"]
    if data.get("e") != "trade":
        return None

    try:
        symbol = str(data["s"]).upper()
        price = float(data["p"])
        # Event time is in milliseconds
        timestamp = float(data["E"]) / 1000.0
    except (KeyError, TypeError, ValueError):
        return None

    if not symbol.endswith("USDT") or len(symbol) == 4:
        return None

    return RawQuote(
        asset=symbol[:-4],
        price=price,
        source="binance",
        timestamp=timestamp,
        confidence=BINANCE_CONFIDENCE,
    )


class BinanceStreamSource:
    """Streaming source keeping the latest Binance trade per asset.

    :ivar name: Source name used in quotes and status reports.
    :ivar assets: Upper-case asset symbols subscribed to.
    :ivar is_connected: True while the websocket is open.
    :ivar last_error: Message of the last connection failure.
    """

    name = "binance"

    def __init__(
        self,
        assets: list[str],
        url: str = BINANCE_STREAM_URL,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
    ) -> None:
        """Initialize the source.

        :param assets: Assets to subscribe to.
        :param url: Combined-stream base URL.
        :param reconnect_delay: Initial reconnect delay in seconds.
        :param max_reconnect_delay: Cap for the exponential reconnect delay.
        """
        self.assets = [a.upper() for a in assets]
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.is_connected = False
        self.last_error: str | None = None
        self._latest: dict[str, RawQuote] = {}
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def stream_url(self) -> str:
        streams = "/".join(f"{a.lower()}usdt@trade" for a in self.assets)
        return f"{self.url}?streams={streams}"

    def handle_message(self, raw: str | bytes) -> None:
        """Record the trade carried by one message, if any."""
        quote = parse_trade_message(raw)
        if quote is not None and quote.asset in self.assets:
            self._latest[quote.asset] = quote

    def latest_quotes(self) -> list[RawQuote]:
        """Latest trade per asset. Staleness is left to the aggregator."""
        return list(self._latest.values())

    def start(self) -> None:
        """Start the background connection task on the running loop."""
        if self._task is not None and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="binance-stream")

    async def close(self) -> None:
        """Stop the background task and close the connection."""
        self._running = False
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.is_connected = False

    async def _run(self) -> None:
        delay = self.reconnect_delay
        while self._running:
            try:
                async with websockets.connect(
                    self.stream_url,
                    open_timeout=30,
                    ping_interval=60,
                    ping_timeout=300,
                    close_timeout=10,
                ) as ws:
                    self.is_connected = True
                    self.last_error = None
                    delay = self.reconnect_delay
                    logger.info(f"[binance] Connected ({len(self.assets)} streams)")
                    async for message in ws:
                        self.handle_message(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e)
                logger.warning(f"[binance] Stream error: {e}, reconnecting in {delay}s")
            finally:
                self.is_connected = False

            if not self._running:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)
