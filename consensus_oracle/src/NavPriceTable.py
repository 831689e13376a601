"""Manual NAV price table for assets with no market feed.

Tokenized treasuries and funds are priced by their published net asset
value. The table is one trusted source: every cycle it emits one quote per
asset stamped with the cycle time, so NAV prices never go stale in the
aggregator.

Prices can be edited in process (set_price/remove) or kept in a JSON file:

.. code-block:: json

    {
        "T-BILL-2026": 99.87,
        "SPY-2026": {"price": 512.45, "confidence": 0.99}
    }

The file is re-read by refresh() whenever its modification time changes.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass

from .errors import ConfigurationError
from .Quote import RawQuote

logger = logging.getLogger(__name__)

NAV_SOURCE = "manual_nav"

DEFAULT_NAV_PRICES: dict[str, float] = {
    "T-BILL-2026": 99.87,
    "SPY-2026": 512.45,
}


@dataclass(frozen=True)
class NavEntry:
    """Published NAV for one asset."""

    price: float
    confidence: float = 1.0
    source: str = NAV_SOURCE


class NavPriceTable:
    """Asset → NAV mapping, optionally backed by a JSON file.

    :ivar path: JSON file to load from, or None for an in-memory table.
    """

    def __init__(
        self,
        prices: dict[str, float] | None = None,
        path: str | None = None,
    ) -> None:
        """Initialize the table.

        :param prices: Initial prices; defaults to DEFAULT_NAV_PRICES.
        :param path: Optional JSON file, loaded immediately if present.
        :raises ConfigurationError: If the file exists but is malformed.
        """
        self.path = path
        self._lock = threading.Lock()
        self._entries: dict[str, NavEntry] = {}
        self._mtime: float | None = None

        initial = DEFAULT_NAV_PRICES if prices is None else prices
        for asset, price in initial.items():
            self.set_price(asset, price)

        if path is not None and os.path.exists(path):
            self._load()

    def set_price(
        self, asset: str, price: float, confidence: float = 1.0
    ) -> None:
        """Set or replace the NAV of an asset.

        :raises ValueError: If price is not positive or confidence is outside [0, 1].
        """
        if not price > 0:
            raise ValueError(f"NAV price for {asset} must be positive, got {price}")
        if not 0 <= confidence <= 1:
            raise ValueError(f"NAV confidence for {asset} must be in [0, 1]")
        with self._lock:
            self._entries[asset.upper()] = NavEntry(price=float(price), confidence=confidence)

    def remove(self, asset: str) -> bool:
        """Remove an asset. Returns False if it was not in the table."""
        with self._lock:
            return self._entries.pop(asset.upper(), None) is not None

    def get(self, asset: str) -> NavEntry | None:
        with self._lock:
            return self._entries.get(asset.upper())

    @property
    def assets(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def refresh(self) -> bool:
        """Reload the backing file if it changed on disk.

        A file that disappeared or became unreadable keeps the current
        entries and is logged.

        :returns: True if the file was reloaded.
        """
        if self.path is None:
            return False
        try:
            mtime = os.path.getmtime(self.path)
        except OSError as e:
            logger.warning(f"[{NAV_SOURCE}] Cannot stat {self.path}: {e}")
            return False
        if mtime == self._mtime:
            return False
        try:
            self._load()
        except ConfigurationError as e:
            logger.warning(f"[{NAV_SOURCE}] Keeping previous NAV prices: {e}")
            return False
        return True

    def quotes(self, now: float) -> list[RawQuote]:
        """Emit one quote per asset stamped with ``now``."""
        with self._lock:
            return [
                RawQuote(
                    asset=asset,
                    price=entry.price,
                    source=entry.source,
                    timestamp=now,
                    confidence=entry.confidence,
                )
                for asset, entry in self._entries.items()
            ]

    def _load(self) -> None:
        mtime = os.path.getmtime(self.path)
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read NAV file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"NAV file {self.path} must contain a JSON object")

        entries: dict[str, NavEntry] = {}
        for asset, value in data.items():
            try:
                if isinstance(value, dict):
                    entry = NavEntry(
                        price=float(value["price"]),
                        confidence=float(value.get("confidence", 1.0)),
                    )
                else:
                    entry = NavEntry(price=float(value))
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid NAV entry for {asset}: {e}") from e
            if not entry.price > 0 or not 0 <= entry.confidence <= 1:
                raise ConfigurationError(f"Invalid NAV entry for {asset}: {value}")
            entries[asset.upper()] = entry

        with self._lock:
            self._entries = entries
            self._mtime = mtime
        logger.info(f"[{NAV_SOURCE}] Loaded {len(entries)} NAV prices from {self.path}")
