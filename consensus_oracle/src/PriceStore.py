"""Persistence of trusted price points.

The orchestrator writes one row per trusted asset per cycle through
``append()``. It runs the call in a worker thread, so implementations may
block. Any failure must surface as PersistenceFailure; the cycle logs it and
carries on.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Protocol

from .errors import PersistenceFailure

logger = logging.getLogger(__name__)


class PriceStore(Protocol):
    def append(
        self,
        asset: str,
        price: float,
        confidence: float,
        source: str,
        timestamp: float,
    ) -> None: ...


@dataclass(frozen=True)
class PricePoint:
    """Stored price row."""

    asset: str
    price: float
    confidence: float
    source: str
    timestamp: float


class SqlitePriceStore:
    """SQLite-backed price history.

    A connection is opened per call so the store can be used from whichever
    worker thread runs the write.

    :ivar db_path: Path to the database file.
    """

    def __init__(self, db_path: str = "oracle_prices.db") -> None:
        """Initialize the store and create the schema.

        :param db_path: Database file path.
        :raises PersistenceFailure: If the database cannot be initialized.
        """
        self.db_path = db_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=5.0)

    def _init_db(self) -> None:
        try:
            conn = self._connect()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS price_points (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        asset TEXT NOT NULL,
                        price REAL NOT NULL,
                        confidence REAL NOT NULL,
                        source TEXT NOT NULL,
                        timestamp REAL NOT NULL
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_price_points_asset_ts "
                    "ON price_points(asset, timestamp DESC)"
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot initialize {self.db_path}: {e}") from e
        logger.info(f"Price store initialized: {self.db_path}")

    def append(
        self,
        asset: str,
        price: float,
        confidence: float,
        source: str,
        timestamp: float,
    ) -> None:
        """Insert one price point.

        :param source: Comma-separated contributing sources.
        :raises PersistenceFailure: On any database error.
        """
        try:
            conn = self._connect()
            try:
                conn.execute(
                    "INSERT INTO price_points (asset, price, confidence, source, timestamp) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (asset, price, confidence, source, timestamp),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot store {asset} price: {e}") from e

    def history(self, asset: str, limit: int = 100) -> list[PricePoint]:
        """Most recent price points for an asset, newest first.

        :raises PersistenceFailure: On any database error.
        """
        try:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT asset, price, confidence, source, timestamp "
                    "FROM price_points WHERE asset = ? "
                    "ORDER BY timestamp DESC, id DESC LIMIT ?",
                    (asset, limit),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot read {asset} history: {e}") from e
        return [PricePoint(*row) for row in rows]
