"""Asynchronous SQLite helpers for call entries and their computed metrics."""

import time
from datetime import datetime
from typing import List, Optional, Union

import aiosqlite

from . import config
from .models import CallEntry, ExtremumRecord

METRIC_COLUMNS = (
    "current_price",
    "current_multiple",
    "current_market_cap",
    "ath_price",
    "ath_multiple",
    "ath_market_cap",
    "ath_at",
    "time_to_ath",
    "max_drawdown",
    "min_low_price",
    "min_low_at",
    "time_to_2x",
    "time_to_3x",
    "time_to_5x",
    "time_to_10x",
    "last_observed_at",
)


async def init_db() -> None:
    """Create database tables if they do not already exist."""
    async with aiosqlite.connect(config.DB_FILE) as db:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS calls (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                mint TEXT NOT NULL,
                entry_price REAL,
                entry_supply REAL,
                entry_market_cap REAL,
                entry_price_at INTEGER,
                detected_at INTEGER NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS call_metrics (
                call_id INTEGER PRIMARY KEY REFERENCES calls(id),
                current_price REAL,
                current_multiple REAL,
                current_market_cap REAL,
                ath_price REAL NOT NULL,
                ath_multiple REAL NOT NULL,
                ath_market_cap REAL,
                ath_at INTEGER NOT NULL,
                time_to_ath INTEGER NOT NULL,
                max_drawdown REAL NOT NULL,
                min_low_price REAL,
                min_low_at INTEGER,
                time_to_2x INTEGER,
                time_to_3x INTEGER,
                time_to_5x INTEGER,
                time_to_10x INTEGER,
                last_observed_at INTEGER,
                updated_at REAL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_calls_mint ON calls(mint)")
        await db.commit()


def to_millis(value: Union[int, float, datetime, None]) -> Optional[int]:
    """Return epoch milliseconds for a datetime or millisecond timestamp."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    return int(value)


async def add_call(
    mint: str,
    entry_price: Optional[float],
    detected_at: Union[int, datetime],
    *,
    entry_price_at: Union[int, datetime, None] = None,
    entry_supply: Optional[float] = None,
    entry_market_cap: Optional[float] = None,
) -> int:
    """Insert a call and return its id."""
    async with aiosqlite.connect(config.DB_FILE) as db:
        cursor = await db.execute(
            (
                "INSERT INTO calls (mint, entry_price, entry_supply, "
                "entry_market_cap, entry_price_at, detected_at) "
                "VALUES (?, ?, ?, ?, ?, ?)"
            ),
            (
                mint,
                entry_price,
                entry_supply,
                entry_market_cap,
                to_millis(entry_price_at),
                to_millis(detected_at),
            ),
        )
        call_id = cursor.lastrowid
        await cursor.close()
        await db.commit()
    return call_id


async def load_call_entries(force_refresh: bool = False) -> List[CallEntry]:
    """Return call entries with a positive entry price.

    Unless ``force_refresh`` is set, calls whose stored ATH multiple is
    already above 1 are left out.
    """
    query = (
        "SELECT c.id, c.mint, c.entry_price, c.entry_supply, c.entry_market_cap, "
        "COALESCE(c.entry_price_at, c.detected_at) "
        "FROM calls c LEFT JOIN call_metrics m ON m.call_id = c.id "
        "WHERE c.entry_price IS NOT NULL AND c.entry_price > 0"
    )
    if not force_refresh:
        query += " AND (m.call_id IS NULL OR m.ath_multiple <= 1)"
    query += " ORDER BY c.id"
    async with aiosqlite.connect(config.DB_FILE) as db:
        cursor = await db.execute(query)
        rows = await cursor.fetchall()
        await cursor.close()
    return [
        CallEntry(
            id=row[0],
            mint=row[1],
            entry_price=row[2],
            entry_supply=row[3],
            entry_market_cap=row[4],
            entry_time=row[5],
        )
        for row in rows
    ]


async def upsert_metrics(record: ExtremumRecord) -> None:
    """Insert or overwrite the metrics row of ``record.entry_id``."""
    row = record.as_row()
    columns = ", ".join(("call_id", *METRIC_COLUMNS, "updated_at"))
    placeholders = ", ".join("?" for _ in range(len(METRIC_COLUMNS) + 2))
    updates = ", ".join(
        f"{col}=excluded.{col}" for col in (*METRIC_COLUMNS, "updated_at")
    )
    async with aiosqlite.connect(config.DB_FILE) as db:
        await db.execute(
            (
                f"INSERT INTO call_metrics ({columns}) VALUES ({placeholders}) "
                f"ON CONFLICT(call_id) DO UPDATE SET {updates}"
            ),
            (
                record.entry_id,
                *(row[col] for col in METRIC_COLUMNS),
                time.time(),
            ),
        )
        await db.commit()


async def get_metrics(call_id: int) -> Optional[dict]:
    """Return the stored metrics of ``call_id`` if present."""
    async with aiosqlite.connect(config.DB_FILE) as db:
        cursor = await db.execute(
            f"SELECT {', '.join(METRIC_COLUMNS)} FROM call_metrics WHERE call_id=?",
            (call_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
    if row:
        return dict(zip(METRIC_COLUMNS, row))
    return None


async def count_metrics() -> int:
    """Return how many calls have stored metrics."""
    async with aiosqlite.connect(config.DB_FILE) as db:
        cursor = await db.execute("SELECT COUNT(*) FROM call_metrics")
        (count,) = await cursor.fetchone()
        await cursor.close()
    return count
