"""
SugarSentry — SQLite database setup and event store.

Creates and manages the local database (default ~/SugarSentry/data/SugarSentry.db).
SQLiteStore is both the reading sink the poller writes to and the event store
the alert monitor reads from. Every call opens its own connection so the
poller and monitor threads never share one.

Run this file directly to initialize all tables.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from config import DB_PATH
from errors import StoreError
from models import AlertEvent, CarbEvent, DoseEvent, Reading

logger = logging.getLogger("sugarsentry.db")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS glucose_readings (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp     TEXT    NOT NULL UNIQUE,  -- ISO8601 UTC
        glucose_mg_dl REAL    NOT NULL,
        trend         TEXT,                     -- e.g. Flat, FortyFiveUp
        source        TEXT    DEFAULT 'dexcom',
        created_at    TEXT    DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS insulin_doses (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp   TEXT    NOT NULL,  -- ISO8601 UTC
        units       REAL    NOT NULL,
        type        TEXT    NOT NULL,  -- formulation name, see INSULIN_TYPES
        notes       TEXT,
        created_at  TEXT    DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS meals (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp   TEXT    NOT NULL,  -- ISO8601 UTC
        description TEXT    NOT NULL,
        carbs_g     REAL    NOT NULL,
        created_at  TEXT    DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alert_log (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        rule_name    TEXT NOT NULL,
        triggered_at TEXT NOT NULL,  -- ISO8601 UTC
        message      TEXT NOT NULL
    )
    """,
    # -- Indexes for time-range queries --
    "CREATE INDEX IF NOT EXISTS idx_insulin_timestamp ON insulin_doses(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_meals_timestamp ON meals(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_alert_log_time ON alert_log(triggered_at)",
]


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO8601 so stored timestamps sort as text."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def from_iso(ts: str) -> datetime:
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def get_db(path: Path = DB_PATH) -> sqlite3.Connection:
    """Return a connection to the SugarSentry database."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(path: Path = DB_PATH) -> None:
    """Create all tables if they do not already exist."""
    conn = get_db(path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


class SQLiteStore:
    """Append-only store of readings, doses, carbs and alert events."""

    def __init__(self, path: Path = DB_PATH):
        self.path = Path(path)
        try:
            init_db(self.path)
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"unable to initialize database at {self.path}: {exc}") from exc

    def _query(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        try:
            conn = get_db(self.path)
            try:
                return conn.execute(sql, tuple(params)).fetchall()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"query failed: {exc}") from exc

    def _execute_many(self, sql: str, rows: list[tuple]) -> int:
        try:
            conn = get_db(self.path)
            try:
                before = conn.total_changes
                conn.executemany(sql, rows)
                conn.commit()
                return conn.total_changes - before
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"write failed: {exc}") from exc

    # -- Reading sink --

    def write(self, readings: list[Reading]) -> int:
        """Store a batch of readings, skipping timestamps already stored.

        Returns the number of new rows.
        """
        if not readings:
            return 0
        inserted = self._execute_many(
            """
            INSERT OR IGNORE INTO glucose_readings (timestamp, glucose_mg_dl, trend, source)
            VALUES (?, ?, ?, 'dexcom')
            """,
            [(to_iso(r.timestamp), r.value, r.trend) for r in readings],
        )
        logger.debug("Stored %d new of %d readings", inserted, len(readings))
        return inserted

    # -- Reads (inclusive ranges, oldest first) --

    def read_readings(self, start: datetime, end: datetime) -> list[Reading]:
        rows = self._query(
            """
            SELECT timestamp, glucose_mg_dl, trend FROM glucose_readings
            WHERE timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp ASC
            """,
            (to_iso(start), to_iso(end)),
        )
        return [
            Reading(value=r["glucose_mg_dl"], trend=r["trend"] or "None",
                    timestamp=from_iso(r["timestamp"]))
            for r in rows
        ]

    def read_doses(self, start: datetime, end: datetime) -> list[DoseEvent]:
        rows = self._query(
            """
            SELECT timestamp, units, type FROM insulin_doses
            WHERE timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp ASC
            """,
            (to_iso(start), to_iso(end)),
        )
        return [
            DoseEvent(units=r["units"], insulin_type=r["type"], timestamp=from_iso(r["timestamp"]))
            for r in rows
        ]

    def read_carbs(self, start: datetime, end: datetime) -> list[CarbEvent]:
        rows = self._query(
            """
            SELECT timestamp, description, carbs_g FROM meals
            WHERE timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp ASC
            """,
            (to_iso(start), to_iso(end)),
        )
        return [
            CarbEvent(grams=r["carbs_g"], description=r["description"],
                      timestamp=from_iso(r["timestamp"]))
            for r in rows
        ]

    def read_alert_events(self, start: datetime, end: datetime) -> list[AlertEvent]:
        rows = self._query(
            """
            SELECT rule_name, triggered_at, message FROM alert_log
            WHERE triggered_at >= ? AND triggered_at <= ?
            ORDER BY triggered_at ASC
            """,
            (to_iso(start), to_iso(end)),
        )
        return [
            AlertEvent(kind=r["rule_name"], message=r["message"],
                       timestamp=from_iso(r["triggered_at"]))
            for r in rows
        ]

    # -- Writes --

    def write_alert_event(self, event: AlertEvent) -> None:
        self._execute_many(
            "INSERT INTO alert_log (rule_name, triggered_at, message) VALUES (?, ?, ?)",
            [(event.kind, to_iso(event.timestamp), event.message)],
        )

    def write_dose(self, dose: DoseEvent, notes: Optional[str] = None) -> None:
        self._execute_many(
            "INSERT INTO insulin_doses (timestamp, units, type, notes) VALUES (?, ?, ?, ?)",
            [(to_iso(dose.timestamp), dose.units, dose.insulin_type, notes)],
        )

    def write_carb(self, carb: CarbEvent) -> None:
        self._execute_many(
            "INSERT INTO meals (timestamp, description, carbs_g) VALUES (?, ?, ?)",
            [(to_iso(carb.timestamp), carb.description, carb.grams)],
        )


if __name__ == "__main__":
    init_db()
    print("Database initialized.")
