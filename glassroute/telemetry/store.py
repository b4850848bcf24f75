from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from glassroute.models.schemas import SensorReading

LOGGER = logging.getLogger(__name__)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


class TelemetryStore:
    """Append-mostly sensor event log, kept apart from the relational store.

    Events older than the retention window are purged by :meth:`purge_expired`.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

    def initialize(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sensor_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL UNIQUE,
                    hardware_id TEXT NOT NULL,
                    fill_percent INTEGER NOT NULL,
                    battery_level REAL,
                    temperature REAL,
                    glass_type TEXT,
                    firmware_version TEXT,
                    timestamp TEXT NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0,
                    processed_at TEXT,
                    bin_id INTEGER,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_hardware_time
                    ON sensor_events(hardware_id, timestamp DESC);

                CREATE INDEX IF NOT EXISTS idx_events_processed_time
                    ON sensor_events(processed, timestamp ASC);

                CREATE INDEX IF NOT EXISTS idx_events_fill_time
                    ON sensor_events(fill_percent, timestamp DESC);

                CREATE INDEX IF NOT EXISTS idx_events_glass_time
                    ON sensor_events(glass_type, timestamp DESC);
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def insert_event(self, reading: SensorReading) -> bool:
        """Store a reading once; a redelivered event id is ignored."""
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO sensor_events (
                    event_id, hardware_id, fill_percent, battery_level, temperature,
                    glass_type, firmware_version, timestamp, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    reading.event_id,
                    reading.hardware_id,
                    reading.fill_percent,
                    reading.battery_level,
                    reading.temperature,
                    reading.glass_type.value if reading.glass_type else None,
                    reading.firmware_version,
                    _iso(reading.timestamp),
                    _iso(datetime.now(tz=UTC)),
                ),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    def mark_processed(self, event_id: str, bin_id: int) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE sensor_events SET processed = 1, processed_at = ?, bin_id = ? WHERE event_id = ?",
                (_iso(datetime.now(tz=UTC)), bin_id, event_id),
            )
            self._conn.commit()

    def get_event(self, event_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM sensor_events WHERE event_id = ?", (event_id,)).fetchone()
        return dict(row) if row else None

    def get_history(
        self,
        *,
        hardware_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        skip: int = 0,
    ) -> dict[str, Any]:
        return self._page("hardware_id = ?", [hardware_id], start=start, end=end, limit=limit, skip=skip)

    def _page(
        self,
        clause: str,
        params: list[Any],
        *,
        start: datetime | None,
        end: datetime | None,
        limit: int,
        skip: int,
    ) -> dict[str, Any]:
        clauses = [clause]
        args = list(params)
        if start:
            clauses.append("timestamp >= ?")
            args.append(_iso(start))
        if end:
            clauses.append("timestamp <= ?")
            args.append(_iso(end))
        where = " AND ".join(clauses)

        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT * FROM sensor_events
                WHERE {where}
                ORDER BY timestamp DESC
                LIMIT ? OFFSET ?
                """,
                [*args, limit, skip],
            ).fetchall()
            total = self._conn.execute(f"SELECT COUNT(*) FROM sensor_events WHERE {where}", args).fetchone()[0]
        return {
            "items": [dict(row) for row in rows],
            "total": int(total),
            "limit": limit,
            "skip": skip,
            "has_more": total > skip + limit,
        }

    def get_last(self, hardware_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sensor_events WHERE hardware_id = ? ORDER BY timestamp DESC LIMIT 1",
                (hardware_id,),
            ).fetchone()
        return dict(row) if row else None

    def get_critical(
        self,
        hours: int = 24,
        limit: int = 50,
        *,
        min_fill: float = 80.0,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Recent readings at or above ``min_fill``, fullest first."""
        since = (now or datetime.now(tz=UTC)) - timedelta(hours=hours)
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM sensor_events
                WHERE fill_percent >= ? AND timestamp >= ?
                ORDER BY fill_percent DESC, timestamp DESC
                LIMIT ?
                """,
                (min_fill, _iso(since), limit),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_by_glass_type(
        self,
        glass_type: str,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        skip: int = 0,
    ) -> dict[str, Any]:
        return self._page("glass_type = ?", [glass_type], start=start, end=end, limit=limit, skip=skip)

    def get_unprocessed(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM sensor_events WHERE processed = 0 ORDER BY timestamp ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(row) for row in rows]

    def purge_expired(self, retention_days: int, *, now: datetime | None = None) -> int:
        cutoff = (now or datetime.now(tz=UTC)) - timedelta(days=retention_days)
        with self._lock:
            cursor = self._conn.execute("DELETE FROM sensor_events WHERE timestamp < ?", (_iso(cutoff),))
            self._conn.commit()
        if cursor.rowcount:
            LOGGER.info("Purged %d telemetry events older than %s", cursor.rowcount, cutoff.date())
        return cursor.rowcount


async def sweep_forever(store: TelemetryStore, retention_days: int, interval_seconds: int) -> None:
    while True:
        await asyncio.to_thread(store.purge_expired, retention_days)
        await asyncio.sleep(interval_seconds)
