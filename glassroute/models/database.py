from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import closing, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from glassroute.errors import ConflictError, GlassRouteError, ValidationError, field_error

LOGGER = logging.getLogger(__name__)

BOOL_COLUMNS = frozenset({"is_active", "completed", "processed"})
JSON_COLUMNS = frozenset({"extra"})

SCHEMA = """
CREATE TABLE IF NOT EXISTS sectors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    code TEXT NOT NULL UNIQUE,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('route_manager', 'establishment_owner', 'collector')),
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS establishments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sector_id INTEGER NOT NULL REFERENCES sectors(id),
    owner_id INTEGER NOT NULL REFERENCES users(id),
    name TEXT NOT NULL,
    address TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bins (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hardware_id TEXT NOT NULL UNIQUE,
    sector_id INTEGER NOT NULL REFERENCES sectors(id),
    establishment_id INTEGER REFERENCES establishments(id),
    capacity_liters REAL NOT NULL CHECK (capacity_liters > 0),
    glass_type TEXT NOT NULL DEFAULT 'mixed'
        CHECK (glass_type IN ('clear', 'green', 'amber', 'mixed')),
    firmware_version TEXT,
    battery_level REAL,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'pending_retirement', 'retired')),
    fill_percent REAL NOT NULL DEFAULT 0 CHECK (fill_percent BETWEEN 0 AND 100),
    last_reading_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    inactivity_reason TEXT,
    installed_at TEXT,
    retired_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_bins_sector_status
    ON bins(sector_id, status, fill_percent DESC);

CREATE TABLE IF NOT EXISTS bin_status_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    bin_id INTEGER NOT NULL REFERENCES bins(id),
    actor_id INTEGER,
    prior_status TEXT NOT NULL,
    new_status TEXT NOT NULL,
    fill_percent REAL,
    reason TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_history_bin_time
    ON bin_status_history(bin_id, created_at DESC);

CREATE TRIGGER IF NOT EXISTS trg_history_no_update
BEFORE UPDATE ON bin_status_history
BEGIN
    SELECT RAISE(ABORT, 'bin_status_history is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_history_no_delete
BEFORE DELETE ON bin_status_history
BEGIN
    SELECT RAISE(ABORT, 'bin_status_history is append-only');
END;

CREATE TABLE IF NOT EXISTS requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    establishment_id INTEGER NOT NULL REFERENCES establishments(id),
    requester_id INTEGER NOT NULL,
    type TEXT NOT NULL
        CHECK (type IN ('install', 'retire', 'manual_collection', 'assistance')),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'approved', 'completed', 'cancelled')),
    description TEXT,
    extra TEXT,
    bin_id INTEGER REFERENCES bins(id),
    approver_id INTEGER,
    response TEXT,
    created_at TEXT NOT NULL,
    approved_at TEXT,
    completed_at TEXT,
    updated_at TEXT NOT NULL,
    CHECK (type != 'retire' OR bin_id IS NOT NULL)
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_requests_active_retire
    ON requests(bin_id)
    WHERE type = 'retire' AND status IN ('pending', 'approved');

CREATE TABLE IF NOT EXISTS routes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sector_id INTEGER NOT NULL REFERENCES sectors(id),
    creator_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    planned_date TEXT,
    status TEXT NOT NULL DEFAULT 'planned'
        CHECK (status IN ('planned', 'assigned', 'in_progress', 'completed', 'cancelled')),
    assigned_collector_id INTEGER REFERENCES users(id),
    total_points INTEGER NOT NULL DEFAULT 0,
    completed_points INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS route_points (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    route_id INTEGER NOT NULL REFERENCES routes(id),
    bin_id INTEGER NOT NULL REFERENCES bins(id),
    order_index INTEGER NOT NULL CHECK (order_index >= 1),
    completed INTEGER NOT NULL DEFAULT 0,
    collected_percent REAL,
    notes TEXT,
    completed_at TEXT,
    UNIQUE (route_id, bin_id)
);

CREATE INDEX IF NOT EXISTS idx_points_route_order
    ON route_points(route_id, order_index);
"""


def utc_now() -> str:
    return datetime.now(tz=UTC).isoformat()


def decode_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    data = dict(row)
    for key in BOOL_COLUMNS.intersection(data):
        if data[key] is not None:
            data[key] = bool(data[key])
    for key in JSON_COLUMNS.intersection(data):
        if data[key] is not None:
            data[key] = json.loads(data[key])
    return data


def translate_integrity_error(exc: sqlite3.IntegrityError) -> GlassRouteError:
    text = str(exc)
    if text.startswith("UNIQUE constraint failed"):
        columns = text.split(":", 1)[-1].strip()
        return ConflictError("Record already exists", {"constraint": columns})
    if text.startswith("NOT NULL constraint failed"):
        column = text.split(":", 1)[-1].strip()
        return ValidationError("Missing required field", [field_error(column, "Field is required")])
    if text.startswith("FOREIGN KEY constraint failed"):
        return ValidationError("Invalid reference", [field_error("reference", "Referenced record does not exist")])
    if text.startswith("CHECK constraint failed"):
        return ValidationError("Invalid value", [field_error("value", text)])
    return ConflictError(text)


class UnitOfWork:
    """One connection, one transaction. Passed explicitly to nested operations."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return self._conn.execute(sql, params)

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        return decode_row(self._conn.execute(sql, params).fetchone())

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return [decode_row(row) for row in self._conn.execute(sql, params).fetchall()]  # type: ignore[misc]

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self._conn.execute(sql, params).fetchone()
        return row[0] if row else None

    def insert(self, sql: str, params: Sequence[Any] = ()) -> int:
        cursor = self._conn.execute(sql, params)
        return int(cursor.lastrowid)

    def get_bin(self, bin_id: int, *, active_only: bool = False) -> dict[str, Any] | None:
        sql = "SELECT * FROM bins WHERE id = ?"
        if active_only:
            sql += " AND is_active = 1"
        return self.fetchone(sql, (bin_id,))

    def lock_bin(self, bin_id: int) -> dict[str, Any] | None:
        # The write transaction already holds the database RESERVED lock, so
        # this read cannot interleave with another writer's check-then-write.
        return self.get_bin(bin_id, active_only=True)

    def append_history(
        self,
        *,
        bin_id: int,
        actor_id: int | None,
        prior_status: str,
        new_status: str,
        fill_percent: float | None,
        reason: str,
    ) -> int:
        return self.insert(
            """
            INSERT INTO bin_status_history (
                bin_id, actor_id, prior_status, new_status, fill_percent, reason, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (bin_id, actor_id, prior_status, new_status, fill_percent, reason, utc_now()),
        )


class DatabaseManager:
    def __init__(self, db_path: Path, *, busy_timeout_seconds: float = 10.0):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = busy_timeout_seconds
        self._init_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        with self._init_lock, closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        LOGGER.info("Relational store ready at %s", self.db_path)

    @contextmanager
    def transaction(self, uow: UnitOfWork | None = None) -> Iterator[UnitOfWork]:
        """Open a write transaction, or join ``uow`` when the caller already owns one.

        A joined unit of work is never committed or rolled back here; the
        outermost owner decides.
        """
        if uow is not None:
            yield uow
            return

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield UnitOfWork(conn)
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as exc:
            raise translate_integrity_error(exc) from exc
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[UnitOfWork]:
        """Autocommit connection for lookups that take no locks."""
        with closing(self._connect()) as conn:
            yield UnitOfWork(conn)
