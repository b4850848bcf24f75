from __future__ import annotations

import logging
from typing import Any

from glassroute.errors import ConflictError, NotFoundError, ValidationError, field_error
from glassroute.models.database import DatabaseManager, utc_now
from glassroute.models.enums import BinStatus, parse_enum
from glassroute.models.schemas import BinCreate, BinUpdate
from glassroute.services.directory import Directory

LOGGER = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "establishment_id",
    "sector_id",
    "capacity_liters",
    "glass_type",
    "firmware_version",
    "inactivity_reason",
)

_BIN_SELECT = """
    SELECT
        b.*,
        s.name AS sector_name,
        s.code AS sector_code,
        e.name AS establishment_name,
        e.address AS establishment_address
    FROM bins b
    JOIN sectors s ON b.sector_id = s.id
    LEFT JOIN establishments e ON b.establishment_id = e.id
"""


class BinRegistry:
    def __init__(self, directory: Directory | None = None) -> None:
        self.directory = directory or Directory()

    def create(self, db: DatabaseManager, spec: BinCreate) -> dict[str, Any]:
        with db.transaction() as uow:
            existing = uow.fetchone("SELECT id FROM bins WHERE hardware_id = ?", (spec.hardware_id,))
            if existing is not None:
                raise ConflictError(
                    f"A bin with hardware_id {spec.hardware_id} already exists",
                    [field_error("hardware_id", "Duplicate hardware id")],
                )

            self.directory.require_active_sector(uow, spec.sector_id, not_found=False)
            if spec.establishment_id is not None:
                self.directory.require_active_establishment(uow, spec.establishment_id, not_found=False)

            now = utc_now()
            bin_id = uow.insert(
                """
                INSERT INTO bins (
                    hardware_id, sector_id, establishment_id, capacity_liters, glass_type,
                    firmware_version, status, fill_percent, is_active, installed_at,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, 1, ?, ?, ?)
                """,
                (
                    spec.hardware_id,
                    spec.sector_id,
                    spec.establishment_id,
                    spec.capacity_liters,
                    spec.glass_type.value,
                    spec.firmware_version,
                    BinStatus.ACTIVE.value,
                    now,
                    now,
                    now,
                ),
            )
            LOGGER.info("Registered bin %s (%s)", bin_id, spec.hardware_id)
            return uow.get_bin(bin_id)  # type: ignore[return-value]

    def get(self, db: DatabaseManager, bin_id: int) -> dict[str, Any]:
        with db.read() as uow:
            row = uow.fetchone(f"{_BIN_SELECT} WHERE b.id = ?", (bin_id,))
        if row is None:
            raise NotFoundError("Bin not found")
        return row

    def get_by_hardware_id(self, db: DatabaseManager, hardware_id: str) -> dict[str, Any]:
        with db.read() as uow:
            row = uow.fetchone(f"{_BIN_SELECT} WHERE b.hardware_id = ?", (hardware_id,))
        if row is None:
            raise NotFoundError(f"Bin not found: {hardware_id}")
        return row

    def list_bins(
        self,
        db: DatabaseManager,
        *,
        sector_id: int | None = None,
        establishment_id: int | None = None,
        status: BinStatus | str | None = None,
        active: bool | None = True,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        clauses: list[str] = []
        args: list[Any] = []
        if active is not None:
            clauses.append("b.is_active = ?")
            args.append(int(active))
        if sector_id is not None:
            clauses.append("b.sector_id = ?")
            args.append(sector_id)
        if establishment_id is not None:
            clauses.append("b.establishment_id = ?")
            args.append(establishment_id)
        if status is not None:
            clauses.append("b.status = ?")
            args.append(parse_enum(BinStatus, status, "status").value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with db.read() as uow:
            rows = uow.fetchall(
                f"{_BIN_SELECT} {where} ORDER BY b.created_at DESC, b.id DESC LIMIT ? OFFSET ?",
                [*args, limit, offset],
            )
            total = int(uow.scalar(f"SELECT COUNT(*) FROM bins b {where}", args))

        return {
            "items": rows,
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": total > offset + limit,
        }

    def update(self, db: DatabaseManager, bin_id: int, changes: BinUpdate) -> dict[str, Any]:
        values = changes.model_dump(exclude_unset=True)
        assignments: list[str] = []
        args: list[Any] = []
        for name in UPDATABLE_FIELDS:
            if name in values:
                value = values[name]
                assignments.append(f"{name} = ?")
                args.append(value.value if hasattr(value, "value") else value)

        if not assignments:
            raise ValidationError("No fields to update", [field_error("body", "Provide at least one mutable field")])

        with db.transaction() as uow:
            if uow.get_bin(bin_id) is None:
                raise NotFoundError("Bin not found")
            uow.execute(
                f"UPDATE bins SET {', '.join(assignments)}, updated_at = ? WHERE id = ?",
                [*args, utc_now(), bin_id],
            )
            return uow.get_bin(bin_id)  # type: ignore[return-value]

    def deactivate(self, db: DatabaseManager, bin_id: int, reason: str, actor_id: int | None) -> dict[str, Any]:
        """Take a bin out of service for a technical fault; its status is left alone."""
        with db.transaction() as uow:
            cursor = uow.execute(
                "UPDATE bins SET is_active = 0, inactivity_reason = ?, updated_at = ? WHERE id = ?",
                (reason, utc_now(), bin_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Bin not found")
            row = uow.get_bin(bin_id)
            assert row is not None
            uow.append_history(
                bin_id=bin_id,
                actor_id=actor_id,
                prior_status=row["status"],
                new_status=row["status"],
                fill_percent=row["fill_percent"],
                reason=f"Bin deactivated: {reason}",
            )
            LOGGER.info("Bin %s deactivated: %s", bin_id, reason)
            return row

    def reactivate(self, db: DatabaseManager, bin_id: int, actor_id: int | None) -> dict[str, Any]:
        with db.transaction() as uow:
            cursor = uow.execute(
                "UPDATE bins SET is_active = 1, inactivity_reason = NULL, updated_at = ? WHERE id = ?",
                (utc_now(), bin_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Bin not found")
            row = uow.get_bin(bin_id)
            assert row is not None
            uow.append_history(
                bin_id=bin_id,
                actor_id=actor_id,
                prior_status=row["status"],
                new_status=row["status"],
                fill_percent=row["fill_percent"],
                reason="Bin reactivated",
            )
            return row

    def history(self, db: DatabaseManager, bin_id: int, limit: int = 50) -> list[dict[str, Any]]:
        with db.read() as uow:
            if uow.get_bin(bin_id) is None:
                raise NotFoundError("Bin not found")
            return uow.fetchall(
                """
                SELECT * FROM bin_status_history
                WHERE bin_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (bin_id, limit),
            )
