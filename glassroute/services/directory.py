"""Sectors, establishments and users referenced by the bin workflow."""

from __future__ import annotations

from typing import Any

from glassroute.errors import NotFoundError, ValidationError, field_error
from glassroute.models.database import DatabaseManager, UnitOfWork, utc_now
from glassroute.models.schemas import EstablishmentCreate, SectorCreate, UserCreate


class Directory:
    def create_sector(self, db: DatabaseManager, spec: SectorCreate) -> dict[str, Any]:
        with db.transaction() as uow:
            sector_id = uow.insert(
                "INSERT INTO sectors (name, code, created_at) VALUES (?, ?, ?)",
                (spec.name, spec.code, utc_now()),
            )
            return uow.fetchone("SELECT * FROM sectors WHERE id = ?", (sector_id,))  # type: ignore[return-value]

    def create_user(self, db: DatabaseManager, spec: UserCreate) -> dict[str, Any]:
        with db.transaction() as uow:
            user_id = uow.insert(
                "INSERT INTO users (name, role, created_at) VALUES (?, ?, ?)",
                (spec.name, spec.role.value, utc_now()),
            )
            return uow.fetchone("SELECT * FROM users WHERE id = ?", (user_id,))  # type: ignore[return-value]

    def create_establishment(self, db: DatabaseManager, spec: EstablishmentCreate) -> dict[str, Any]:
        with db.transaction() as uow:
            self.require_active_sector(uow, spec.sector_id, not_found=False)
            establishment_id = uow.insert(
                """
                INSERT INTO establishments (sector_id, owner_id, name, address, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (spec.sector_id, spec.owner_id, spec.name, spec.address, utc_now()),
            )
            return uow.fetchone(  # type: ignore[return-value]
                "SELECT * FROM establishments WHERE id = ?", (establishment_id,)
            )

    def set_active(self, db: DatabaseManager, table: str, entity_id: int, active: bool) -> dict[str, Any]:
        if table not in {"sectors", "establishments", "users"}:
            raise ValueError(f"Unknown directory table: {table}")
        with db.transaction() as uow:
            cursor = uow.execute(f"UPDATE {table} SET is_active = ? WHERE id = ?", (int(active), entity_id))
            if cursor.rowcount == 0:
                raise NotFoundError(f"{table[:-1].capitalize()} not found")
            return uow.fetchone(f"SELECT * FROM {table} WHERE id = ?", (entity_id,))  # type: ignore[return-value]

    def require_active_sector(self, uow: UnitOfWork, sector_id: int, *, not_found: bool = True) -> dict[str, Any]:
        sector = uow.fetchone("SELECT * FROM sectors WHERE id = ? AND is_active = 1", (sector_id,))
        if sector is None:
            if not_found:
                raise NotFoundError("Sector not found or inactive")
            raise ValidationError("Sector not found or inactive", [field_error("sector_id", "Unknown or inactive sector")])
        return sector

    def require_active_establishment(
        self, uow: UnitOfWork, establishment_id: int, *, not_found: bool = True
    ) -> dict[str, Any]:
        establishment = uow.fetchone(
            "SELECT * FROM establishments WHERE id = ?", (establishment_id,)
        )
        if establishment is None and not_found:
            raise NotFoundError("Establishment not found")
        if establishment is None or not establishment["is_active"]:
            raise ValidationError(
                "Establishment not found or inactive",
                [field_error("establishment_id", "Unknown or inactive establishment")],
            )
        return establishment

    def require_active_user(self, uow: UnitOfWork, user_id: int) -> dict[str, Any]:
        user = uow.fetchone("SELECT * FROM users WHERE id = ? AND is_active = 1", (user_id,))
        if user is None:
            raise NotFoundError("User not found or inactive")
        return user
