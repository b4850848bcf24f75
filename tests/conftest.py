from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from glassroute.api.deps import Services
from glassroute.models.database import DatabaseManager
from glassroute.models.enums import UserRole
from glassroute.models.schemas import BinCreate, EstablishmentCreate, SectorCreate, UserCreate
from glassroute.telemetry.classifier import TelemetryProcessor


@dataclass
class Seed:
    sector_id: int
    other_sector_id: int
    establishment_id: int
    other_establishment_id: int
    manager_id: int
    owner_id: int
    collector_id: int
    other_collector_id: int


@pytest.fixture
def db(tmp_path: Path) -> DatabaseManager:
    manager = DatabaseManager(tmp_path / "glassroute.db", busy_timeout_seconds=5)
    manager.initialize()
    return manager


@pytest.fixture
def services() -> Services:
    return Services.build(TelemetryProcessor())


@pytest.fixture
def seed(db: DatabaseManager, services: Services) -> Seed:
    directory = services.directory
    north = directory.create_sector(db, SectorCreate(name="North", code="N1"))
    south = directory.create_sector(db, SectorCreate(name="South", code="S1"))
    manager = directory.create_user(db, UserCreate(name="Mara", role=UserRole.ROUTE_MANAGER))
    owner = directory.create_user(db, UserCreate(name="Omar", role=UserRole.ESTABLISHMENT_OWNER))
    collector = directory.create_user(db, UserCreate(name="Cleo", role=UserRole.COLLECTOR))
    other_collector = directory.create_user(db, UserCreate(name="Ivo", role=UserRole.COLLECTOR))
    cafe = directory.create_establishment(
        db, EstablishmentCreate(sector_id=north["id"], owner_id=owner["id"], name="Cafe Azul")
    )
    bar = directory.create_establishment(
        db, EstablishmentCreate(sector_id=north["id"], owner_id=owner["id"], name="Bar Verde")
    )
    return Seed(
        sector_id=north["id"],
        other_sector_id=south["id"],
        establishment_id=cafe["id"],
        other_establishment_id=bar["id"],
        manager_id=manager["id"],
        owner_id=owner["id"],
        collector_id=collector["id"],
        other_collector_id=other_collector["id"],
    )


@pytest.fixture
def make_bin(db: DatabaseManager, services: Services, seed: Seed):
    counter = {"n": 0}

    def _make(
        *,
        fill: float = 0,
        sector_id: int | None = None,
        establishment_id: int | None = -1,
        last_reading_at: str | None = None,
        glass_type: str = "mixed",
    ) -> dict:
        counter["n"] += 1
        created = services.registry.create(
            db,
            BinCreate(
                hardware_id=f"GLS-{counter['n']:03d}",
                sector_id=sector_id or seed.sector_id,
                establishment_id=seed.establishment_id if establishment_id == -1 else establishment_id,
                capacity_liters=240,
                glass_type=glass_type,
            ),
        )
        if fill or last_reading_at:
            set_fill(db, created["id"], fill, last_reading_at)
        return services.registry.get(db, created["id"])

    return _make


def set_fill(db: DatabaseManager, bin_id: int, fill: float, last_reading_at: str | None = None) -> None:
    with db.transaction() as uow:
        uow.execute(
            "UPDATE bins SET fill_percent = ?, last_reading_at = ? WHERE id = ?",
            (fill, last_reading_at, bin_id),
        )


def history_rows(db: DatabaseManager, bin_id: int) -> list[dict]:
    with db.read() as uow:
        return uow.fetchall("SELECT * FROM bin_status_history WHERE bin_id = ? ORDER BY id", (bin_id,))
