#!/usr/bin/env python3
from __future__ import annotations

import argparse
import random
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from glassroute.api.deps import Services
from glassroute.config import load_config
from glassroute.models.database import DatabaseManager
from glassroute.models.enums import GlassType, UserRole
from glassroute.models.schemas import BinCreate, EstablishmentCreate, SectorCreate, SensorReading, UserCreate
from glassroute.telemetry.classifier import TelemetryProcessor
from glassroute.telemetry.store import TelemetryStore

SECTORS: dict[str, str] = {
    "N1": "Old Town North",
    "S1": "Harbour South",
    "E1": "University East",
}

ESTABLISHMENTS: list[tuple[str, str]] = [
    ("N1", "Cafe Azul"),
    ("N1", "Bar Verde"),
    ("N1", "Hotel Plaza"),
    ("S1", "Fish Market Grill"),
    ("S1", "Marina Club"),
    ("E1", "Campus Canteen"),
    ("E1", "Library Bistro"),
]

# Bars and hotels fill up faster than cafes.
FILL_RATE_PER_HOUR: dict[str, float] = {
    "Bar": 1.9,
    "Hotel": 1.4,
    "Club": 1.7,
}


def fill_rate(name: str) -> float:
    for keyword, rate in FILL_RATE_PER_HOUR.items():
        if keyword in name:
            return rate
    return 1.0


def simulate_readings(
    *, hardware_id: str, rate: float, hours: int, rng: random.Random
) -> list[SensorReading]:
    """Hourly fill curve for one bin; only readings at or above 60% are emitted."""
    readings: list[SensorReading] = []
    now = datetime.now(tz=UTC)
    fill = rng.uniform(0.0, 20.0)
    for hour in range(hours, 0, -1):
        fill = min(100.0, fill + rate * rng.uniform(0.6, 1.4))
        if fill >= 98.0 and rng.random() < 0.5:
            fill = rng.uniform(0.0, 8.0)
        if fill >= 60.0:
            readings.append(
                SensorReading(
                    hardware_id=hardware_id,
                    fill_percent=int(fill),
                    battery_level=round(rng.uniform(40.0, 100.0), 1),
                    timestamp=now - timedelta(hours=hour),
                    event_id=f"seed-{hardware_id}-{hour}",
                )
            )
    return readings


def _lookup(db: DatabaseManager, sql: str, params: tuple) -> int | None:
    with db.read() as uow:
        return uow.scalar(sql, params)


def _ensure_user(db: DatabaseManager, services: Services, name: str, role: UserRole) -> int:
    existing = _lookup(db, "SELECT id FROM users WHERE name = ? AND role = ?", (name, role.value))
    if existing is not None:
        return existing
    return services.directory.create_user(db, UserCreate(name=name, role=role))["id"]


def _ensure_sector(db: DatabaseManager, services: Services, code: str, name: str) -> int:
    existing = _lookup(db, "SELECT id FROM sectors WHERE code = ?", (code,))
    if existing is not None:
        return existing
    return services.directory.create_sector(db, SectorCreate(name=name, code=code))["id"]


def _ensure_establishment(db: DatabaseManager, services: Services, sector_id: int, owner_id: int, name: str) -> int:
    existing = _lookup(db, "SELECT id FROM establishments WHERE sector_id = ? AND name = ?", (sector_id, name))
    if existing is not None:
        return existing
    spec = EstablishmentCreate(sector_id=sector_id, owner_id=owner_id, name=name)
    return services.directory.create_establishment(db, spec)["id"]


def seed_network(
    db: DatabaseManager,
    store: TelemetryStore,
    processor: TelemetryProcessor,
    *,
    bins_per_establishment: int,
    hours: int,
    rng: random.Random,
) -> tuple[int, int]:
    """Create the demo network. Records that already exist are reused, so reruns only add what is missing."""
    services = Services.build(processor)

    _ensure_user(db, services, "Route Manager", UserRole.ROUTE_MANAGER)
    owner_id = _ensure_user(db, services, "Owner", UserRole.ESTABLISHMENT_OWNER)
    _ensure_user(db, services, "Collector", UserRole.COLLECTOR)

    sector_ids = {code: _ensure_sector(db, services, code, name) for code, name in SECTORS.items()}

    bins = 0
    readings = 0
    glass_types = list(GlassType)
    for index, (code, name) in enumerate(ESTABLISHMENTS, start=1):
        establishment_id = _ensure_establishment(db, services, sector_ids[code], owner_id, name)
        for slot in range(1, bins_per_establishment + 1):
            hardware_id = f"GLS-{code}-{index:02d}{slot}"
            if _lookup(db, "SELECT id FROM bins WHERE hardware_id = ?", (hardware_id,)) is not None:
                continue
            services.registry.create(
                db,
                BinCreate(
                    hardware_id=hardware_id,
                    sector_id=sector_ids[code],
                    establishment_id=establishment_id,
                    capacity_liters=rng.choice([240.0, 660.0, 1100.0]),
                    glass_type=rng.choice(glass_types),
                ),
            )
            bins += 1
            for reading in simulate_readings(hardware_id=hardware_id, rate=fill_rate(name), hours=hours, rng=rng):
                processor.process(db, store, reading)
                readings += 1
    return bins, readings


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a demo glass collection network")
    parser.add_argument("--bins-per-establishment", type=int, default=2)
    parser.add_argument("--hours", type=int, default=72)
    parser.add_argument("--seed", type=int, default=7)
    args = parser.parse_args()

    config = load_config(ROOT / "config")
    db = DatabaseManager(config.database.path, busy_timeout_seconds=config.database.busy_timeout_seconds)
    db.initialize()
    store = TelemetryStore(config.telemetry.path)
    store.initialize()

    try:
        bins, readings = seed_network(
            db,
            store,
            TelemetryProcessor(config.thresholds),
            bins_per_establishment=args.bins_per_establishment,
            hours=args.hours,
            rng=random.Random(args.seed),
        )
    finally:
        store.close()
    print(f"Seeded {bins} bins and {readings} readings into {config.database.path}")


if __name__ == "__main__":
    main()
