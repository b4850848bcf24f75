from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request

from glassroute.api.deps import Actor, Services, get_actor, get_db, get_services
from glassroute.errors import NotFoundError
from glassroute.models.database import DatabaseManager
from glassroute.models.enums import GlassType
from glassroute.models.schemas import (
    ActiveFlag,
    BinCreate,
    BinDeactivate,
    BinReassign,
    BinStatusChange,
    BinUpdate,
    EstablishmentCreate,
    SectorCreate,
    SensorReading,
    UserCreate,
)

router = APIRouter(prefix="/api")


@router.post("/sectors", status_code=201)
def create_sector(
    payload: SectorCreate,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.directory.create_sector(db, payload)


@router.post("/establishments", status_code=201)
def create_establishment(
    payload: EstablishmentCreate,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.directory.create_establishment(db, payload)


@router.post("/users", status_code=201)
def create_user(
    payload: UserCreate,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.directory.create_user(db, payload)


@router.post("/{kind}/{entity_id}/active")
def set_directory_entry_active(
    kind: Literal["sectors", "establishments", "users"],
    entity_id: int,
    payload: ActiveFlag,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.directory.set_active(db, kind, entity_id, payload.active)


@router.get("/bins")
def list_bins(
    sector_id: int | None = None,
    establishment_id: int | None = None,
    status: str | None = None,
    active: bool | None = Query(default=True),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return services.registry.list_bins(
        db,
        sector_id=sector_id,
        establishment_id=establishment_id,
        status=status,
        active=active,
        limit=limit,
        offset=offset,
    )


@router.post("/bins", status_code=201)
def create_bin(
    payload: BinCreate,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.registry.create(db, payload)


def _bins_at_level(
    request: Request, db: DatabaseManager, services: Services, min_fill: float, **filters: Any
) -> dict[str, Any]:
    thresholds = request.app.state.config.thresholds
    return services.status.bins_by_status(
        db,
        min_fill=min_fill,
        pending_min=thresholds.pending_min,
        critical_min=thresholds.critical_min,
        **filters,
    )


@router.get("/bins/status/pending")
def list_pending_bins(
    request: Request,
    sector_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    min_fill = request.app.state.config.thresholds.pending_min
    return _bins_at_level(request, db, services, min_fill, sector_id=sector_id, limit=limit, offset=offset)


@router.get("/bins/status/critical")
def list_critical_bins(
    request: Request,
    sector_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    min_fill = request.app.state.config.thresholds.critical_min
    return _bins_at_level(request, db, services, min_fill, sector_id=sector_id, limit=limit, offset=offset)


@router.get("/bins/hardware/{hardware_id}")
def get_bin_by_hardware_id(
    hardware_id: str,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return services.registry.get_by_hardware_id(db, hardware_id)


@router.get("/bins/{bin_id}")
def get_bin(
    bin_id: int,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    row = services.registry.get(db, bin_id)
    row["fill_level"] = services.telemetry.classify(row["fill_percent"]).value
    return row


@router.patch("/bins/{bin_id}")
def update_bin(
    bin_id: int,
    payload: BinUpdate,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.registry.update(db, bin_id, payload)


@router.post("/bins/{bin_id}/deactivate")
def deactivate_bin(
    bin_id: int,
    payload: BinDeactivate,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.registry.deactivate(db, bin_id, payload.reason, actor.id)


@router.post("/bins/{bin_id}/reactivate")
def reactivate_bin(
    bin_id: int,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.registry.reactivate(db, bin_id, actor.id)


@router.post("/bins/{bin_id}/restore")
def restore_bin(
    bin_id: int,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    """Return a pending-retirement bin to service when no retire request owns its status."""
    return services.status.reactivate(db, bin_id, actor.id)


@router.post("/bins/{bin_id}/reassign")
def reassign_bin(
    bin_id: int,
    payload: BinReassign,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.status.reassign(db, bin_id, payload.establishment_id, payload.sector_id, actor.id)


@router.post("/bins/{bin_id}/status")
def change_bin_status(
    bin_id: int,
    payload: BinStatusChange,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.status.set_status(db, bin_id, payload.status, actor.id, payload.reason)


@router.get("/bins/{bin_id}/history")
def get_bin_history(
    bin_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    items = services.registry.history(db, bin_id, limit=limit)
    return {"bin_id": bin_id, "count": len(items), "items": items}


@router.post("/events", status_code=202)
async def receive_event(
    payload: SensorReading,
    request: Request,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    reading = await asyncio.to_thread(services.telemetry.accept, db, payload)
    job = await request.app.state.queue.enqueue(reading)
    return {
        "event_id": job.id,
        "hardware_id": reading.hardware_id,
        "fill_percent": reading.fill_percent,
        "classification": services.telemetry.classify(reading.fill_percent).value,
        "status": "queued",
    }


@router.get("/events/queue")
async def queue_status(request: Request) -> dict[str, Any]:
    queue = request.app.state.queue
    unprocessed = await asyncio.to_thread(request.app.state.telemetry_store.get_unprocessed)
    return {
        "pending": queue.pending(),
        "processed": queue.processed,
        "unprocessed_events": len(unprocessed),
        "failed": [{"event_id": job.id, "attempts": job.attempts, "error": job.last_error} for job in queue.failed],
    }


@router.get("/events/critical")
def get_critical_events(
    request: Request,
    hours: int = Query(default=24, ge=1, le=24 * 365),
    limit: int = Query(default=50, ge=1, le=1000),
) -> dict[str, Any]:
    thresholds = request.app.state.config.thresholds
    items = request.app.state.telemetry_store.get_critical(hours, limit, min_fill=thresholds.critical_min)
    return {"hours": hours, "count": len(items), "items": items}


@router.get("/events/glass-type/{glass_type}")
def get_events_by_glass_type(
    glass_type: GlassType,
    request: Request,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    skip: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    store = request.app.state.telemetry_store
    return store.get_by_glass_type(glass_type.value, start=start, end=end, limit=limit, skip=skip)


@router.get("/events/{hardware_id}/last")
def get_last_event(hardware_id: str, request: Request) -> dict[str, Any]:
    event = request.app.state.telemetry_store.get_last(hardware_id)
    if event is None:
        raise NotFoundError(f"No events for bin {hardware_id}")
    return event


@router.get("/events/{hardware_id}")
def get_event_history(
    hardware_id: str,
    request: Request,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    skip: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    store = request.app.state.telemetry_store
    return store.get_history(hardware_id=hardware_id, start=start, end=end, limit=limit, skip=skip)
