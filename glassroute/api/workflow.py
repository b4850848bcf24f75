from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from glassroute.api.deps import Actor, Services, get_actor, get_db, get_services
from glassroute.models.database import DatabaseManager
from glassroute.models.schemas import (
    BulkComplete,
    PointAdd,
    PointComplete,
    RequestCreate,
    RequestDecision,
    RetirementConfirm,
    RouteAssign,
    RouteCancel,
    RouteCreate,
    RouteGenerateConfig,
    RouteGenerateRequest,
)

router = APIRouter(prefix="/api")


@router.post("/requests", status_code=201)
def create_request(
    payload: RequestCreate,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    if payload.requester_id is None:
        payload = payload.model_copy(update={"requester_id": actor.id})
    return services.requests.create(db, payload)


@router.get("/requests")
def list_requests(
    type: str | None = None,
    status: str | None = None,
    establishment_id: int | None = None,
    requester_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return services.requests.list_requests(
        db,
        type=type,
        status=status,
        establishment_id=establishment_id,
        requester_id=requester_id,
        limit=limit,
        offset=offset,
    )


@router.get("/requests/{request_id}")
def get_request(
    request_id: int,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return services.requests.get(db, request_id)


@router.post("/requests/{request_id}/approve")
def approve_request(
    request_id: int,
    payload: RequestDecision | None = None,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    response = payload.message if payload else None
    return services.requests.approve(db, request_id, actor.id, response)


@router.post("/requests/{request_id}/complete")
def complete_request(
    request_id: int,
    payload: RequestDecision | None = None,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    notes = payload.message if payload else None
    return services.requests.complete(db, request_id, actor.id, notes)


@router.post("/requests/{request_id}/cancel")
def cancel_request(
    request_id: int,
    payload: RequestDecision | None = None,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    reason = payload.message if payload else None
    return services.requests.cancel(db, request_id, actor.id, reason)


@router.post("/routes", status_code=201)
def create_route(
    payload: RouteCreate,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    if payload.creator_id is None:
        payload = payload.model_copy(update={"creator_id": actor.id})
    return services.routes.create(db, payload)


@router.post("/routes/generate", status_code=201)
def generate_route(
    payload: RouteGenerateRequest,
    request: Request,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    fields = payload.model_dump(exclude={"sector_id"}, exclude_unset=True)
    thresholds = request.app.state.config.thresholds
    fields.setdefault("min_fill", thresholds.route_min_fill)
    fields.setdefault("max_points", thresholds.route_max_points)
    config = RouteGenerateConfig.model_validate(fields)
    return services.routes.generate(db, payload.sector_id, actor.id, config)


@router.get("/routes")
def list_routes(
    sector_id: int | None = None,
    status: str | None = None,
    collector_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return services.routes.list_routes(
        db,
        sector_id=sector_id,
        status=status,
        collector_id=collector_id,
        limit=limit,
        offset=offset,
    )


@router.get("/routes/{route_id}")
def get_route(
    route_id: int,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return services.routes.get(db, route_id)


@router.get("/routes/{route_id}/progress")
def get_route_progress(
    route_id: int,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return services.routes.progress(db, route_id)


@router.post("/routes/{route_id}/points", status_code=201)
def add_route_point(
    route_id: int,
    payload: PointAdd,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.routes.add_point(db, route_id, payload.bin_id, payload.notes)


@router.post("/routes/{route_id}/assign")
def assign_route(
    route_id: int,
    payload: RouteAssign,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.routes.assign(db, route_id, payload.collector_id)


@router.post("/routes/{route_id}/start")
def start_route(
    route_id: int,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.routes.start(db, route_id, actor.id)


@router.post("/routes/{route_id}/cancel")
def cancel_route(
    route_id: int,
    payload: RouteCancel | None = None,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    reason = payload.reason if payload else None
    return services.routes.cancel(db, route_id, actor.id, reason)


@router.post("/routes/{route_id}/complete")
def complete_route(
    route_id: int,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.collection.complete_route(db, route_id, actor.id)


@router.post("/points/{point_id}/complete")
def complete_point(
    point_id: int,
    payload: PointComplete | None = None,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    payload = payload or PointComplete()
    return services.collection.mark_point_completed(
        db, point_id, actor.id, payload.collected_percent, payload.notes
    )


@router.post("/points/bulk-complete")
def bulk_complete_points(
    payload: BulkComplete,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    return services.collection.bulk_complete(db, payload.points, actor.id)


@router.post("/bins/{bin_id}/confirm-retirement")
def confirm_retirement(
    bin_id: int,
    payload: RetirementConfirm | None = None,
    db: DatabaseManager = Depends(get_db),
    services: Services = Depends(get_services),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    notes = payload.notes if payload else None
    return services.collection.confirm_bin_retirement(db, bin_id, actor.id, notes)
