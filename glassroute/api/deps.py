from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, Request

from glassroute.errors import UnauthorizedError
from glassroute.models.database import DatabaseManager
from glassroute.models.enums import UserRole
from glassroute.services.collection import CollectionExecutor
from glassroute.services.directory import Directory
from glassroute.services.registry import BinRegistry
from glassroute.services.requests import RequestWorkflow
from glassroute.services.routes import RoutePlanner
from glassroute.services.status import StatusMachine
from glassroute.telemetry.classifier import TelemetryProcessor


@dataclass(frozen=True, slots=True)
class Actor:
    id: int
    role: UserRole


@dataclass(slots=True)
class Services:
    directory: Directory
    registry: BinRegistry
    status: StatusMachine
    requests: RequestWorkflow
    routes: RoutePlanner
    collection: CollectionExecutor
    telemetry: TelemetryProcessor

    @classmethod
    def build(cls, telemetry: TelemetryProcessor) -> Services:
        directory = Directory()
        status = StatusMachine(directory)
        return cls(
            directory=directory,
            registry=BinRegistry(directory),
            status=status,
            requests=RequestWorkflow(status, directory),
            routes=RoutePlanner(directory),
            collection=CollectionExecutor(status),
            telemetry=telemetry,
        )


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    """Identity supplied by the upstream auth layer; trusted as given."""
    if not x_actor_id or not x_actor_role:
        raise UnauthorizedError("Missing actor identity")
    try:
        return Actor(id=int(x_actor_id), role=UserRole(x_actor_role))
    except ValueError:
        raise UnauthorizedError("Malformed actor identity") from None


def get_db(request: Request) -> DatabaseManager:
    return request.app.state.db


def get_services(request: Request) -> Services:
    return request.app.state.services
