from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from glassroute.errors import ConflictError, NotFoundError, ValidationError, field_error
from glassroute.models.database import DatabaseManager, UnitOfWork, utc_now
from glassroute.models.enums import BinStatus, RouteStatus, parse_enum
from glassroute.models.schemas import RouteCreate, RouteGenerateConfig
from glassroute.services.directory import Directory

LOGGER = logging.getLogger(__name__)

CLOSED_STATUSES = (RouteStatus.COMPLETED.value, RouteStatus.CANCELLED.value)

_ROUTE_SELECT = """
    SELECT
        r.*,
        s.name AS sector_name,
        s.code AS sector_code,
        u.name AS collector_name
    FROM routes r
    JOIN sectors s ON r.sector_id = s.id
    LEFT JOIN users u ON r.assigned_collector_id = u.id
"""

_POINTS_SELECT = """
    SELECT
        p.*,
        b.hardware_id,
        b.fill_percent AS bin_fill_percent,
        b.glass_type,
        b.status AS bin_status,
        e.name AS establishment_name,
        e.address AS establishment_address
    FROM route_points p
    JOIN bins b ON p.bin_id = b.id
    LEFT JOIN establishments e ON b.establishment_id = e.id
    WHERE p.route_id = ?
    ORDER BY p.order_index ASC
"""


class RoutePlanner:
    def __init__(self, directory: Directory | None = None) -> None:
        self.directory = directory or Directory()

    def create(self, db: DatabaseManager, spec: RouteCreate) -> dict[str, Any]:
        if spec.creator_id is None:
            raise ValidationError("Creator is required", [field_error("creator_id", "Field is required")])

        with db.transaction() as uow:
            self.directory.require_active_sector(uow, spec.sector_id)
            route_id = self._insert_route(
                uow,
                sector_id=spec.sector_id,
                creator_id=spec.creator_id,
                name=spec.name,
                description=spec.description,
                planned_date=spec.planned_date.isoformat() if spec.planned_date else None,
            )
            LOGGER.info("Route %s planned in sector %s", route_id, spec.sector_id)
            return self._fetch(uow, route_id)

    def generate(
        self,
        db: DatabaseManager,
        sector_id: int,
        creator_id: int,
        config: RouteGenerateConfig | None = None,
    ) -> dict[str, Any]:
        """Build a planned route from the fullest active bins of a sector.

        Bins are ranked by fill percent (highest first); among equal fills the
        one with the oldest reading goes first and bins that never reported go
        last. The route and all its points are inserted in one transaction.
        """
        config = config or RouteGenerateConfig()
        with db.transaction() as uow:
            sector = self.directory.require_active_sector(uow, sector_id)

            clauses = ["b.sector_id = ?", "b.is_active = 1", "b.status = ?", "b.fill_percent >= ?"]
            args: list[Any] = [sector_id, BinStatus.ACTIVE.value, config.min_fill]
            if config.glass_type is not None:
                clauses.append("b.glass_type = ?")
                args.append(config.glass_type.value)
            args.append(config.max_points)

            candidates = uow.fetchall(
                f"""
                SELECT b.id, b.hardware_id, b.fill_percent, b.glass_type, e.name AS establishment_name
                FROM bins b
                LEFT JOIN establishments e ON b.establishment_id = e.id
                WHERE {' AND '.join(clauses)}
                ORDER BY b.fill_percent DESC,
                         b.last_reading_at IS NULL,
                         b.last_reading_at ASC,
                         b.id ASC
                LIMIT ?
                """,
                args,
            )
            if not candidates:
                raise ValidationError(
                    "No eligible bins to build a route in this sector",
                    [field_error("min_fill", f"No active bins at or above {config.min_fill}%")],
                )

            today = datetime.now(tz=UTC).date()
            route_id = self._insert_route(
                uow,
                sector_id=sector_id,
                creator_id=creator_id,
                name=config.name or f"Route {sector['code']} - {today.isoformat()}",
                description=f"Generated automatically with {len(candidates)} points",
                planned_date=(config.planned_date or today).isoformat(),
            )
            for rank, candidate in enumerate(candidates, start=1):
                label = candidate["establishment_name"] or candidate["hardware_id"]
                uow.insert(
                    "INSERT INTO route_points (route_id, bin_id, order_index, notes) VALUES (?, ?, ?, ?)",
                    (route_id, candidate["id"], rank, f"{label} - {candidate['fill_percent']:g}%"),
                )
            uow.execute(
                "UPDATE routes SET total_points = ? WHERE id = ?",
                (len(candidates), route_id),
            )
            LOGGER.info("Generated route %s with %d points in sector %s", route_id, len(candidates), sector_id)
            return self._fetch(uow, route_id)

    def add_point(
        self, db: DatabaseManager, route_id: int, bin_id: int, notes: str | None = None
    ) -> dict[str, Any]:
        with db.transaction() as uow:
            route = self._require(uow, route_id)
            if route["status"] in CLOSED_STATUSES:
                raise ConflictError(f"Cannot add points to a {route['status']} route")

            target = uow.get_bin(bin_id, active_only=True)
            if target is None:
                raise NotFoundError("Bin not found or inactive")
            if target["sector_id"] != route["sector_id"]:
                raise ConflictError("The bin does not belong to the route's sector")

            duplicate = uow.fetchone(
                "SELECT id FROM route_points WHERE route_id = ? AND bin_id = ?", (route_id, bin_id)
            )
            if duplicate is not None:
                raise ConflictError("The bin is already on this route")

            order_index = uow.scalar(
                "SELECT COALESCE(MAX(order_index), 0) + 1 FROM route_points WHERE route_id = ?",
                (route_id,),
            )
            point_id = uow.insert(
                "INSERT INTO route_points (route_id, bin_id, order_index, notes) VALUES (?, ?, ?, ?)",
                (route_id, bin_id, order_index, notes),
            )
            uow.execute(
                "UPDATE routes SET total_points = total_points + 1, updated_at = ? WHERE id = ?",
                (utc_now(), route_id),
            )
            return uow.fetchone("SELECT * FROM route_points WHERE id = ?", (point_id,))  # type: ignore[return-value]

    def assign(self, db: DatabaseManager, route_id: int, collector_id: int) -> dict[str, Any]:
        with db.transaction() as uow:
            route = self._require(uow, route_id)
            if route["status"] != RouteStatus.PLANNED:
                raise ConflictError(f"Only planned routes can be assigned. Current status: {route['status']}")
            self.directory.require_active_user(uow, collector_id)

            uow.execute(
                "UPDATE routes SET assigned_collector_id = ?, status = ?, updated_at = ? WHERE id = ?",
                (collector_id, RouteStatus.ASSIGNED.value, utc_now(), route_id),
            )
            LOGGER.info("Route %s assigned to collector %s", route_id, collector_id)
            return self._fetch(uow, route_id)

    def start(self, db: DatabaseManager, route_id: int, collector_id: int) -> dict[str, Any]:
        with db.transaction() as uow:
            now = utc_now()
            cursor = uow.execute(
                """
                UPDATE routes
                SET status = ?, started_at = ?, updated_at = ?
                WHERE id = ? AND assigned_collector_id = ? AND status = ?
                """,
                (RouteStatus.IN_PROGRESS.value, now, now, route_id, collector_id, RouteStatus.ASSIGNED.value),
            )
            if cursor.rowcount == 0:
                self._require(uow, route_id)
                raise ConflictError("Cannot start the route. Check its status and assignment")
            LOGGER.info("Route %s started by collector %s", route_id, collector_id)
            return self._fetch(uow, route_id)

    def cancel(
        self, db: DatabaseManager, route_id: int, actor_id: int, reason: str | None = None
    ) -> dict[str, Any]:
        with db.transaction() as uow:
            cursor = uow.execute(
                """
                UPDATE routes
                SET status = ?, description = COALESCE(?, description), updated_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (
                    RouteStatus.CANCELLED.value,
                    reason,
                    utc_now(),
                    route_id,
                    RouteStatus.PLANNED.value,
                    RouteStatus.ASSIGNED.value,
                ),
            )
            if cursor.rowcount == 0:
                self._require(uow, route_id)
                raise ConflictError("Only planned or assigned routes can be cancelled")
            LOGGER.info("Route %s cancelled by %s", route_id, actor_id)
            return self._fetch(uow, route_id)

    def get(self, db: DatabaseManager, route_id: int) -> dict[str, Any]:
        with db.read() as uow:
            return self._fetch(uow, route_id)

    def progress(self, db: DatabaseManager, route_id: int) -> dict[str, Any]:
        route = self.get(db, route_id)
        total = route["total_points"]
        route["percent_completed"] = round(route["completed_points"] / total * 100, 2) if total else None
        route["pending_points"] = [point for point in route["points"] if not point["completed"]]
        return route

    def list_routes(
        self,
        db: DatabaseManager,
        *,
        sector_id: int | None = None,
        status: RouteStatus | str | None = None,
        collector_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        clauses: list[str] = []
        args: list[Any] = []
        if sector_id is not None:
            clauses.append("r.sector_id = ?")
            args.append(sector_id)
        if status is not None:
            clauses.append("r.status = ?")
            args.append(parse_enum(RouteStatus, status, "status").value)
        if collector_id is not None:
            clauses.append("r.assigned_collector_id = ?")
            args.append(collector_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with db.read() as uow:
            rows = uow.fetchall(
                f"{_ROUTE_SELECT} {where} ORDER BY r.planned_date DESC, r.id DESC LIMIT ? OFFSET ?",
                [*args, limit, offset],
            )
            total = int(uow.scalar(f"SELECT COUNT(*) FROM routes r {where}", args))
        return {"items": rows, "total": total, "limit": limit, "offset": offset, "has_more": total > offset + limit}

    def _insert_route(
        self,
        uow: UnitOfWork,
        *,
        sector_id: int,
        creator_id: int,
        name: str,
        description: str | None,
        planned_date: str | None,
    ) -> int:
        now = utc_now()
        return uow.insert(
            """
            INSERT INTO routes (
                sector_id, creator_id, name, description, planned_date, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (sector_id, creator_id, name, description, planned_date, RouteStatus.PLANNED.value, now, now),
        )

    def _require(self, uow: UnitOfWork, route_id: int) -> dict[str, Any]:
        route = uow.fetchone("SELECT * FROM routes WHERE id = ?", (route_id,))
        if route is None:
            raise NotFoundError("Route not found")
        return route

    def _fetch(self, uow: UnitOfWork, route_id: int) -> dict[str, Any]:
        route = uow.fetchone(f"{_ROUTE_SELECT} WHERE r.id = ?", (route_id,))
        if route is None:
            raise NotFoundError("Route not found")
        route["points"] = uow.fetchall(_POINTS_SELECT, (route_id,))
        return route
