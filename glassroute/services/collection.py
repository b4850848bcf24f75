from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from glassroute.errors import ConflictError, GlassRouteError, NotFoundError, ValidationError
from glassroute.models.database import DatabaseManager, utc_now
from glassroute.models.enums import BinStatus, RequestStatus, RequestType, RouteStatus
from glassroute.models.schemas import BulkCompleteItem
from glassroute.services.status import StatusMachine

LOGGER = logging.getLogger(__name__)


class CollectionExecutor:
    def __init__(self, status_machine: StatusMachine | None = None) -> None:
        self.status_machine = status_machine or StatusMachine()

    def mark_point_completed(
        self,
        db: DatabaseManager,
        point_id: int,
        collector_id: int,
        collected_percent: float | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        with db.transaction() as uow:
            point = uow.fetchone(
                """
                SELECT
                    p.*,
                    r.assigned_collector_id,
                    r.status AS route_status,
                    b.status AS bin_status,
                    b.fill_percent AS bin_fill_percent
                FROM route_points p
                JOIN routes r ON p.route_id = r.id
                JOIN bins b ON p.bin_id = b.id
                WHERE p.id = ?
                """,
                (point_id,),
            )
            if point is None:
                raise NotFoundError("Route point not found")
            if point["assigned_collector_id"] != collector_id:
                raise ValidationError("This point is not assigned to this collector")
            if point["route_status"] != RouteStatus.IN_PROGRESS:
                raise ConflictError(f"The route must be in progress. Current status: {point['route_status']}")
            if point["completed"]:
                raise ConflictError("This point was already completed")

            now = utc_now()
            uow.execute(
                """
                UPDATE route_points
                SET completed = 1, collected_percent = ?, notes = COALESCE(?, notes), completed_at = ?
                WHERE id = ?
                """,
                (collected_percent, notes, now, point_id),
            )
            uow.execute(
                "UPDATE routes SET completed_points = completed_points + 1, updated_at = ? WHERE id = ?",
                (now, point["route_id"]),
            )

            if point["bin_status"] == BinStatus.ACTIVE:
                uow.execute(
                    "UPDATE bins SET fill_percent = 0, updated_at = ? WHERE id = ?",
                    (now, point["bin_id"]),
                )
                previous = f"{collected_percent:g}%" if collected_percent is not None else "N/A"
                uow.append_history(
                    bin_id=point["bin_id"],
                    actor_id=collector_id,
                    prior_status=BinStatus.ACTIVE.value,
                    new_status=BinStatus.ACTIVE.value,
                    fill_percent=0,
                    reason=f"Bin collected on route. Previous fill: {previous}",
                )

            return uow.fetchone("SELECT * FROM route_points WHERE id = ?", (point_id,))  # type: ignore[return-value]

    def bulk_complete(
        self, db: DatabaseManager, items: Iterable[BulkCompleteItem], collector_id: int
    ) -> dict[str, Any]:
        """Complete several points, each in its own transaction.

        Failures are reported per item; the call itself only fails when no
        item could be completed.
        """
        completed: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        total = 0
        for item in items:
            total += 1
            try:
                completed.append(
                    self.mark_point_completed(db, item.point_id, collector_id, item.collected_percent, item.notes)
                )
            except GlassRouteError as exc:
                errors.append({"point_id": item.point_id, "error": exc.kind, "message": exc.message})

        if errors and not completed:
            raise ValidationError("No point could be completed", errors)
        if errors:
            LOGGER.warning("Bulk completion by %s: %d of %d points failed", collector_id, len(errors), total)

        return {
            "completed": completed,
            "errors": errors,
            "total": total,
            "succeeded": len(completed),
            "failed": len(errors),
        }

    def confirm_bin_retirement(
        self, db: DatabaseManager, bin_id: int, collector_id: int, notes: str | None = None
    ) -> dict[str, Any]:
        with db.transaction() as uow:
            target = uow.lock_bin(bin_id)
            if target is None:
                raise NotFoundError("Bin not found or inactive")
            if target["status"] != BinStatus.PENDING_RETIREMENT:
                raise ConflictError(f"The bin must be pending retirement. Current status: {target['status']}")

            retired = self.status_machine.confirm_collection(db, bin_id, collector_id, uow=uow)

            now = utc_now()
            cursor = uow.execute(
                """
                UPDATE requests
                SET status = ?, response = ?, completed_at = ?, updated_at = ?
                WHERE bin_id = ? AND type = ? AND status = ?
                """,
                (
                    RequestStatus.COMPLETED.value,
                    notes or "Physical collection confirmed",
                    now,
                    now,
                    bin_id,
                    RequestType.RETIRE.value,
                    RequestStatus.APPROVED.value,
                ),
            )
            LOGGER.info("Bin %s retired by collector %s", bin_id, collector_id)
            return {
                "bin": retired,
                "requests_completed": cursor.rowcount,
                "message": "Collection confirmed. Bin marked as retired",
            }

    def complete_route(self, db: DatabaseManager, route_id: int, collector_id: int) -> dict[str, Any]:
        with db.transaction() as uow:
            route = uow.fetchone(
                "SELECT * FROM routes WHERE id = ? AND assigned_collector_id = ?",
                (route_id, collector_id),
            )
            if route is None:
                raise NotFoundError("Route not found or not assigned to this collector")
            if route["status"] != RouteStatus.IN_PROGRESS:
                raise ConflictError(f"The route must be in progress. Current status: {route['status']}")

            counts = uow.fetchone(
                """
                SELECT COUNT(*) AS total, COALESCE(SUM(completed), 0) AS done
                FROM route_points
                WHERE route_id = ?
                """,
                (route_id,),
            )
            assert counts is not None
            if counts["done"] < counts["total"]:
                raise ValidationError(
                    f"Not all points are completed: {counts['done']}/{counts['total']}",
                    [{"field": "points", "message": f"{counts['done']}/{counts['total']} completed"}],
                )

            now = utc_now()
            uow.execute(
                "UPDATE routes SET status = ?, completed_at = ?, updated_at = ? WHERE id = ?",
                (RouteStatus.COMPLETED.value, now, now, route_id),
            )
            LOGGER.info("Route %s completed by collector %s", route_id, collector_id)
            return uow.fetchone("SELECT * FROM routes WHERE id = ?", (route_id,))  # type: ignore[return-value]
