"""Install / retire / manual-collection / assistance requests.

Retire requests are the only type that drives bin status: approving one moves
the bin to ``pending_retirement`` and cancelling an approved one moves it back.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from glassroute.errors import ConflictError, NotFoundError, ValidationError, field_error
from glassroute.models.database import DatabaseManager, UnitOfWork, utc_now
from glassroute.models.enums import BinStatus, RequestStatus, RequestType, parse_enum
from glassroute.models.schemas import RequestCreate
from glassroute.services.directory import Directory
from glassroute.services.status import StatusMachine

LOGGER = logging.getLogger(__name__)

ACTIVE_STATUSES = (RequestStatus.PENDING.value, RequestStatus.APPROVED.value)

_REQUEST_SELECT = """
    SELECT
        r.*,
        e.name AS establishment_name,
        b.hardware_id AS bin_hardware_id,
        b.status AS bin_status,
        b.fill_percent AS bin_fill_percent
    FROM requests r
    JOIN establishments e ON r.establishment_id = e.id
    LEFT JOIN bins b ON r.bin_id = b.id
"""


class RequestWorkflow:
    def __init__(self, status_machine: StatusMachine | None = None, directory: Directory | None = None) -> None:
        self.directory = directory or Directory()
        self.status_machine = status_machine or StatusMachine(self.directory)

    def create(self, db: DatabaseManager, spec: RequestCreate) -> dict[str, Any]:
        if spec.requester_id is None:
            raise ValidationError("Requester is required", [field_error("requester_id", "Field is required")])

        with db.transaction() as uow:
            self.directory.require_active_establishment(uow, spec.establishment_id)

            if spec.type == RequestType.RETIRE:
                self._check_retire_target(uow, spec)

            now = utc_now()
            request_id = uow.insert(
                """
                INSERT INTO requests (
                    establishment_id, requester_id, type, status, description, extra,
                    bin_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    spec.establishment_id,
                    spec.requester_id,
                    spec.type.value,
                    RequestStatus.PENDING.value,
                    spec.description,
                    json.dumps(spec.extra) if spec.extra is not None else None,
                    spec.bin_id,
                    now,
                    now,
                ),
            )
            LOGGER.info("Request %s created (%s)", request_id, spec.type.value)
            return self._fetch(uow, request_id)

    def _check_retire_target(self, uow: UnitOfWork, spec: RequestCreate) -> None:
        if spec.bin_id is None:
            raise ValidationError(
                "bin_id is required for retire requests",
                [field_error("bin_id", "Required when type is retire")],
            )

        target = uow.get_bin(spec.bin_id, active_only=True)
        if target is None:
            raise NotFoundError("Bin not found or inactive")
        if target["establishment_id"] != spec.establishment_id:
            raise ConflictError("The bin does not belong to this establishment")
        if target["status"] != BinStatus.ACTIVE:
            raise ConflictError(f"Cannot request retirement of a bin in status: {target['status']}")

        existing = uow.fetchone(
            "SELECT id, status FROM requests WHERE bin_id = ? AND type = ? AND status IN (?, ?)",
            (spec.bin_id, RequestType.RETIRE.value, *ACTIVE_STATUSES),
        )
        if existing is not None:
            raise ConflictError(
                "An active retire request already exists for this bin",
                {"request_id": existing["id"], "status": existing["status"]},
            )

    def approve(
        self, db: DatabaseManager, request_id: int, approver_id: int, response: str | None = None
    ) -> dict[str, Any]:
        with db.transaction() as uow:
            request = self._require(uow, request_id)
            if request["status"] != RequestStatus.PENDING:
                raise ConflictError(f"Cannot approve a request in status: {request['status']}")

            now = utc_now()
            uow.execute(
                """
                UPDATE requests
                SET status = ?, approver_id = ?, response = ?, approved_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (RequestStatus.APPROVED.value, approver_id, response, now, now, request_id),
            )

            if request["type"] == RequestType.RETIRE and request["bin_id"] is not None:
                self.status_machine.mark_pending_retirement(
                    db, request["bin_id"], request_id, approver_id, uow=uow
                )

            LOGGER.info("Request %s approved by %s", request_id, approver_id)
            return self._fetch(uow, request_id)

    def complete(
        self, db: DatabaseManager, request_id: int, actor_id: int, notes: str | None = None
    ) -> dict[str, Any]:
        with db.transaction() as uow:
            request = self._require(uow, request_id)
            if request["status"] != RequestStatus.APPROVED:
                raise ConflictError(
                    f"Only approved requests can be completed. Current status: {request['status']}"
                )
            now = utc_now()
            uow.execute(
                """
                UPDATE requests
                SET status = ?, response = COALESCE(?, response), completed_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (RequestStatus.COMPLETED.value, notes, now, now, request_id),
            )
            LOGGER.info("Request %s completed by %s", request_id, actor_id)
            return self._fetch(uow, request_id)

    def cancel(
        self, db: DatabaseManager, request_id: int, actor_id: int, reason: str | None = None
    ) -> dict[str, Any]:
        with db.transaction() as uow:
            request = self._require(uow, request_id)
            if request["status"] not in ACTIVE_STATUSES:
                raise ConflictError(f"Cannot cancel a request in status: {request['status']}")

            if (
                request["type"] == RequestType.RETIRE
                and request["status"] == RequestStatus.APPROVED
                and request["bin_id"] is not None
            ):
                self._revert_pending_retirement(uow, request["bin_id"], request_id, actor_id)

            uow.execute(
                "UPDATE requests SET status = ?, response = ?, updated_at = ? WHERE id = ?",
                (RequestStatus.CANCELLED.value, reason or "Request cancelled", utc_now(), request_id),
            )
            LOGGER.info("Request %s cancelled by %s", request_id, actor_id)
            return self._fetch(uow, request_id)

    def _revert_pending_retirement(self, uow: UnitOfWork, bin_id: int, request_id: int, actor_id: int) -> None:
        # Compensating action: bypasses the transition table on purpose and only
        # touches a bin that is still pending retirement.
        cursor = uow.execute(
            "UPDATE bins SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (BinStatus.ACTIVE.value, utc_now(), bin_id, BinStatus.PENDING_RETIREMENT.value),
        )
        if cursor.rowcount == 0:
            return
        reverted = uow.get_bin(bin_id)
        assert reverted is not None
        uow.append_history(
            bin_id=bin_id,
            actor_id=actor_id,
            prior_status=BinStatus.PENDING_RETIREMENT.value,
            new_status=BinStatus.ACTIVE.value,
            fill_percent=reverted["fill_percent"],
            reason=f"Retirement request cancelled: {request_id}",
        )

    def get(self, db: DatabaseManager, request_id: int) -> dict[str, Any]:
        with db.read() as uow:
            return self._fetch(uow, request_id)

    def list_requests(
        self,
        db: DatabaseManager,
        *,
        type: RequestType | str | None = None,
        status: RequestStatus | str | None = None,
        establishment_id: int | None = None,
        requester_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        clauses: list[str] = []
        args: list[Any] = []
        if type is not None:
            clauses.append("r.type = ?")
            args.append(parse_enum(RequestType, type, "type").value)
        if status is not None:
            clauses.append("r.status = ?")
            args.append(parse_enum(RequestStatus, status, "status").value)
        if establishment_id is not None:
            clauses.append("r.establishment_id = ?")
            args.append(establishment_id)
        if requester_id is not None:
            clauses.append("r.requester_id = ?")
            args.append(requester_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with db.read() as uow:
            rows = uow.fetchall(
                f"{_REQUEST_SELECT} {where} ORDER BY r.created_at DESC, r.id DESC LIMIT ? OFFSET ?",
                [*args, limit, offset],
            )
            total = int(uow.scalar(f"SELECT COUNT(*) FROM requests r {where}", args))
        return {"items": rows, "total": total, "limit": limit, "offset": offset, "has_more": total > offset + limit}

    def _require(self, uow: UnitOfWork, request_id: int) -> dict[str, Any]:
        request = uow.fetchone("SELECT * FROM requests WHERE id = ?", (request_id,))
        if request is None:
            raise NotFoundError("Request not found")
        return request

    def _fetch(self, uow: UnitOfWork, request_id: int) -> dict[str, Any]:
        row = uow.fetchone(f"{_REQUEST_SELECT} WHERE r.id = ?", (request_id,))
        if row is None:
            raise NotFoundError("Request not found")
        return row
