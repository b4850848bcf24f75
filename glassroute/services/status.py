"""Bin status machine: active -> pending_retirement -> retired (-> active on reassignment)."""

from __future__ import annotations

import logging
from typing import Any

from glassroute.errors import ConflictError, NotFoundError
from glassroute.models.database import DatabaseManager, UnitOfWork, utc_now
from glassroute.models.enums import BinStatus, RequestStatus, RequestType, classify_fill, parse_enum
from glassroute.services.directory import Directory

LOGGER = logging.getLogger(__name__)

TRANSITIONS: dict[BinStatus, frozenset[BinStatus]] = {
    BinStatus.ACTIVE: frozenset({BinStatus.PENDING_RETIREMENT}),
    BinStatus.PENDING_RETIREMENT: frozenset({BinStatus.RETIRED, BinStatus.ACTIVE}),
    BinStatus.RETIRED: frozenset({BinStatus.ACTIVE}),
}

DEFAULT_REASONS: dict[BinStatus, str] = {
    BinStatus.ACTIVE: "Bin activated",
    BinStatus.PENDING_RETIREMENT: "Retirement request approved",
    BinStatus.RETIRED: "Physical collection confirmed",
}


def is_transition_allowed(current: BinStatus | str, new: BinStatus | str) -> bool:
    return BinStatus(new) in TRANSITIONS.get(BinStatus(current), frozenset())


def validate_transition(current: BinStatus | str, new: BinStatus | str) -> None:
    if not is_transition_allowed(current, new):
        allowed = sorted(item.value for item in TRANSITIONS.get(BinStatus(current), frozenset()))
        raise ConflictError(
            f"Status transition not allowed: {current} -> {new}",
            {"current": str(current), "requested": str(new), "allowed": allowed},
        )


class StatusMachine:
    def __init__(self, directory: Directory | None = None) -> None:
        self.directory = directory or Directory()

    def change_status(
        self,
        db: DatabaseManager,
        bin_id: int,
        new_status: BinStatus | str,
        actor_id: int | None = None,
        reason: str | None = None,
        *,
        uow: UnitOfWork | None = None,
    ) -> dict[str, Any]:
        target = parse_enum(BinStatus, new_status, "status")
        with db.transaction(uow) as tx:
            current = tx.lock_bin(bin_id)
            if current is None:
                raise NotFoundError("Bin not found or inactive")

            prior = BinStatus(current["status"])
            validate_transition(prior, target)

            now = utc_now()
            tx.execute(
                """
                UPDATE bins
                SET status = ?,
                    updated_at = ?,
                    retired_at = CASE WHEN ? = 'retired' THEN ? ELSE retired_at END
                WHERE id = ?
                """,
                (target.value, now, target.value, now, bin_id),
            )
            tx.append_history(
                bin_id=bin_id,
                actor_id=actor_id,
                prior_status=prior.value,
                new_status=target.value,
                fill_percent=current["fill_percent"],
                reason=reason or DEFAULT_REASONS[target],
            )
            LOGGER.info("Bin %s status %s -> %s (actor=%s)", bin_id, prior.value, target.value, actor_id)
            return tx.get_bin(bin_id)  # type: ignore[return-value]

    def mark_pending_retirement(
        self,
        db: DatabaseManager,
        bin_id: int,
        request_id: int,
        actor_id: int | None,
        *,
        uow: UnitOfWork | None = None,
    ) -> dict[str, Any]:
        with db.transaction(uow) as tx:
            request = tx.fetchone(
                "SELECT id, status FROM requests WHERE id = ? AND bin_id = ? AND type = ?",
                (request_id, bin_id, RequestType.RETIRE.value),
            )
            if request is None:
                raise NotFoundError("Retirement request not found for this bin")
            if request["status"] != RequestStatus.APPROVED:
                raise ConflictError("The request must be approved before marking the bin pending retirement")

            return self.change_status(
                db,
                bin_id,
                BinStatus.PENDING_RETIREMENT,
                actor_id,
                f"Retirement request approved: {request_id}",
                uow=tx,
            )

    def confirm_collection(
        self,
        db: DatabaseManager,
        bin_id: int,
        collector_id: int,
        *,
        uow: UnitOfWork | None = None,
    ) -> dict[str, Any]:
        return self.change_status(
            db,
            bin_id,
            BinStatus.RETIRED,
            collector_id,
            "Physical collection confirmed by collector",
            uow=uow,
        )

    def reactivate(
        self,
        db: DatabaseManager,
        bin_id: int,
        actor_id: int | None,
        *,
        uow: UnitOfWork | None = None,
    ) -> dict[str, Any]:
        with db.transaction(uow) as tx:
            self._require_no_open_retirement(tx, bin_id)
            return self.change_status(
                db, bin_id, BinStatus.ACTIVE, actor_id, "Bin reassigned and reactivated", uow=tx
            )

    def set_status(
        self,
        db: DatabaseManager,
        bin_id: int,
        new_status: BinStatus | str,
        actor_id: int | None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Manual status change. Refused while a retire request owns the bin's status."""
        with db.transaction() as tx:
            self._require_no_open_retirement(tx, bin_id)
            return self.change_status(db, bin_id, new_status, actor_id, reason, uow=tx)

    def _require_no_open_retirement(self, tx: UnitOfWork, bin_id: int) -> None:
        request = tx.fetchone(
            "SELECT id, status FROM requests WHERE bin_id = ? AND type = ? AND status IN (?, ?)",
            (bin_id, RequestType.RETIRE.value, RequestStatus.PENDING.value, RequestStatus.APPROVED.value),
        )
        if request is not None:
            raise ConflictError(
                f"Retire request {request['id']} is {request['status']}. Cancel or complete it first",
                {"request_id": request["id"], "status": request["status"]},
            )

    def reassign(
        self,
        db: DatabaseManager,
        bin_id: int,
        establishment_id: int,
        sector_id: int,
        actor_id: int | None,
    ) -> dict[str, Any]:
        """Redeploy a retired bin to a new establishment, returning it to service empty."""
        with db.transaction() as tx:
            current = tx.get_bin(bin_id)
            if current is None:
                raise NotFoundError("Bin not found")
            if current["status"] != BinStatus.RETIRED:
                raise ConflictError(
                    "Only retired bins can be reassigned",
                    {"current": current["status"]},
                )
            validate_transition(current["status"], BinStatus.ACTIVE)
            self.directory.require_active_establishment(tx, establishment_id, not_found=False)
            self.directory.require_active_sector(tx, sector_id, not_found=False)

            now = utc_now()
            tx.execute(
                """
                UPDATE bins
                SET establishment_id = ?,
                    sector_id = ?,
                    status = ?,
                    fill_percent = 0,
                    installed_at = ?,
                    retired_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (establishment_id, sector_id, BinStatus.ACTIVE.value, now, now, bin_id),
            )
            tx.append_history(
                bin_id=bin_id,
                actor_id=actor_id,
                prior_status=BinStatus.RETIRED.value,
                new_status=BinStatus.ACTIVE.value,
                fill_percent=0,
                reason=f"Bin reassigned to establishment {establishment_id}",
            )
            LOGGER.info("Bin %s reassigned to establishment %s", bin_id, establishment_id)
            return tx.get_bin(bin_id)  # type: ignore[return-value]

    def bins_by_status(
        self,
        db: DatabaseManager,
        *,
        min_fill: float,
        sector_id: int | None = None,
        establishment_id: int | None = None,
        status: BinStatus | str | None = None,
        pending_min: float = 60.0,
        critical_min: float = 80.0,
        limit: int = 100,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Active bins at or above ``min_fill``, fullest first, each with its ``fill_level``."""
        clauses = ["b.is_active = 1", "b.fill_percent >= ?"]
        args: list[Any] = [min_fill]
        if status is not None:
            clauses.append("b.status = ?")
            args.append(parse_enum(BinStatus, status, "status").value)
        if sector_id is not None:
            clauses.append("b.sector_id = ?")
            args.append(sector_id)
        if establishment_id is not None:
            clauses.append("b.establishment_id = ?")
            args.append(establishment_id)
        where = " AND ".join(clauses)

        with db.read() as uow:
            rows = uow.fetchall(
                f"""
                SELECT
                    b.*,
                    s.name AS sector_name,
                    s.code AS sector_code,
                    e.name AS establishment_name,
                    e.address AS establishment_address
                FROM bins b
                JOIN sectors s ON b.sector_id = s.id
                LEFT JOIN establishments e ON b.establishment_id = e.id
                WHERE {where}
                ORDER BY b.fill_percent DESC, b.last_reading_at DESC, b.id ASC
                LIMIT ? OFFSET ?
                """,
                [*args, limit, offset],
            )
            total = int(uow.scalar(f"SELECT COUNT(*) FROM bins b WHERE {where}", args))

        for row in rows:
            row["fill_level"] = classify_fill(
                row["fill_percent"], pending_min=pending_min, critical_min=critical_min
            ).value
        return {"items": rows, "total": total, "limit": limit, "offset": offset, "has_more": total > offset + limit}
