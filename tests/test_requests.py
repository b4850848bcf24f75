import threading

import pytest

from conftest import history_rows
from glassroute.errors import ConflictError, GlassRouteError, NotFoundError, ValidationError
from glassroute.models.schemas import RequestCreate, SensorReading
from glassroute.telemetry.store import TelemetryStore


def _retire(seed, bin_id, establishment_id=None) -> RequestCreate:
    return RequestCreate(
        establishment_id=establishment_id or seed.establishment_id,
        requester_id=seed.owner_id,
        type="retire",
        bin_id=bin_id,
        description="Closing for renovation",
    )


def test_retire_request_requires_bin_id(db, services, seed) -> None:
    with pytest.raises(ValidationError) as excinfo:
        services.requests.create(
            db, RequestCreate(establishment_id=seed.establishment_id, requester_id=seed.owner_id, type="retire")
        )
    assert excinfo.value.details[0]["field"] == "bin_id"


def test_request_for_unknown_establishment(db, services, seed) -> None:
    with pytest.raises(NotFoundError):
        services.requests.create(db, RequestCreate(establishment_id=999, requester_id=seed.owner_id, type="install"))


def test_request_for_inactive_establishment(db, services, seed) -> None:
    services.directory.set_active(db, "establishments", seed.other_establishment_id, False)
    with pytest.raises(ValidationError):
        services.requests.create(
            db,
            RequestCreate(establishment_id=seed.other_establishment_id, requester_id=seed.owner_id, type="install"),
        )


def test_retire_request_checks_target_bin(db, services, seed, make_bin) -> None:
    bin_row = make_bin()

    with pytest.raises(NotFoundError):
        services.requests.create(db, _retire(seed, 9999))
    with pytest.raises(ConflictError):
        services.requests.create(db, _retire(seed, bin_row["id"], seed.other_establishment_id))

    services.status.change_status(db, bin_row["id"], "pending_retirement")
    with pytest.raises(ConflictError):
        services.requests.create(db, _retire(seed, bin_row["id"]))


def test_only_one_active_retire_request_per_bin(db, services, seed, make_bin) -> None:
    bin_row = make_bin()
    first = services.requests.create(db, _retire(seed, bin_row["id"]))

    with pytest.raises(ConflictError) as excinfo:
        services.requests.create(db, _retire(seed, bin_row["id"]))
    assert excinfo.value.details["request_id"] == first["id"]

    services.requests.cancel(db, first["id"], seed.owner_id)
    second = services.requests.create(db, _retire(seed, bin_row["id"]))
    assert second["status"] == "pending"


def test_partial_unique_index_backs_the_check(db, services, seed, make_bin) -> None:
    bin_row = make_bin()
    services.requests.create(db, _retire(seed, bin_row["id"]))

    with pytest.raises(ConflictError):
        with db.transaction() as uow:
            uow.insert(
                """
                INSERT INTO requests (establishment_id, requester_id, type, status, bin_id, created_at, updated_at)
                VALUES (?, ?, 'retire', 'approved', ?, 'now', 'now')
                """,
                (seed.establishment_id, seed.owner_id, bin_row["id"]),
            )


def test_concurrent_retire_requests_admit_exactly_one(db, services, seed, make_bin) -> None:
    bin_row = make_bin()
    barrier = threading.Barrier(4)
    outcomes: list[object] = []
    lock = threading.Lock()

    def submit() -> None:
        barrier.wait()
        try:
            result: object = services.requests.create(db, _retire(seed, bin_row["id"]))
        except GlassRouteError as exc:
            result = exc
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=submit) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    created = [item for item in outcomes if isinstance(item, dict)]
    rejected = [item for item in outcomes if isinstance(item, ConflictError)]
    assert len(created) == 1
    assert len(rejected) == 3


def test_approve_moves_bin_to_pending_retirement(db, services, seed, make_bin) -> None:
    bin_row = make_bin(fill=40)
    request = services.requests.create(db, _retire(seed, bin_row["id"]))

    approved = services.requests.approve(db, request["id"], seed.manager_id, "Pickup scheduled")

    assert approved["status"] == "approved"
    assert approved["approver_id"] == seed.manager_id
    assert approved["approved_at"] is not None
    assert approved["bin_status"] == "pending_retirement"
    rows = history_rows(db, bin_row["id"])
    assert rows[-1]["reason"] == f"Retirement request approved: {request['id']}"

    with pytest.raises(ConflictError):
        services.requests.approve(db, request["id"], seed.manager_id)


def test_approve_rolls_back_when_bin_cannot_move(db, services, seed, make_bin) -> None:
    bin_row = make_bin()
    request = services.requests.create(db, _retire(seed, bin_row["id"]))
    services.registry.deactivate(db, bin_row["id"], "Vandalised", seed.manager_id)

    with pytest.raises(NotFoundError):
        services.requests.approve(db, request["id"], seed.manager_id)

    assert services.requests.get(db, request["id"])["status"] == "pending"


def test_non_retire_requests_leave_bins_alone(db, services, seed, make_bin) -> None:
    bin_row = make_bin()
    request = services.requests.create(
        db,
        RequestCreate(
            establishment_id=seed.establishment_id,
            requester_id=seed.owner_id,
            type="manual_collection",
            bin_id=bin_row["id"],
            extra={"window": "morning"},
        ),
    )
    approved = services.requests.approve(db, request["id"], seed.manager_id)
    completed = services.requests.complete(db, request["id"], seed.manager_id, "Done")

    assert approved["bin_status"] == "active"
    assert completed["status"] == "completed"
    assert completed["response"] == "Done"
    assert completed["extra"] == {"window": "morning"}


def test_complete_requires_approval(db, services, seed) -> None:
    request = services.requests.create(
        db, RequestCreate(establishment_id=seed.establishment_id, requester_id=seed.owner_id, type="assistance")
    )
    with pytest.raises(ConflictError):
        services.requests.complete(db, request["id"], seed.manager_id)


def test_cancelling_approved_retire_request_reverts_bin(db, services, seed, make_bin) -> None:
    bin_row = make_bin()
    request = services.requests.create(db, _retire(seed, bin_row["id"]))
    services.requests.approve(db, request["id"], seed.manager_id)

    cancelled = services.requests.cancel(db, request["id"], seed.owner_id, "Changed our minds")

    assert cancelled["status"] == "cancelled"
    assert cancelled["response"] == "Changed our minds"
    assert services.registry.get(db, bin_row["id"])["status"] == "active"
    rows = history_rows(db, bin_row["id"])
    assert [(row["prior_status"], row["new_status"]) for row in rows] == [
        ("active", "pending_retirement"),
        ("pending_retirement", "active"),
    ]

    with pytest.raises(ConflictError):
        services.requests.cancel(db, request["id"], seed.owner_id)


def test_cancelling_pending_retire_request_does_not_touch_bin(db, services, seed, make_bin) -> None:
    bin_row = make_bin()
    request = services.requests.create(db, _retire(seed, bin_row["id"]))

    services.requests.cancel(db, request["id"], seed.owner_id)

    assert services.registry.get(db, bin_row["id"])["status"] == "active"
    assert history_rows(db, bin_row["id"]) == []


def test_full_retirement_scenario(db, services, seed, make_bin) -> None:
    bin_row = make_bin(fill=55)
    request = services.requests.create(db, _retire(seed, bin_row["id"]))
    services.requests.approve(db, request["id"], seed.manager_id)

    result = services.collection.confirm_bin_retirement(db, bin_row["id"], seed.collector_id)

    assert result["bin"]["status"] == "retired"
    assert result["requests_completed"] == 1
    finished = services.requests.get(db, request["id"])
    assert finished["status"] == "completed"
    assert finished["completed_at"] is not None

    rows = history_rows(db, bin_row["id"])
    assert [(row["prior_status"], row["new_status"]) for row in rows] == [
        ("active", "pending_retirement"),
        ("pending_retirement", "retired"),
    ]
    assert rows[1]["actor_id"] == seed.collector_id

    # Completed requests cannot be cancelled, and the retired bin stays retired.
    with pytest.raises(ConflictError):
        services.requests.cancel(db, request["id"], seed.owner_id)
    assert services.registry.get(db, bin_row["id"])["status"] == "retired"


def test_list_requests_filters(db, services, seed, make_bin) -> None:
    bin_row = make_bin()
    services.requests.create(db, _retire(seed, bin_row["id"]))
    services.requests.create(
        db, RequestCreate(establishment_id=seed.establishment_id, requester_id=seed.owner_id, type="install")
    )

    retire_only = services.requests.list_requests(db, type="retire")
    assert retire_only["total"] == 1
    assert retire_only["items"][0]["bin_hardware_id"] == bin_row["hardware_id"]

    with pytest.raises(ValidationError):
        services.requests.list_requests(db, status="lost")


def test_telemetry_to_retirement_scenario(db, services, seed, make_bin, tmp_path) -> None:
    store = TelemetryStore(tmp_path / "telemetry.db")
    store.initialize()
    bin_row = make_bin()

    reading = services.telemetry.accept(db, SensorReading(hardware_id=bin_row["hardware_id"], fill_percent=85))
    result = services.telemetry.process(db, store, reading)
    store.close()
    assert result["classification"] == "critical"
    assert services.registry.get(db, bin_row["id"])["fill_percent"] == 85

    r1 = services.requests.create(db, _retire(seed, bin_row["id"]))
    assert r1["status"] == "pending"
    r1 = services.requests.approve(db, r1["id"], seed.manager_id)
    assert r1["status"] == "approved"
    assert r1["bin_status"] == "pending_retirement"

    with pytest.raises(ConflictError):
        services.requests.create(db, _retire(seed, bin_row["id"]))

    services.collection.confirm_bin_retirement(db, bin_row["id"], seed.collector_id)
    assert services.registry.get(db, bin_row["id"])["status"] == "retired"
    assert services.requests.get(db, r1["id"])["status"] == "completed"
