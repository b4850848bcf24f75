import pytest

from conftest import history_rows
from glassroute.errors import ConflictError, NotFoundError, ValidationError
from glassroute.models.schemas import BinCreate, BinUpdate


def test_create_registers_active_empty_bin(db, services, seed) -> None:
    created = services.registry.create(
        db,
        BinCreate(
            hardware_id="GLS-NEW",
            sector_id=seed.sector_id,
            establishment_id=seed.establishment_id,
            capacity_liters=1100,
        ),
    )

    assert created["status"] == "active"
    assert created["fill_percent"] == 0
    assert created["is_active"] is True
    assert created["glass_type"] == "mixed"
    assert created["installed_at"] is not None


def test_create_rejects_duplicates_and_bad_references(db, services, seed) -> None:
    spec = BinCreate(hardware_id="GLS-DUP", sector_id=seed.sector_id, capacity_liters=240)
    services.registry.create(db, spec)

    with pytest.raises(ConflictError):
        services.registry.create(db, spec)
    with pytest.raises(ValidationError):
        services.registry.create(db, BinCreate(hardware_id="GLS-X1", sector_id=999, capacity_liters=240))
    with pytest.raises(ValidationError):
        services.registry.create(
            db,
            BinCreate(hardware_id="GLS-X2", sector_id=seed.sector_id, establishment_id=999, capacity_liters=240),
        )

    services.directory.set_active(db, "sectors", seed.other_sector_id, False)
    with pytest.raises(ValidationError):
        services.registry.create(
            db, BinCreate(hardware_id="GLS-X3", sector_id=seed.other_sector_id, capacity_liters=240)
        )


def test_lookup_by_id_and_hardware_id(db, services, make_bin) -> None:
    bin_row = make_bin()

    assert services.registry.get_by_hardware_id(db, bin_row["hardware_id"])["id"] == bin_row["id"]
    assert bin_row["sector_code"] == "N1"
    assert bin_row["establishment_name"] == "Cafe Azul"
    with pytest.raises(NotFoundError):
        services.registry.get(db, 9999)
    with pytest.raises(NotFoundError):
        services.registry.get_by_hardware_id(db, "GLS-NOPE")


def test_list_filters_and_paginates(db, services, seed, make_bin) -> None:
    make_bin()
    make_bin()
    pending = make_bin()
    services.status.change_status(db, pending["id"], "pending_retirement")
    broken = make_bin()
    services.registry.deactivate(db, broken["id"], "Sensor offline", seed.manager_id)

    active = services.registry.list_bins(db, limit=2)
    assert active["total"] == 3
    assert len(active["items"]) == 2
    assert active["has_more"] is True

    assert services.registry.list_bins(db, active=None)["total"] == 4
    assert services.registry.list_bins(db, active=False)["items"][0]["id"] == broken["id"]
    assert services.registry.list_bins(db, status="pending_retirement")["total"] == 1
    with pytest.raises(ValidationError):
        services.registry.list_bins(db, status="broken")


def test_update_mutable_fields(db, services, seed, make_bin) -> None:
    bin_row = make_bin()

    updated = services.registry.update(
        db, bin_row["id"], BinUpdate(glass_type="amber", establishment_id=seed.other_establishment_id)
    )
    assert updated["glass_type"] == "amber"
    assert updated["establishment_id"] == seed.other_establishment_id

    with pytest.raises(ValidationError):
        services.registry.update(db, bin_row["id"], BinUpdate())
    with pytest.raises(ValidationError):
        services.registry.update(db, bin_row["id"], BinUpdate(establishment_id=999))
    with pytest.raises(NotFoundError):
        services.registry.update(db, 9999, BinUpdate(capacity_liters=120))


def test_deactivate_keeps_status_and_records_reason(db, services, seed, make_bin) -> None:
    bin_row = make_bin(fill=30)

    inactive = services.registry.deactivate(db, bin_row["id"], "Sensor offline", seed.manager_id)
    assert inactive["is_active"] is False
    assert inactive["status"] == "active"
    assert inactive["inactivity_reason"] == "Sensor offline"

    restored = services.registry.reactivate(db, bin_row["id"], seed.manager_id)
    assert restored["is_active"] is True
    assert restored["inactivity_reason"] is None

    rows = history_rows(db, bin_row["id"])
    assert [row["reason"] for row in rows] == ["Bin deactivated: Sensor offline", "Bin reactivated"]
    assert all(row["prior_status"] == row["new_status"] == "active" for row in rows)

    with pytest.raises(NotFoundError):
        services.registry.deactivate(db, 9999, "Gone", seed.manager_id)


def test_history_is_newest_first(db, services, seed, make_bin) -> None:
    bin_row = make_bin()
    services.status.change_status(db, bin_row["id"], "pending_retirement")
    services.status.reactivate(db, bin_row["id"], seed.manager_id)

    items = services.registry.history(db, bin_row["id"])
    assert [item["new_status"] for item in items] == ["active", "pending_retirement"]
    assert len(services.registry.history(db, bin_row["id"], limit=1)) == 1
    with pytest.raises(NotFoundError):
        services.registry.history(db, 9999)
