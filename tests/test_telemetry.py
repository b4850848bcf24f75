import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from conftest import history_rows
from glassroute.config import ThresholdConfig
from glassroute.errors import NotFoundError, ValidationError
from glassroute.models.enums import FillLevel, classify_fill
from glassroute.models.schemas import SensorReading
from glassroute.telemetry.classifier import TelemetryProcessor
from glassroute.telemetry.queue import TelemetryQueue
from glassroute.telemetry.store import TelemetryStore


@pytest.fixture
def store(tmp_path):
    telemetry = TelemetryStore(tmp_path / "telemetry.db")
    telemetry.initialize()
    yield telemetry
    telemetry.close()


def _reading(hardware_id: str, fill: int, event_id: str, at: datetime | None = None, **extra) -> SensorReading:
    return SensorReading(
        hardware_id=hardware_id,
        fill_percent=fill,
        event_id=event_id,
        timestamp=at or datetime.now(tz=UTC),
        **extra,
    )


def test_classify_fill_bands() -> None:
    assert classify_fill(0) == FillLevel.NORMAL
    assert classify_fill(59) == FillLevel.NORMAL
    assert classify_fill(60) == FillLevel.PENDING
    assert classify_fill(79) == FillLevel.PENDING
    assert classify_fill(80) == FillLevel.CRITICAL
    assert classify_fill(100) == FillLevel.CRITICAL


def test_classify_with_custom_thresholds() -> None:
    processor = TelemetryProcessor(ThresholdConfig(pending_min=50, critical_min=90))
    assert processor.classify(55) == FillLevel.PENDING
    assert processor.classify(89) == FillLevel.PENDING
    assert processor.classify(90) == FillLevel.CRITICAL


def test_accept_gates_low_fill_and_unknown_bins(db, services, seed, make_bin) -> None:
    bin_row = make_bin()
    processor = services.telemetry

    with pytest.raises(ValidationError) as excinfo:
        processor.accept(db, SensorReading(hardware_id=bin_row["hardware_id"], fill_percent=59))
    assert excinfo.value.details[0]["field"] == "fill_percent"

    with pytest.raises(ValidationError):
        processor.accept(db, SensorReading(hardware_id="GLS-GHOST", fill_percent=70))

    services.registry.deactivate(db, bin_row["id"], "Lid stuck", seed.manager_id)
    with pytest.raises(ValidationError):
        processor.accept(db, SensorReading(hardware_id=bin_row["hardware_id"], fill_percent=70))


def test_accept_assigns_event_id(db, services, make_bin) -> None:
    bin_row = make_bin()
    accepted = services.telemetry.accept(db, SensorReading(hardware_id=bin_row["hardware_id"], fill_percent=60))
    assert accepted.event_id

    kept = services.telemetry.accept(db, _reading(bin_row["hardware_id"], 60, "evt-fixed"))
    assert kept.event_id == "evt-fixed"


def test_process_sets_fill_and_device_fields(db, services, store, make_bin) -> None:
    bin_row = make_bin()

    result = services.telemetry.process(
        db,
        store,
        _reading(bin_row["hardware_id"], 83, "evt-1", battery_level=71.5, firmware_version="2.1.0", glass_type="green"),
    )

    assert result["classification"] == "critical"
    assert result["applied"] is True
    updated = services.registry.get(db, bin_row["id"])
    assert updated["fill_percent"] == 83
    assert updated["battery_level"] == 71.5
    assert updated["firmware_version"] == "2.1.0"
    assert updated["glass_type"] == "green"
    assert updated["last_reading_at"] is not None
    assert history_rows(db, bin_row["id"]) == []

    event = store.get_event("evt-1")
    assert event["processed"] == 1
    assert event["bin_id"] == bin_row["id"]


def test_process_is_idempotent_per_event(db, services, store, make_bin) -> None:
    bin_row = make_bin()
    reading = _reading(bin_row["hardware_id"], 64, "evt-dup")

    services.telemetry.process(db, store, reading)
    services.telemetry.process(db, store, reading)

    assert store.get_history(hardware_id=bin_row["hardware_id"])["total"] == 1
    assert store.insert_event(reading) is False


def test_stale_reading_does_not_overwrite_newer_fill(db, services, store, make_bin) -> None:
    bin_row = make_bin()
    now = datetime.now(tz=UTC)

    services.telemetry.process(db, store, _reading(bin_row["hardware_id"], 90, "evt-new", now))
    stale = services.telemetry.process(
        db, store, _reading(bin_row["hardware_id"], 65, "evt-old", now - timedelta(minutes=5))
    )

    assert stale["applied"] is False
    assert services.registry.get(db, bin_row["id"])["fill_percent"] == 90
    assert store.get_event("evt-old")["processed"] == 1


def test_process_for_unknown_bin(db, services, store) -> None:
    with pytest.raises(NotFoundError):
        services.telemetry.process(db, store, _reading("GLS-GHOST", 70, "evt-ghost"))
    assert store.get_event("evt-ghost")["processed"] == 0
    assert len(store.get_unprocessed()) == 1


def test_history_window_and_purge(store) -> None:
    now = datetime(2026, 6, 1, tzinfo=UTC)
    for days_ago, event_id in [(400, "evt-a"), (10, "evt-b"), (1, "evt-c")]:
        store.insert_event(_reading("GLS-001", 70, event_id, now - timedelta(days=days_ago)))

    window = store.get_history(hardware_id="GLS-001", start=now - timedelta(days=30))
    assert [item["event_id"] for item in window["items"]] == ["evt-c", "evt-b"]

    assert store.purge_expired(365, now=now) == 1
    assert store.get_event("evt-a") is None
    assert store.get_history(hardware_id="GLS-001")["total"] == 2


def test_queue_retries_then_succeeds() -> None:
    calls: list[str] = []

    def flaky(reading: SensorReading) -> dict:
        calls.append(reading.event_id)
        if len(calls) < 3:
            raise RuntimeError("database is locked")
        return {"event_id": reading.event_id}

    async def scenario() -> TelemetryQueue:
        queue = TelemetryQueue(flaky, attempts=3, backoff_seconds=0, concurrency=2)
        queue.start()
        job = await queue.enqueue(_reading("GLS-001", 70, "evt-q1"))
        await queue.join()
        await queue.stop()
        assert job.attempts == 3
        assert job.result == {"event_id": "evt-q1"}
        return queue

    queue = asyncio.run(scenario())
    assert queue.processed == 1
    assert not queue.failed


def test_queue_keeps_jobs_that_exhaust_attempts() -> None:
    def broken(reading: SensorReading) -> dict:
        raise RuntimeError("bin not found")

    async def scenario() -> TelemetryQueue:
        queue = TelemetryQueue(broken, attempts=2, backoff_seconds=0, concurrency=1)
        queue.start()
        await queue.enqueue(_reading("GLS-001", 70, "evt-q2"))
        await queue.enqueue(_reading("GLS-002", 75, "evt-q3"))
        await queue.join()
        await queue.stop()
        return queue

    queue = asyncio.run(scenario())
    assert queue.processed == 0
    assert [job.id for job in queue.failed] == ["evt-q2", "evt-q3"]
    assert all(job.attempts == 2 and job.last_error == "bin not found" for job in queue.failed)


def test_queue_keeps_only_newest_failed_jobs() -> None:
    def broken(reading: SensorReading) -> dict:
        raise RuntimeError("bin not found")

    async def scenario() -> TelemetryQueue:
        queue = TelemetryQueue(broken, attempts=1, backoff_seconds=0, concurrency=1, failed_limit=2)
        queue.start()
        for index in range(5):
            await queue.enqueue(_reading("GLS-001", 70, f"evt-f{index}"))
        await queue.join()
        await queue.stop()
        return queue

    queue = asyncio.run(scenario())
    assert [job.id for job in queue.failed] == ["evt-f3", "evt-f4"]


def test_last_event_for_bin(store) -> None:
    now = datetime(2026, 6, 1, tzinfo=UTC)
    assert store.get_last("GLS-001") is None

    store.insert_event(_reading("GLS-001", 70, "evt-old", now - timedelta(hours=3)))
    store.insert_event(_reading("GLS-001", 82, "evt-new", now - timedelta(hours=1)))
    store.insert_event(_reading("GLS-002", 95, "evt-other", now))

    assert store.get_last("GLS-001")["event_id"] == "evt-new"


def test_critical_events_window(store) -> None:
    now = datetime(2026, 6, 1, tzinfo=UTC)
    store.insert_event(_reading("GLS-001", 85, "evt-85", now - timedelta(hours=2)))
    store.insert_event(_reading("GLS-002", 97, "evt-97", now - timedelta(hours=5)))
    store.insert_event(_reading("GLS-003", 75, "evt-75", now - timedelta(hours=1)))
    store.insert_event(_reading("GLS-004", 99, "evt-stale", now - timedelta(hours=30)))

    recent = store.get_critical(24, 50, now=now)
    assert [item["event_id"] for item in recent] == ["evt-97", "evt-85"]
    assert [item["event_id"] for item in store.get_critical(24, 1, now=now)] == ["evt-97"]


def test_events_by_glass_type(store) -> None:
    now = datetime(2026, 6, 1, tzinfo=UTC)
    store.insert_event(_reading("GLS-001", 70, "evt-g1", now - timedelta(days=3), glass_type="green"))
    store.insert_event(_reading("GLS-002", 72, "evt-g2", now - timedelta(days=1), glass_type="green"))
    store.insert_event(_reading("GLS-003", 74, "evt-a1", now, glass_type="amber"))

    green = store.get_by_glass_type("green")
    assert green["total"] == 2
    assert [item["event_id"] for item in green["items"]] == ["evt-g2", "evt-g1"]

    window = store.get_by_glass_type("green", start=now - timedelta(days=2), limit=1)
    assert window["total"] == 1
    assert window["has_more"] is False
    assert store.get_by_glass_type("clear")["items"] == []
