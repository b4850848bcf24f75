from __future__ import annotations

import logging
import uuid
from datetime import UTC
from typing import Any

from glassroute.config import ThresholdConfig
from glassroute.errors import NotFoundError, ValidationError, field_error
from glassroute.models.database import DatabaseManager, utc_now
from glassroute.models.enums import FillLevel, classify_fill
from glassroute.models.schemas import SensorReading
from glassroute.telemetry.store import TelemetryStore

LOGGER = logging.getLogger(__name__)


class TelemetryProcessor:
    def __init__(self, thresholds: ThresholdConfig | None = None) -> None:
        self.thresholds = thresholds or ThresholdConfig()

    def classify(self, fill_percent: float) -> FillLevel:
        return classify_fill(
            fill_percent,
            pending_min=self.thresholds.pending_min,
            critical_min=self.thresholds.critical_min,
        )

    def accept(self, db: DatabaseManager, reading: SensorReading) -> SensorReading:
        """Gate a reading at the ingestion edge and give it an idempotency key."""
        if reading.fill_percent < self.thresholds.min_event_fill:
            raise ValidationError(
                f"Events are only sent when fill is >= {self.thresholds.min_event_fill:g}%",
                [field_error("fill_percent", f"Must be at least {self.thresholds.min_event_fill:g}")],
            )

        with db.read() as uow:
            row = uow.fetchone("SELECT id, is_active FROM bins WHERE hardware_id = ?", (reading.hardware_id,))
        if row is None:
            raise ValidationError(
                f"Unregistered bin: {reading.hardware_id}",
                [field_error("hardware_id", "Bin not found")],
            )
        if not row["is_active"]:
            raise ValidationError(
                f"Inactive bin: {reading.hardware_id}",
                [field_error("hardware_id", "Bin is marked inactive")],
            )

        if reading.event_id:
            return reading
        return reading.model_copy(update={"event_id": uuid.uuid4().hex})

    def process(self, db: DatabaseManager, store: TelemetryStore, reading: SensorReading) -> dict[str, Any]:
        """Apply one reading. Safe to call again for the same event."""
        if not reading.event_id:
            reading = reading.model_copy(update={"event_id": uuid.uuid4().hex})
        store.insert_event(reading)

        read_at = reading.timestamp
        if read_at.tzinfo is None:
            read_at = read_at.replace(tzinfo=UTC)
        read_at_iso = read_at.astimezone(UTC).isoformat(timespec="microseconds")

        with db.transaction() as uow:
            target = uow.fetchone(
                "SELECT id, fill_percent, last_reading_at FROM bins WHERE hardware_id = ? AND is_active = 1",
                (reading.hardware_id,),
            )
            if target is None:
                raise NotFoundError(f"Bin not found: {reading.hardware_id}")

            applied = target["last_reading_at"] is None or read_at_iso >= target["last_reading_at"]
            if applied:
                uow.execute(
                    """
                    UPDATE bins
                    SET fill_percent = ?,
                        last_reading_at = ?,
                        battery_level = COALESCE(?, battery_level),
                        glass_type = COALESCE(?, glass_type),
                        firmware_version = COALESCE(?, firmware_version),
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        reading.fill_percent,
                        read_at_iso,
                        reading.battery_level,
                        reading.glass_type.value if reading.glass_type else None,
                        reading.firmware_version,
                        utc_now(),
                        target["id"],
                    ),
                )
            else:
                LOGGER.info("Skipping stale reading %s for %s", reading.event_id, reading.hardware_id)

        store.mark_processed(reading.event_id, target["id"])  # type: ignore[arg-type]
        return {
            "event_id": reading.event_id,
            "bin_id": target["id"],
            "hardware_id": reading.hardware_id,
            "fill_percent": reading.fill_percent,
            "classification": self.classify(reading.fill_percent).value,
            "applied": applied,
        }
