from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from pydantic import BaseModel, Field

from glassroute.models.enums import BinStatus, GlassType, RequestType, UserRole

HARDWARE_ID_PATTERN = r"^[A-Z0-9_-]+$"


class SectorCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    code: str = Field(min_length=1, max_length=20)


class EstablishmentCreate(BaseModel):
    sector_id: int
    owner_id: int
    name: str = Field(min_length=1, max_length=200)
    address: str | None = None


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    role: UserRole


class BinCreate(BaseModel):
    hardware_id: str = Field(min_length=3, max_length=50, pattern=HARDWARE_ID_PATTERN)
    sector_id: int
    establishment_id: int | None = None
    capacity_liters: float = Field(gt=0, le=10000)
    glass_type: GlassType = GlassType.MIXED
    firmware_version: str | None = None


class BinUpdate(BaseModel):
    establishment_id: int | None = None
    sector_id: int | None = None
    capacity_liters: float | None = Field(default=None, gt=0, le=10000)
    glass_type: GlassType | None = None
    firmware_version: str | None = None
    inactivity_reason: str | None = None


class BinDeactivate(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class BinReassign(BaseModel):
    establishment_id: int
    sector_id: int


class BinStatusChange(BaseModel):
    status: BinStatus
    reason: str | None = Field(default=None, max_length=500)


class RequestCreate(BaseModel):
    establishment_id: int
    requester_id: int | None = None
    type: RequestType
    description: str | None = Field(default=None, max_length=1000)
    extra: dict[str, Any] | None = None
    bin_id: int | None = None


class RequestDecision(BaseModel):
    message: str | None = Field(default=None, max_length=1000)


class RouteCreate(BaseModel):
    sector_id: int
    creator_id: int | None = None
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    planned_date: date | None = None


class RouteGenerateConfig(BaseModel):
    name: str | None = Field(default=None, max_length=200)
    min_fill: float = Field(default=60.0, ge=0, le=100)
    max_points: int = Field(default=50, ge=1, le=500)
    glass_type: GlassType | None = None
    planned_date: date | None = None


class RouteGenerateRequest(RouteGenerateConfig):
    sector_id: int


class PointAdd(BaseModel):
    bin_id: int
    notes: str | None = None


class RouteAssign(BaseModel):
    collector_id: int


class RouteCancel(BaseModel):
    reason: str | None = None


class PointComplete(BaseModel):
    collected_percent: float | None = Field(default=None, ge=0, le=100)
    notes: str | None = None


class BulkCompleteItem(PointComplete):
    point_id: int


class BulkComplete(BaseModel):
    points: list[BulkCompleteItem] = Field(min_length=1)


class RetirementConfirm(BaseModel):
    notes: str | None = None


class SensorReading(BaseModel):
    hardware_id: str = Field(min_length=3, max_length=50, pattern=HARDWARE_ID_PATTERN)
    fill_percent: int = Field(ge=0, le=100)
    battery_level: float | None = Field(default=None, ge=0, le=100)
    temperature: float | None = None
    glass_type: GlassType | None = None
    firmware_version: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    event_id: str | None = None


class ActiveFlag(BaseModel):
    active: bool
