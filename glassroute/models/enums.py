from __future__ import annotations

from enum import StrEnum
from typing import TypeVar

from glassroute.errors import ValidationError, field_error

E = TypeVar("E", bound=StrEnum)


class UserRole(StrEnum):
    ROUTE_MANAGER = "route_manager"
    ESTABLISHMENT_OWNER = "establishment_owner"
    COLLECTOR = "collector"


class BinStatus(StrEnum):
    ACTIVE = "active"
    PENDING_RETIREMENT = "pending_retirement"
    RETIRED = "retired"


class GlassType(StrEnum):
    CLEAR = "clear"
    GREEN = "green"
    AMBER = "amber"
    MIXED = "mixed"


class RequestType(StrEnum):
    INSTALL = "install"
    RETIRE = "retire"
    MANUAL_COLLECTION = "manual_collection"
    ASSISTANCE = "assistance"


class RequestStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RouteStatus(StrEnum):
    PLANNED = "planned"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FillLevel(StrEnum):
    NORMAL = "normal"
    PENDING = "pending"
    CRITICAL = "critical"


def parse_enum(enum_cls: type[E], value: object, field: str) -> E:
    """Coerce ``value`` into ``enum_cls`` or raise a field-level validation error.

    Every call site that accepts a status, type or role from outside the core
    goes through here so the accepted values are listed in one place.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        valid = ", ".join(item.value for item in enum_cls)
        raise ValidationError(
            f"Invalid value for {field}: {value}",
            [field_error(field, f"Must be one of: {valid}")],
        ) from None


def classify_fill(percent: float, *, pending_min: float = 60.0, critical_min: float = 80.0) -> FillLevel:
    if percent >= critical_min:
        return FillLevel.CRITICAL
    if percent >= pending_min:
        return FillLevel.PENDING
    return FillLevel.NORMAL
