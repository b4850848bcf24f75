from __future__ import annotations

from typing import Any


class GlassRouteError(RuntimeError):
    """Base class for every failure a core operation may raise."""

    kind = "internal"

    def __init__(self, message: str, details: list[dict[str, Any]] | dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(GlassRouteError):
    kind = "validation"

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, details or [])


class NotFoundError(GlassRouteError):
    kind = "not_found"

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message)


class ConflictError(GlassRouteError):
    kind = "conflict"


class UnauthorizedError(GlassRouteError):
    kind = "unauthorized"

    def __init__(self, message: str = "Not authorized") -> None:
        super().__init__(message)


def field_error(field: str, message: str) -> dict[str, str]:
    return {"field": field, "message": message}
