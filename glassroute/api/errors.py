from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from glassroute.errors import ConflictError, GlassRouteError, NotFoundError, UnauthorizedError, ValidationError

LOGGER = logging.getLogger(__name__)

STATUS_CODES: dict[type[GlassRouteError], int] = {
    ValidationError: 400,
    UnauthorizedError: 401,
    NotFoundError: 404,
    ConflictError: 409,
}


def status_code_for(exc: GlassRouteError) -> int:
    for error_type, code in STATUS_CODES.items():
        if isinstance(exc, error_type):
            return code
    return 500


async def handle_domain_error(request: Request, exc: GlassRouteError) -> JSONResponse:
    code = status_code_for(exc)
    if code == 500:
        return await handle_unexpected_error(request, exc)
    LOGGER.info("%s %s -> %d %s", request.method, request.url.path, code, exc.message)
    return JSONResponse(status_code=code, content=exc.to_dict())


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]
    error = ValidationError("Request validation failed", details)
    return JSONResponse(status_code=400, content=error.to_dict())


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "internal", "message": "Internal server error"})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GlassRouteError, handle_domain_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, handle_request_validation)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, handle_unexpected_error)
