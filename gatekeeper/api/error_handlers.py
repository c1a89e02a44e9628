"""Exception handlers for the FastAPI app."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gatekeeper.api.pipeline import PipelineRejectedError
from gatekeeper.models.audit_log import AuditLogImmutableError

logger = logging.getLogger("gatekeeper.api.errors")


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = str(first.get("msg", "Invalid value"))
    if first.get("type") == "missing" and location:
        return f"{location.capitalize()} is required"
    return f"{location}: {message}" if location else message


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PipelineRejectedError)
    async def pipeline_rejected_handler(request: Request, exc: PipelineRejectedError) -> JSONResponse:  # noqa: WPS430
        rejection = exc.rejection
        return JSONResponse(
            status_code=rejection.status_code,
            content={"detail": rejection.detail},
            headers=rejection.headers or None,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # noqa: WPS430
        detail = _validation_message(exc)
        logger.warning(
            "request_validation_failed",
            extra={"path": request.url.path, "method": request.method, "detail": detail},
        )
        return JSONResponse(status_code=400, content={"detail": detail})

    @app.exception_handler(AuditLogImmutableError)
    async def audit_immutable_handler(request: Request, exc: AuditLogImmutableError) -> JSONResponse:  # noqa: WPS430
        logger.error("audit_mutation_blocked", extra={"path": request.url.path})
        return JSONResponse(status_code=409, content={"detail": str(exc)})
