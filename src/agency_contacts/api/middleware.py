"""API error handling middleware — consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``AccessDeniedError`` → 403 Forbidden
- ``ContactNotFoundError`` → 404 Not Found
- ``ValueError`` (includes ``InvalidInputError``) → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from agency_contacts.api.models import ErrorDetail, ErrorResponse
from agency_contacts.errors import AccessDeniedError, ContactNotFoundError

logger = logging.getLogger(__name__)


async def _handle_access_denied(
    request: Request,
    exc: AccessDeniedError,
) -> JSONResponse:
    """Return 403 when the caller has no access to the agency."""
    logger.warning("Access denied to agency %s: %s", exc.agency_id, exc.reason)
    body = ErrorResponse(
        error=ErrorDetail(
            code="ACCESS_DENIED",
            message=str(exc),
            agency_id=str(exc.agency_id),
        )
    )
    return JSONResponse(status_code=403, content=body.model_dump())


async def _handle_not_found(
    request: Request,
    exc: ContactNotFoundError,
) -> JSONResponse:
    logger.info("Contact not found: %s", exc.contact_id)
    body = ErrorResponse(
        error=ErrorDetail(
            code="CONTACT_NOT_FOUND",
            message=str(exc),
        )
    )
    return JSONResponse(status_code=404, content=body.model_dump())


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    body = ErrorResponse(
        error=ErrorDetail(
            code="VALIDATION_ERROR",
            message=str(exc),
        )
    )
    return JSONResponse(status_code=400, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so that exceptions not
    caught by ``add_exception_handler`` still get the standard error envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            body = ErrorResponse(
                error=ErrorDetail(
                    code="INTERNAL_ERROR",
                    message="Internal server error",
                )
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(AccessDeniedError, _handle_access_denied)  # type: ignore[arg-type]
    app.add_exception_handler(ContactNotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
