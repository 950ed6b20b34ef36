"""Exception handlers for authentication and authorization failures.

Every credential failure renders as ``{"error": <public message>}`` with
the status code of its class. The internal reason (missing, invalid,
expired, unavailable) and detail are logged here and never leave the
process.
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.crm.auth.errors import AuthenticationError, PermissionDenied

logger = structlog.get_logger(__name__)


async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    """Convert an AuthenticationError into its uniform JSON response."""
    log_method = logger.error if exc.status_code >= 500 else logger.warning
    log_method(
        "auth.rejected",
        reason=exc.reason,
        detail=exc.detail,
        method=request.method,
        path=request.url.path,
        exc_info=exc.status_code >= 500,
    )
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.public_message},
        headers=headers,
    )


async def permission_denied_handler(request: Request, exc: PermissionDenied) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.public_message},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthenticationError, authentication_error_handler)
    app.add_exception_handler(PermissionDenied, permission_denied_handler)
