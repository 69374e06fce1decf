"""Mapping from CRM service errors to HTTP responses.

Every CRMError becomes ``{"detail": {"code", "message", "retry"}}``:

- NotFoundError -> 404
- CRMValidationError -> 422
- DuplicateName -> 409
- ConflictError -> 409 with ``retry: true`` (refetch and try again)
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.app.crm.exceptions import (
    ConflictError,
    CRMError,
    CRMValidationError,
    DuplicateName,
    NotFoundError,
)

logger = structlog.get_logger(__name__)


def status_for(exc: CRMError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, CRMValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, (DuplicateName, ConflictError)):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


def error_body(exc: CRMError) -> dict:
    return {
        "detail": {
            "code": exc.code,
            "message": exc.message,
            "retry": isinstance(exc, ConflictError),
        }
    }


def register_error_handlers(app: FastAPI) -> None:
    """Install the CRMError handler on ``app``."""

    @app.exception_handler(CRMError)
    async def crm_error_handler(request: Request, exc: CRMError) -> JSONResponse:
        status_code = status_for(exc)
        logger.info(
            "crm_error_response",
            path=request.url.path,
            code=exc.code,
            status_code=status_code,
        )
        return JSONResponse(status_code=status_code, content=error_body(exc))
