"""Map domain errors onto HTTP responses.

The services raise the taxonomy in app/core/errors.py and know nothing
about HTTP.  These handlers are the single translation point, so every
route gets the same status codes and body shape:

    {"detail": "<message>", "request_id": "<id>", ...extra}

ConflictError adds ``current_state``; PaymentPending adds the payment
obligation the client must settle before retrying.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.core.errors import (
    ConflictError,
    DomainError,
    ExternalCollaboratorError,
    LedgerUnavailable,
    NotFoundError,
    PaymentPending,
    PermissionDeniedError,
    ValidationError,
    WriteConflict,
)
from app.core.logging import request_id_var

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[DomainError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (WriteConflict, status.HTTP_409_CONFLICT),
    (PaymentPending, status.HTTP_402_PAYMENT_REQUIRED),
    (LedgerUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ExternalCollaboratorError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: DomainError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, DomainError):
        raise exc
    code = status_for(exc)
    content: dict = {"detail": exc.message, "request_id": request_id_var.get("-")}
    headers: dict[str, str] = {}

    if isinstance(exc, ConflictError):
        content["current_state"] = exc.current_state
    elif isinstance(exc, PaymentPending):
        content["payment"] = exc.obligation.to_body()
    elif isinstance(exc, LedgerUnavailable):
        headers["Retry-After"] = "5"

    if code >= 500:
        logger.error(
            "%s on %s %s: %s",
            type(exc).__name__,
            request.method,
            request.url.path,
            exc.message,
        )
    else:
        logger.warning(
            "%s on %s %s: %s",
            type(exc).__name__,
            request.method,
            request.url.path,
            exc.message,
        )
    return JSONResponse(status_code=code, content=content, headers=headers or None)


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
