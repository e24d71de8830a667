"""
Map domain exceptions to HTTP responses.

Route handlers let AccessEngineError subclasses propagate; this module turns
them into JSON bodies of the form {"error", "message", "details"}.
"""
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from access_engine.core.exceptions import (
    AccessEngineError,
    ConflictError,
    NotFoundError,
    PartialBulkFailureError,
    StorageUnavailableError,
    ValidationError,
)
from access_engine.utils import get_logger


log = get_logger(__name__)

RETRY_AFTER_SECONDS = "1"

# Checked in order; the first matching class wins
STATUS_CODES: list[tuple[type[AccessEngineError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (StorageUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: AccessEngineError) -> int:
    if isinstance(exc, PartialBulkFailureError):
        # Nothing applied is a conflict the caller can retry; partial application is a server failure
        return status.HTTP_500_INTERNAL_SERVER_ERROR if exc.committed else status.HTTP_409_CONFLICT
    for exc_type, status_code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AccessEngineError)
    async def access_engine_error_handler(request: Request, exc: AccessEngineError):
        status_code = status_for(exc)
        headers = None
        if isinstance(exc, StorageUnavailableError):
            headers = {"Retry-After": RETRY_AFTER_SECONDS}

        if status_code >= 500:
            log.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            log.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc.message}")

        return JSONResponse(status_code=status_code, content=jsonable_encoder(exc.to_dict()), headers=headers)
