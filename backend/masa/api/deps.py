"""
Shared router dependencies and the storage-error to HTTP mapping.
"""
import logging

from fastapi import Depends, Request
from fastapi.responses import JSONResponse

from ..core.encryption import EncryptionError
from ..core.errors import (
    BackendUnavailable,
    Conflict,
    InvalidRecord,
    MigrationFailed,
    PermissionDenied,
    RecordNotFound,
    StoreError,
)
from ..core.security import AuthenticatedUser, get_current_user
from ..services.repository import Repository

logger = logging.getLogger(__name__)


def get_repository(
    request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
) -> Repository:
    """The process-wide repository, scoped to the calling user."""
    return request.app.state.repository.scoped(current_user)


_STATUS_BY_ERROR = (
    (RecordNotFound, 404),
    (InvalidRecord, 422),
    (BackendUnavailable, 503),
    (PermissionDenied, 403),
    (MigrationFailed, 502),
    (Conflict, 409),
)


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Storage error"})


async def encryption_error_handler(request: Request, exc: EncryptionError) -> JSONResponse:
    # Never echo codec details; they can hint at key material or record contents.
    logger.error("Encryption failure on %s %s: %s", request.method, request.url.path, type(exc).__name__)
    return JSONResponse(status_code=500, content={"detail": "Record encryption error"})
