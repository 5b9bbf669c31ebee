import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError

logger = logging.getLogger("budgetsync")

FILE_NOT_FOUND = {"status": "error", "reason": "file-not-found"}


class StorageError(Exception):
    """Base class for registry failures that callers are expected to handle."""


class RecordNotFoundError(StorageError):
    """No record exists for the requested FileID (identity lookups only)."""

    def __init__(self, file_id: Optional[str] = None):
        if file_id is None:
            super().__init__("file record not found")
        else:
            super().__init__(f"no file record with id {file_id!r}")
        self.file_id = file_id


class NoRecordUpdatedError(StorageError):
    """A mutation matched zero rows."""

    def __init__(self, file_id: str):
        super().__init__(f"no file record updated for id {file_id!r}")
        self.file_id = file_id


class UploadRejectedError(Exception):
    """The client's copy is out of step with the registry and must be re-downloaded."""

    def __init__(self, file_id: str, reason: str):
        super().__init__(f"upload of {file_id!r} rejected: {reason}")
        self.file_id = file_id
        self.reason = reason


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RecordNotFoundError)
    async def record_not_found_handler(request: Request, exc: RecordNotFoundError):
        return JSONResponse(FILE_NOT_FOUND, status_code=404)

    @app.exception_handler(NoRecordUpdatedError)
    async def no_record_updated_handler(request: Request, exc: NoRecordUpdatedError):
        return JSONResponse(FILE_NOT_FOUND, status_code=400)

    @app.exception_handler(UploadRejectedError)
    async def upload_rejected_handler(request: Request, exc: UploadRejectedError):
        logger.info("event=upload_rejected reason=%s file_id=%s", exc.reason, exc.file_id)
        return JSONResponse({"status": "error", "reason": exc.reason}, status_code=400)

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        logger.warning("event=integrity_error path=%s error=%s", request.url.path, exc.orig)
        return JSONResponse({"status": "error", "reason": "conflict"}, status_code=409)

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError):
        logger.error("event=database_unavailable path=%s error=%s", request.url.path, exc.orig)
        return JSONResponse(
            {"status": "error", "reason": "database-unavailable"},
            status_code=503,
            headers={"Retry-After": "1"},
        )
