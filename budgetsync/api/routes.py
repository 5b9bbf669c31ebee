from __future__ import annotations

import json
import logging
import secrets
import uuid
from typing import Callable, Optional, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from budgetsync.blobs import blob_path, remove_blob, staged_blob
from budgetsync.config import (
    ADMIN_PASSWORD,
    DB_BUSY_BACKOFF_SECONDS,
    DB_BUSY_RETRIES,
    MAX_FILE_SIZE,
    SERVER_TOKEN,
)
from budgetsync.core.exceptions import FILE_NOT_FOUND, RecordNotFoundError, UploadRejectedError
from budgetsync.core.metrics import metrics
from budgetsync.db import retry_on_busy
from budgetsync.models import FileRecord, NewFile
from budgetsync.store import FileStore

router = APIRouter()

logger = logging.getLogger("budgetsync")

T = TypeVar("T")
MAX_FILE_SIZE_MB = MAX_FILE_SIZE / (1024 * 1024)


class FileIdBody(BaseModel):
    file_id: str = Field(alias="fileId")


class RenameBody(FileIdBody):
    name: str


class CreateKeyBody(FileIdBody):
    key_id: str = Field(alias="keyId")
    key_salt: str = Field(alias="keySalt")
    test_content: str = Field(alias="testContent")


def _ok(data=None) -> dict:
    if data is None:
        return {"status": "ok"}
    return {"status": "ok", "data": data}


def _call(operation: Callable[[], T]) -> T:
    return retry_on_busy(operation, attempts=DB_BUSY_RETRIES, base_delay=DB_BUSY_BACKOFF_SECONDS)


def get_file_store(request: Request) -> FileStore:
    return request.app.state.file_store


def require_token(request: Request):
    """Dependency checking the sync token sent by the client."""
    if not SERVER_TOKEN:
        raise HTTPException(status_code=403, detail="Sync is disabled: no server token configured")

    token = request.headers.get("x-actual-token")

    if not token or not secrets.compare_digest(token, SERVER_TOKEN):
        raise HTTPException(status_code=401, detail="unauthorized")

    return token


def require_admin(request: Request):
    if not ADMIN_PASSWORD:
        raise HTTPException(status_code=403, detail="Admin API is disabled on this server")

    password = request.headers.get("x-admin-password")

    if not password or not secrets.compare_digest(password, ADMIN_PASSWORD):
        raise HTTPException(status_code=401, detail="Invalid or missing admin password")


def _live_record(store: FileStore, file_id: str) -> FileRecord:
    record = _call(lambda: store.for_id(file_id))
    if record.deleted:
        raise RecordNotFoundError(file_id)
    return record


def _file_summary(record: FileRecord) -> dict:
    return {
        "deleted": record.deleted,
        "fileId": record.file_id,
        "groupId": record.group_id or None,
        "name": record.name,
    }


@router.get("/sync/list-user-files", dependencies=[Depends(require_token)])
def list_user_files(store: FileStore = Depends(get_file_store)):
    files = _call(store.all)
    return _ok(
        [
            {
                **_file_summary(f),
                "encryptKeyId": f.encryption.key_id if f.encryption else None,
            }
            for f in files
        ]
    )


@router.get("/sync/get-user-file-info", dependencies=[Depends(require_token)])
def get_user_file_info(
    file_id: str = Header(..., alias="x-actual-file-id"),
    store: FileStore = Depends(get_file_store),
):
    record = _live_record(store, file_id)
    return _ok({**_file_summary(record), "encryptMeta": record.encrypt_meta})


@router.post("/sync/update-user-filename", dependencies=[Depends(require_token)])
def update_user_filename(body: RenameBody, store: FileStore = Depends(get_file_store)):
    _live_record(store, body.file_id)
    _call(lambda: store.update_name(body.file_id, body.name))
    return _ok()


@router.post("/sync/user-get-key", dependencies=[Depends(require_token)])
def user_get_key(body: FileIdBody, store: FileStore = Depends(get_file_store)):
    key = _live_record(store, body.file_id).encryption
    return _ok(
        {
            "id": key.key_id if key else None,
            "salt": key.salt if key else None,
            "test": key.test if key else None,
        }
    )


@router.post("/sync/user-create-key", dependencies=[Depends(require_token)])
def user_create_key(body: CreateKeyBody, store: FileStore = Depends(get_file_store)):
    _call(lambda: store.update_encryption(body.file_id, body.key_salt, body.key_id, body.test_content))
    logger.info("event=key_created file_id=%s key_id=%s", body.file_id, body.key_id)
    return _ok()


@router.post("/sync/reset-user-file", dependencies=[Depends(require_token)])
def reset_user_file(body: FileIdBody, store: FileStore = Depends(get_file_store)):
    _call(lambda: store.clear_group(body.file_id))
    metrics.record_reset()
    logger.info("event=file_reset file_id=%s", body.file_id)
    return _ok()


@router.post("/sync/delete-user-file", dependencies=[Depends(require_token)])
def delete_user_file(body: FileIdBody, store: FileStore = Depends(get_file_store)):
    before = _call(lambda: store.for_id_and_delete(body.file_id, hard_delete=False))
    if not before.deleted:
        metrics.record_tombstone()
    return _ok()


def _client_key_id(encrypt_meta: str) -> Optional[str]:
    try:
        meta = json.loads(encrypt_meta)
    except ValueError:
        return None
    return meta.get("keyId") if isinstance(meta, dict) else None


def _check_in_step(record: FileRecord, group_id: Optional[str], encrypt_meta: str) -> None:
    """Reject uploads from a client whose copy predates a reset or a new key."""
    if group_id and group_id != record.group_id:
        raise UploadRejectedError(record.file_id, "file-has-reset")

    stored_key_id = record.encryption.key_id if record.encryption else None
    if _client_key_id(encrypt_meta) != stored_key_id:
        raise UploadRejectedError(record.file_id, "file-has-new-key")


def _store_upload(
    store: FileStore,
    file_id: str,
    name: str,
    group_id: Optional[str],
    encrypt_meta: str,
    sync_version: int,
) -> str:
    try:
        record = _call(lambda: store.for_id(file_id))
    except RecordNotFoundError:
        new_group = str(uuid.uuid4())
        new_file = NewFile(
            file_id=file_id,
            group_id=new_group,
            sync_version=sync_version,
            encrypt_meta=encrypt_meta,
            name=name,
        )
        try:
            _call(lambda: store.add(new_file))
            return new_group
        except IntegrityError:
            # Another device created it between the lookup and the insert
            logger.info("event=upload_create_race file_id=%s", file_id)
            record = _call(lambda: store.for_id(file_id))

    _check_in_step(record, group_id, encrypt_meta)

    if not group_id:
        # The file was reset, so it needs a new sync group
        group_id = str(uuid.uuid4())
        _call(lambda: store.update_group(file_id, group_id))

    _call(lambda: store.update(file_id, sync_version, encrypt_meta, name))
    return group_id


def _stage_and_store(store: FileStore, file_id: str, data: bytes, *args) -> str:
    with staged_blob(file_id, data):
        return _store_upload(store, file_id, *args)


@router.post("/sync/upload-user-file", dependencies=[Depends(require_token)])
async def upload_user_file(
    request: Request,
    file_id: str = Header(..., alias="x-actual-file-id"),
    encrypt_meta: str = Header(..., alias="x-actual-encrypt-meta"),
    name: str = Header("", alias="x-actual-name"),
    group_id: Optional[str] = Header(None, alias="x-actual-group-id"),
    sync_version: int = Header(0, alias="x-actual-format", ge=0),
    store: FileStore = Depends(get_file_store),
):
    data = await request.body()
    size_bytes = len(data)
    if size_bytes > MAX_FILE_SIZE:
        logger.warning(
            "event=upload_rejected reason=max_size file_id=%s size_bytes=%s limit_bytes=%s",
            file_id,
            size_bytes,
            MAX_FILE_SIZE,
        )
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum allowed size is {MAX_FILE_SIZE_MB:.1f} MB.",
        )

    try:
        blob_path(file_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid file id")

    try:
        new_group = await run_in_threadpool(
            _stage_and_store, store, file_id, data, name, group_id, encrypt_meta, sync_version
        )
    except UploadRejectedError:
        metrics.record_upload_rejected()
        raise

    metrics.record_upload(size_bytes)
    logger.info(
        "event=upload_success file_id=%s group_id=%s size_bytes=%s sync_version=%s",
        file_id,
        new_group,
        size_bytes,
        sync_version,
    )
    return {"status": "ok", "groupId": new_group}


@router.get("/sync/download-user-file", dependencies=[Depends(require_token)])
def download_user_file(
    file_id: str = Header(..., alias="x-actual-file-id"),
    store: FileStore = Depends(get_file_store),
):
    _live_record(store, file_id)
    try:
        path = blob_path(file_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid file id")
    if not path.is_file():
        logger.error("event=blob_missing file_id=%s path=%s", file_id, path)
        return JSONResponse(FILE_NOT_FOUND, status_code=404)

    metrics.record_download()
    logger.info("event=file_served file_id=%s", file_id)
    return FileResponse(path, media_type="application/octet-stream", filename=f"{file_id}.blob")


@router.delete("/admin/files/{file_id}", dependencies=[Depends(require_admin)])
def admin_purge_file(file_id: str, store: FileStore = Depends(get_file_store)):
    before = _call(lambda: store.for_id_and_delete(file_id, hard_delete=True))
    remove_blob(file_id)
    metrics.record_purge()
    logger.info("event=file_purged file_id=%s was_tombstoned=%s", file_id, before.deleted)
    return _ok({"fileId": before.file_id, "wasDeleted": before.deleted})


@router.get("/metrics")
def metrics_snapshot(store: FileStore = Depends(get_file_store)):
    payload = {"files": _call(store.count), **metrics.snapshot()}
    response = JSONResponse(payload)
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response


@router.get("/health")
def health(request: Request):
    if not request.app.state.connection.ping():
        return JSONResponse({"status": "error", "reason": "database-unavailable"}, status_code=503)
    return {"status": "ok"}
