from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import logging
import os
from pathlib import Path
import uuid

from budgetsync.config import USER_FILES_DIR

logger = logging.getLogger("budgetsync.blobs")


def _root() -> Path:
    root = Path(USER_FILES_DIR).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def blob_path(file_id: str) -> Path:
    root = _root()
    path = (root / f"file-{file_id}.blob").resolve()
    if path.parent != root:
        raise ValueError(f"Invalid file id {file_id!r}")
    return path


@contextmanager
def staged_blob(file_id: str, data: bytes) -> Iterator[Path]:
    """Write ``data`` beside the blob and swap it in only if the block succeeds.

    The stored body is left untouched when the block raises.
    """
    path = blob_path(file_id)
    tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
        yield tmp_path
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def remove_blob(file_id: str) -> bool:
    try:
        blob_path(file_id).unlink()
    except (ValueError, FileNotFoundError):
        return False
    logger.info("event=blob_removed file_id=%s", file_id)
    return True
