from __future__ import annotations

import logging

from sqlalchemy import delete, func, text, update
from sqlmodel import select

from budgetsync.core.exceptions import NoRecordUpdatedError, RecordNotFoundError
from budgetsync.db import Connection
from budgetsync.models import EncryptionKey, FileRecord, FileRow, NewFile

logger = logging.getLogger("budgetsync.store")


def _update_row(file_id: str, **values):
    return (
        update(FileRow)
        .where(FileRow.id == file_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


class FileStore:
    """Durable metadata for every synchronized budget file.

    Every method runs as one transaction on the shared connection. Lookups
    raise ``RecordNotFoundError`` for unknown ids; mutations raise
    ``NoRecordUpdatedError`` when no row matched. Database errors are not
    retried here.
    """

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def count(self) -> int:
        return int(self._conn.query_one(select(func.count(FileRow.id))))

    def add(self, new_file: NewFile) -> None:
        with self._conn.transaction() as session:
            session.add(FileRow.from_new(new_file))
        logger.info("event=file_added file_id=%s group_id=%s", new_file.file_id, new_file.group_id)

    def for_id(self, file_id: str) -> FileRecord:
        row = self._conn.query_one(select(FileRow).where(FileRow.id == file_id), key=file_id)
        return row.to_record()

    def for_id_and_delete(self, file_id: str, hard_delete: bool = False) -> FileRecord:
        """Return the record as it was before deleting it, in a single transaction.

        ``hard_delete`` removes the row; otherwise the record is tombstoned.
        Concurrent callers queue on the row lock, so only one of them sees
        the record before deletion.
        """
        with self._conn.transaction() as session:
            # no-op write so the read below happens under the write lock
            session.exec(_update_row(file_id, deleted=FileRow.deleted))
            row = session.exec(select(FileRow).where(FileRow.id == file_id)).first()
            if row is None:
                raise RecordNotFoundError(file_id)
            snapshot = row.to_record()

            if hard_delete:
                session.exec(
                    delete(FileRow)
                    .where(FileRow.id == file_id)
                    .execution_options(synchronize_session=False)
                )
            else:
                session.exec(_update_row(file_id, deleted=True))

        logger.info("event=file_deleted file_id=%s hard=%s", file_id, hard_delete)
        return snapshot

    def all(self) -> list[FileRecord]:
        rows = self._conn.query_all(select(FileRow).order_by(text("rowid")))
        return [row.to_record() for row in rows]

    def _mutate(self, file_id: str, **values) -> None:
        if self._conn.execute(_update_row(file_id, **values)) == 0:
            raise NoRecordUpdatedError(file_id)

    def update(self, file_id: str, sync_version: int, encrypt_meta: str, name: str) -> None:
        self._mutate(file_id, sync_version=sync_version, encrypt_meta=encrypt_meta, name=name)

    def update_name(self, file_id: str, name: str) -> None:
        self._mutate(file_id, name=name)

    def update_group(self, file_id: str, group_id: str) -> None:
        self._mutate(file_id, group_id=group_id)

    def clear_group(self, file_id: str) -> None:
        self._mutate(file_id, group_id="")

    def update_encryption(self, file_id: str, salt: str, key_id: str, test: str) -> None:
        self._mutate(file_id, encrypt_salt=salt, encrypt_keyid=key_id, encrypt_test=test)

    def update_encryption_key(self, file_id: str, key: EncryptionKey) -> None:
        self.update_encryption(file_id, key.salt, key.key_id, key.test)

    def delete(self, file_id: str) -> None:
        self._mutate(file_id, deleted=True)
        logger.info("event=file_tombstoned file_id=%s", file_id)
