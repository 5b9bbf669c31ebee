from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field


class Lifecycle(str, Enum):
    LIVE = "live"
    TOMBSTONED = "tombstoned"


class EncryptionKey(SQLModel):
    """Key-confirmation values a client uses to check its passphrase-derived key."""

    salt: str
    key_id: str
    test: str


class NewFile(SQLModel):
    file_id: str
    group_id: str = ""
    sync_version: int = Field(default=0, ge=0)
    encrypt_meta: str
    name: str


class FileRecord(SQLModel):
    file_id: str
    group_id: str = ""
    sync_version: int = 0
    encrypt_meta: str
    encryption: Optional[EncryptionKey] = None
    name: str
    lifecycle: Lifecycle = Lifecycle.LIVE

    @property
    def deleted(self) -> bool:
        return self.lifecycle is Lifecycle.TOMBSTONED


class FileRow(SQLModel, table=True):
    __tablename__ = "files"

    id: str = Field(primary_key=True)
    group_id: Optional[str] = Field(default="", nullable=True)  # NULL on rows reset by older servers
    sync_version: int = Field(default=0)
    encrypt_meta: str
    encrypt_salt: Optional[str] = Field(default=None, nullable=True)
    encrypt_keyid: Optional[str] = Field(default=None, nullable=True)
    encrypt_test: Optional[str] = Field(default=None, nullable=True)
    name: str
    deleted: bool = Field(default=False)

    @classmethod
    def from_new(cls, new_file: NewFile) -> "FileRow":
        return cls(
            id=new_file.file_id,
            group_id=new_file.group_id,
            sync_version=new_file.sync_version,
            encrypt_meta=new_file.encrypt_meta,
            name=new_file.name,
        )

    def to_record(self) -> FileRecord:
        encryption = None
        if None not in (self.encrypt_salt, self.encrypt_keyid, self.encrypt_test):
            encryption = EncryptionKey(
                salt=self.encrypt_salt, key_id=self.encrypt_keyid, test=self.encrypt_test
            )
        return FileRecord(
            file_id=self.id,
            group_id=self.group_id or "",
            sync_version=self.sync_version,
            encrypt_meta=self.encrypt_meta,
            encryption=encryption,
            name=self.name,
            lifecycle=Lifecycle.TOMBSTONED if self.deleted else Lifecycle.LIVE,
        )
