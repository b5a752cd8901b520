from __future__ import annotations
"""Data models for transfer items and stored file metadata."""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid


class TransferDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class TransferStatus(str, Enum):
    """Lifecycle of a single transfer item."""

    QUEUED = "queued"
    REQUESTING_CREDENTIAL = "requesting_credential"
    TRANSFERRING = "transferring"
    COMMITTING = "committing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.SUCCEEDED, TransferStatus.FAILED)


def new_item_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class TransferCandidate:
    """A local file proposed for upload."""

    display_name: str
    source_location: str
    mime_type: str
    byte_size: int
    destination_container: Optional[str] = None


@dataclass
class FileRecord:
    """Metadata row describing a stored file."""

    id: str
    name: str
    original_name: str
    mime_type: Optional[str]
    size_bytes: int
    folder_id: Optional[str]
    user_id: str
    s3_key: str
    s3_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileRecord:
        return cls(
            id=str(data["id"]),
            name=data["name"],
            original_name=data.get("original_name") or data["name"],
            mime_type=data.get("mime_type"),
            size_bytes=int(data["size_bytes"]),
            folder_id=data.get("folder_id"),
            user_id=data["user_id"],
            s3_key=data["s3_key"],
            s3_url=data.get("s3_url"),
            created_at=_parse_timestamp(data.get("created_at")),
            updated_at=_parse_timestamp(data.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "original_name": self.original_name,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "folder_id": self.folder_id,
            "user_id": self.user_id,
            "s3_key": self.s3_key,
            "s3_url": self.s3_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class FolderRecord:
    """A folder; ``parent_id`` is ``None`` at the top level."""

    id: str
    name: str
    parent_id: Optional[str]
    user_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class RecordPage:
    """One page of a keyset-paginated listing."""

    records: list = field(default_factory=list)
    next_cursor: Optional[tuple[datetime, str]] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


@dataclass
class TransferItem:
    """A queued upload or download and its observable progress."""

    item_id: str
    direction: TransferDirection
    display_name: str
    mime_type: str
    byte_size: int
    source_location: Optional[str] = None
    destination: Optional[str] = None
    destination_container: Optional[str] = None
    object_key: Optional[str] = None
    status: TransferStatus = TransferStatus.QUEUED
    progress_fraction: float = 0.0
    error_detail: Optional[str] = None
    record: Optional[FileRecord] = None
    selected: bool = False

    @classmethod
    def for_upload(cls, candidate: TransferCandidate) -> TransferItem:
        return cls(
            item_id=new_item_id(),
            direction=TransferDirection.UPLOAD,
            display_name=candidate.display_name,
            mime_type=candidate.mime_type,
            byte_size=candidate.byte_size,
            source_location=candidate.source_location,
            destination_container=candidate.destination_container,
        )

    @classmethod
    def for_download(cls, record: FileRecord, destination: str) -> TransferItem:
        return cls(
            item_id=new_item_id(),
            direction=TransferDirection.DOWNLOAD,
            display_name=record.name,
            mime_type=record.mime_type or "application/octet-stream",
            byte_size=record.size_bytes,
            destination=destination,
            destination_container=record.folder_id,
            object_key=record.s3_key,
            record=record,
        )

    @property
    def is_upload(self) -> bool:
        return self.direction is TransferDirection.UPLOAD

    def retry(self) -> TransferItem:
        """Return a fresh queued copy; failed items are never resumed."""

        return replace(
            self,
            item_id=new_item_id(),
            object_key=None if self.is_upload else self.object_key,
            status=TransferStatus.QUEUED,
            progress_fraction=0.0,
            error_detail=None,
            record=None if self.is_upload else self.record,
            selected=False,
        )


@dataclass
class BatchResult:
    """Outcome of one ``run_batch`` call."""

    succeeded: list[TransferItem] = field(default_factory=list)
    failed: list[tuple[TransferItem, Exception]] = field(default_factory=list)
    orphaned_keys: list[str] = field(default_factory=list)

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def failed_items(self) -> list[TransferItem]:
        return [item for item, _ in self.failed]


@dataclass
class DeleteResult:
    """Outcome of deleting records together with their stored objects."""

    deleted_files: list[FileRecord] = field(default_factory=list)
    orphaned_keys: list[str] = field(default_factory=list)

    @property
    def fully_deleted(self) -> bool:
        return not self.orphaned_keys


def _parse_timestamp(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
