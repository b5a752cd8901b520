from __future__ import annotations
"""Relational store for folder and file metadata."""
from datetime import datetime, timezone
import logging
from typing import Optional
import uuid

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    and_,
    create_engine,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import RecordConflict, RecordNotFoundError
from .limits import DEFAULT_LIMITS, TransferLimits
from .models import FileRecord, FolderRecord, RecordPage
from .validation import validate_folder_name

LOGGER = logging.getLogger(__name__)

PAGE_SIZE = 20

Cursor = tuple[datetime, str]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _contains_pattern(search: str) -> str:
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class Model(DeclarativeBase):
    pass


class FolderRow(Model):
    __tablename__ = "folders"
    __table_args__ = (
        UniqueConstraint("user_id", "parent_id", "name", name="uq_folders_user_parent_name"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    parent_id = Column(String, ForeignKey("folders.id", ondelete="CASCADE"), nullable=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    def to_record(self) -> FolderRecord:
        return FolderRecord(
            id=self.id,
            name=self.name,
            parent_id=self.parent_id,
            user_id=self.user_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class FileRow(Model):
    __tablename__ = "files"
    __table_args__ = (
        UniqueConstraint("user_id", "folder_id", "name", name="uq_files_user_folder_name"),
        Index("idx_files_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    original_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    size_bytes = Column(BigInteger, nullable=False)
    folder_id = Column(String, ForeignKey("folders.id", ondelete="CASCADE"), nullable=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    s3_key = Column(String, nullable=False)
    s3_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    def to_record(self) -> FileRecord:
        return FileRecord(
            id=self.id,
            name=self.name,
            original_name=self.original_name,
            mime_type=self.mime_type,
            size_bytes=self.size_bytes,
            folder_id=self.folder_id,
            user_id=self.user_id,
            s3_key=self.s3_key,
            s3_url=self.s3_url,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def create_record_store(database_url: str = "sqlite://", *, limits: TransferLimits = DEFAULT_LIMITS) -> RecordStore:
    """Build a store for ``database_url`` and create its tables."""

    engine_kwargs: dict = {}
    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection so every thread sees the same in-memory database
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True
    engine = create_engine(database_url, **engine_kwargs)
    store = RecordStore(engine, limits=limits)
    store.create_tables()
    return store


class RecordStore:
    """Owner-scoped CRUD for folders and files.

    Sibling names are unique per ``(user_id, parent)``. The check is done
    explicitly as well as by constraint because SQL unique constraints
    treat ``NULL`` parents as distinct.
    """

    def __init__(self, engine: Engine, *, limits: TransferLimits = DEFAULT_LIMITS):
        self._engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)
        self._limits = limits

    def create_tables(self) -> None:
        Model.metadata.create_all(self._engine)

    def create_folder(self, *, user_id: str, name: str, parent_id: Optional[str] = None) -> FolderRecord:
        validate_folder_name(name, self._limits).raise_for_rejection()
        cleaned = name.strip()
        with self._session_factory() as session, session.begin():
            if parent_id is not None:
                self._get_folder_row(session, parent_id, user_id)
            self._ensure_unique_folder(session, user_id, parent_id, cleaned)
            row = FolderRow(name=cleaned, parent_id=parent_id, user_id=user_id)
            session.add(row)
            self._flush(session, f"A folder named '{cleaned}' already exists here")
            return row.to_record()

    def get_folder(self, folder_id: str, *, user_id: str) -> FolderRecord:
        with self._session_factory() as session:
            return self._get_folder_row(session, folder_id, user_id).to_record()

    def list_folders(
        self,
        *,
        user_id: str,
        parent_id: Optional[str] = None,
        search: Optional[str] = None,
        cursor: Optional[Cursor] = None,
        limit: int = PAGE_SIZE,
    ) -> RecordPage:
        query = select(FolderRow).where(FolderRow.user_id == user_id)
        if search:
            query = query.where(FolderRow.name.ilike(_contains_pattern(search), escape="\\"))
        elif parent_id is None:
            query = query.where(FolderRow.parent_id.is_(None))
        else:
            query = query.where(FolderRow.parent_id == parent_id)
        return self._page(query, FolderRow, cursor, limit)

    def move_folder(self, folder_id: str, *, user_id: str, destination_id: Optional[str]) -> FolderRecord:
        with self._session_factory() as session, session.begin():
            row = self._get_folder_row(session, folder_id, user_id)
            if destination_id is not None:
                self._get_folder_row(session, destination_id, user_id)
                if folder_id in self._ancestor_ids(session, destination_id) | {destination_id}:
                    raise ValueError("A folder cannot be moved into itself or one of its subfolders")
            self._ensure_unique_folder(session, user_id, destination_id, row.name, exclude_id=row.id)
            row.parent_id = destination_id
            self._flush(session, f"A folder named '{row.name}' already exists there")
            return row.to_record()

    def delete_folder(self, folder_id: str, *, user_id: str) -> list[FileRecord]:
        """Delete a folder subtree and return the file records removed with it."""

        with self._session_factory() as session, session.begin():
            root = self._get_folder_row(session, folder_id, user_id)
            folder_ids = self._subtree_ids(session, root.id, user_id)
            file_rows = session.scalars(
                select(FileRow).where(FileRow.user_id == user_id, FileRow.folder_id.in_(folder_ids))
            ).all()
            removed = [row.to_record() for row in file_rows]
            for row in file_rows:
                session.delete(row)
            session.flush()
            # leaves first so no row is removed by a database-side cascade
            for child_id in reversed(folder_ids):
                session.delete(session.get(FolderRow, child_id))
                session.flush()
        LOGGER.debug("Deleted %d folder(s) and %d file(s)", len(folder_ids), len(removed))
        return removed

    def create_file(
        self,
        *,
        user_id: str,
        s3_key: str,
        name: str,
        mime_type: Optional[str],
        size_bytes: int,
        folder_id: Optional[str] = None,
        s3_url: Optional[str] = None,
    ) -> FileRecord:
        with self._session_factory() as session, session.begin():
            if folder_id is not None:
                self._get_folder_row(session, folder_id, user_id)
            self._ensure_unique_file(session, user_id, folder_id, name)
            row = FileRow(
                name=name,
                original_name=name,
                mime_type=mime_type,
                size_bytes=size_bytes,
                folder_id=folder_id,
                user_id=user_id,
                s3_key=s3_key,
                s3_url=s3_url,
            )
            session.add(row)
            self._flush(session, f"A file named '{name}' already exists in this folder")
            return row.to_record()

    def get_file(self, file_id: str, *, user_id: str) -> FileRecord:
        with self._session_factory() as session:
            return self._get_file_row(session, file_id, user_id).to_record()

    def list_files(
        self,
        *,
        user_id: str,
        folder_id: Optional[str] = None,
        search: Optional[str] = None,
        cursor: Optional[Cursor] = None,
        limit: int = PAGE_SIZE,
    ) -> RecordPage:
        """List one folder, or search every folder when ``search`` is given."""

        query = select(FileRow).where(FileRow.user_id == user_id)
        if search:
            query = query.where(FileRow.name.ilike(_contains_pattern(search), escape="\\"))
        elif folder_id is None:
            query = query.where(FileRow.folder_id.is_(None))
        else:
            query = query.where(FileRow.folder_id == folder_id)
        return self._page(query, FileRow, cursor, limit)

    def move_file(self, file_id: str, *, user_id: str, destination_folder_id: Optional[str]) -> FileRecord:
        with self._session_factory() as session, session.begin():
            row = self._get_file_row(session, file_id, user_id)
            if destination_folder_id is not None:
                self._get_folder_row(session, destination_folder_id, user_id)
            self._ensure_unique_file(session, user_id, destination_folder_id, row.name, exclude_id=row.id)
            row.folder_id = destination_folder_id
            self._flush(session, f"A file named '{row.name}' already exists there")
            return row.to_record()

    def delete_file(self, file_id: str, *, user_id: str) -> FileRecord:
        with self._session_factory() as session, session.begin():
            row = self._get_file_row(session, file_id, user_id)
            record = row.to_record()
            session.delete(row)
        return record

    def storage_stats(self, *, user_id: str) -> tuple[int, int]:
        """Return ``(file_count, total_bytes)`` for one owner."""

        with self._session_factory() as session:
            count, total = session.execute(
                select(func.count(FileRow.id), func.coalesce(func.sum(FileRow.size_bytes), 0)).where(
                    FileRow.user_id == user_id
                )
            ).one()
        return int(count), int(total)

    def _page(self, query, model, cursor: Optional[Cursor], limit: int) -> RecordPage:
        if cursor is not None:
            created_at, last_id = cursor
            query = query.where(
                or_(
                    model.created_at < created_at,
                    and_(model.created_at == created_at, model.id < last_id),
                )
            )
        query = query.order_by(model.created_at.desc(), model.id.desc()).limit(limit)
        with self._session_factory() as session:
            rows = session.scalars(query).all()
        records = [row.to_record() for row in rows]
        next_cursor = None
        if len(rows) == limit:
            last = rows[-1]
            next_cursor = (last.created_at, last.id)
        return RecordPage(records=records, next_cursor=next_cursor)

    def _get_folder_row(self, session: Session, folder_id: str, user_id: str) -> FolderRow:
        row = session.get(FolderRow, folder_id)
        if row is None or row.user_id != user_id:
            raise RecordNotFoundError(f"Folder '{folder_id}' does not exist")
        return row

    def _get_file_row(self, session: Session, file_id: str, user_id: str) -> FileRow:
        row = session.get(FileRow, file_id)
        if row is None or row.user_id != user_id:
            raise RecordNotFoundError(f"File '{file_id}' does not exist")
        return row

    def _ensure_unique_folder(
        self,
        session: Session,
        user_id: str,
        parent_id: Optional[str],
        name: str,
        *,
        exclude_id: Optional[str] = None,
    ) -> None:
        query = select(FolderRow.id).where(FolderRow.user_id == user_id, FolderRow.name == name)
        query = query.where(
            FolderRow.parent_id.is_(None) if parent_id is None else FolderRow.parent_id == parent_id
        )
        if exclude_id:
            query = query.where(FolderRow.id != exclude_id)
        if session.scalars(query).first() is not None:
            raise RecordConflict(f"A folder named '{name}' already exists here", status_code=409)

    def _ensure_unique_file(
        self,
        session: Session,
        user_id: str,
        folder_id: Optional[str],
        name: str,
        *,
        exclude_id: Optional[str] = None,
    ) -> None:
        query = select(FileRow.id).where(FileRow.user_id == user_id, FileRow.name == name)
        query = query.where(
            FileRow.folder_id.is_(None) if folder_id is None else FileRow.folder_id == folder_id
        )
        if exclude_id:
            query = query.where(FileRow.id != exclude_id)
        if session.scalars(query).first() is not None:
            raise RecordConflict(f"A file named '{name}' already exists in this folder", status_code=409)

    def _ancestor_ids(self, session: Session, folder_id: str) -> set[str]:
        ancestors: set[str] = set()
        current = session.get(FolderRow, folder_id)
        while current is not None and current.parent_id and current.parent_id not in ancestors:
            ancestors.add(current.parent_id)
            current = session.get(FolderRow, current.parent_id)
        return ancestors

    def _subtree_ids(self, session: Session, root_id: str, user_id: str) -> list[str]:
        ordered = [root_id]
        frontier = [root_id]
        while frontier:
            children = session.scalars(
                select(FolderRow.id).where(FolderRow.user_id == user_id, FolderRow.parent_id.in_(frontier))
            ).all()
            frontier = [child for child in children if child not in ordered]
            ordered.extend(frontier)
        return ordered

    def _flush(self, session: Session, conflict_message: str) -> None:
        try:
            session.flush()
        except IntegrityError as exc:
            raise RecordConflict(conflict_message, status_code=409) from exc
