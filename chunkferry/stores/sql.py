"""SQLAlchemy-backed session store and metadata catalog.

Works with any async driver SQLAlchemy supports; ``sqlite+aiosqlite`` for
single-node deployments and tests, ``postgresql+asyncpg`` in production.

Chunk recording is a compare-and-swap on the ``version`` column:

    UPDATE upload_sessions SET ..., version = :expected + 1
    WHERE session_id = :id AND storage_class = :class AND version = :expected

A zero row count means another writer got there first.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..errors import (
    ConflictError,
    DuplicateRecordError,
    MetadataStoreError,
    NotFoundError,
    SessionStoreError,
    VersionConflictError,
)
from ..models import (
    FinalizedFile,
    MetadataState,
    SessionStatus,
    StorageClass,
    UploadSession,
)
from .base import MetadataStore, SessionStore

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all tables"""


class UploadSessionRow(Base):
    """Upload session with its chunk slots stored as a JSON array.

    The same content may be in flight in both storage classes, so the key
    is (session_id, storage_class).
    """

    __tablename__ = "upload_sessions"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_hash: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    folder_path: Mapped[str] = mapped_column(String(512), nullable=False)
    bucket_name: Mapped[str] = mapped_column(String(128), nullable=False)
    storage_class: Mapped[str] = mapped_column(String(16), primary_key=True)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    uploaded_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    chunk_paths: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    metadata_state: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    final_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Optimistic concurrency control
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class FileMetadataRow(Base):
    """Finalized file record. One row per (content_hash, storage_class)."""

    __tablename__ = "file_metadata"
    __table_args__ = (
        UniqueConstraint("content_hash", "storage_class", name="uq_file_metadata_hash_class"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    content_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    bucket_name: Mapped[str] = mapped_column(String(128), nullable=False)
    storage_class: Mapped[str] = mapped_column(String(16), nullable=False)
    folder_path: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    visit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


def create_session_maker(
    database_url: str, **engine_kwargs: Any
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(database_url, echo=False, **engine_kwargs)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session(
    session_maker: async_sessionmaker[AsyncSession],
    read_only: bool = False,
) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        try:
            yield session
            if not read_only:
                await session.commit()
        except Exception:
            await session.rollback()
            raise


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _session_values(session: UploadSession) -> dict[str, Any]:
    return {
        "file_name": session.file_name,
        "file_hash": session.file_hash,
        "file_size": session.file_size,
        "content_type": session.content_type,
        "folder_path": session.folder_path,
        "bucket_name": session.bucket_name,
        "storage_class": session.storage_class.value,
        "total_chunks": session.total_chunks,
        "uploaded_count": session.uploaded_count,
        "chunk_paths": list(session.chunk_paths),
        "status": session.status.value,
        "metadata_state": session.metadata_state.value if session.metadata_state else None,
        "final_path": session.final_path,
        "expires_at": session.expires_at,
        "created_at": session.created_at,
        "updated_at": session.updated_at,
    }


def _session_from_row(row: UploadSessionRow) -> UploadSession:
    return UploadSession(
        session_id=row.session_id,
        file_name=row.file_name,
        file_hash=row.file_hash,
        file_size=row.file_size,
        content_type=row.content_type,
        folder_path=row.folder_path,
        bucket_name=row.bucket_name,
        storage_class=StorageClass(row.storage_class),
        total_chunks=row.total_chunks,
        chunk_paths=list(row.chunk_paths or []),
        status=SessionStatus(row.status),
        metadata_state=MetadataState(row.metadata_state) if row.metadata_state else None,
        final_path=row.final_path,
        expires_at=_aware(row.expires_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        version=row.version,
    )


def _record_from_row(row: FileMetadataRow) -> FinalizedFile:
    return FinalizedFile(
        file_path=row.file_path,
        original_filename=row.original_filename,
        file_size=row.file_size,
        content_type=row.content_type,
        content_hash=row.content_hash,
        bucket_name=row.bucket_name,
        storage_class=StorageClass(row.storage_class),
        folder_path=row.folder_path,
        created_at=_aware(row.created_at),
        last_accessed_at=_aware(row.last_accessed_at),
        visit_count=row.visit_count,
    )


class SqlSessionStore(SessionStore):
    """Session store on the ``upload_sessions`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def get(self, session_id: str, storage_class: StorageClass) -> UploadSession | None:
        try:
            async with get_session(self._session_maker, read_only=True) as db:
                row = await db.get(UploadSessionRow, (session_id, storage_class.value))
                return _session_from_row(row) if row else None
        except SQLAlchemyError as e:
            raise SessionStoreError(f"Failed to load session {session_id}: {e}") from e

    async def create(self, session: UploadSession) -> UploadSession:
        try:
            async with get_session(self._session_maker) as db:
                db.add(
                    UploadSessionRow(
                        session_id=session.session_id,
                        version=0,
                        **_session_values(session),
                    )
                )
                await db.flush()
        except IntegrityError as e:
            raise ConflictError(f"Session already exists: {session.session_id}") from e
        except SQLAlchemyError as e:
            raise SessionStoreError(
                f"Failed to create session {session.session_id}: {e}"
            ) from e
        return session.model_copy(update={"version": 0})

    async def replace(self, session: UploadSession, expected_version: int) -> UploadSession:
        try:
            async with get_session(self._session_maker) as db:
                result = await db.execute(
                    update(UploadSessionRow)
                    .where(
                        UploadSessionRow.session_id == session.session_id,
                        UploadSessionRow.storage_class == session.storage_class.value,
                        UploadSessionRow.version == expected_version,  # Atomic version check
                    )
                    .values(version=expected_version + 1, **_session_values(session))
                )
                if result.rowcount == 0:
                    exists = await db.get(
                        UploadSessionRow, (session.session_id, session.storage_class.value)
                    )
                    if exists is None:
                        raise NotFoundError("Session", session.session_id)
                    raise VersionConflictError(session.session_id, expected_version)
        except SQLAlchemyError as e:
            raise SessionStoreError(
                f"Failed to update session {session.session_id}: {e}"
            ) from e
        return session.model_copy(update={"version": expected_version + 1})

    async def delete(self, session_id: str, storage_class: StorageClass) -> bool:
        try:
            async with get_session(self._session_maker) as db:
                result = await db.execute(
                    delete(UploadSessionRow).where(
                        UploadSessionRow.session_id == session_id,
                        UploadSessionRow.storage_class == storage_class.value,
                    )
                )
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise SessionStoreError(f"Failed to delete session {session_id}: {e}") from e

    async def list_sessions(
        self, statuses: list[SessionStatus] | None = None
    ) -> list[UploadSession]:
        query = select(UploadSessionRow).order_by(UploadSessionRow.created_at)
        if statuses is not None:
            query = query.where(UploadSessionRow.status.in_([s.value for s in statuses]))
        try:
            async with get_session(self._session_maker, read_only=True) as db:
                rows = (await db.execute(query)).scalars().all()
                return [_session_from_row(row) for row in rows]
        except SQLAlchemyError as e:
            raise SessionStoreError(f"Failed to list sessions: {e}") from e


class SqlMetadataStore(MetadataStore):
    """Metadata catalog on the ``file_metadata`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def save(self, record: FinalizedFile) -> None:
        try:
            async with get_session(self._session_maker) as db:
                db.add(
                    FileMetadataRow(
                        file_path=record.file_path,
                        original_filename=record.original_filename,
                        file_size=record.file_size,
                        content_type=record.content_type,
                        content_hash=record.content_hash,
                        bucket_name=record.bucket_name,
                        storage_class=record.storage_class.value,
                        folder_path=record.folder_path,
                        created_at=record.created_at,
                        last_accessed_at=record.last_accessed_at,
                        visit_count=record.visit_count,
                    )
                )
                await db.flush()
        except IntegrityError as e:
            raise DuplicateRecordError(
                record.content_hash, record.storage_class.value
            ) from e
        except SQLAlchemyError as e:
            raise MetadataStoreError(f"Failed to save {record.file_path}: {e}") from e

    async def find_by_hash(
        self, content_hash: str, storage_class: StorageClass
    ) -> FinalizedFile | None:
        query = select(FileMetadataRow).where(
            FileMetadataRow.content_hash == content_hash,
            FileMetadataRow.storage_class == storage_class.value,
        )
        try:
            async with get_session(self._session_maker, read_only=True) as db:
                row = (await db.execute(query)).scalar_one_or_none()
                return _record_from_row(row) if row else None
        except SQLAlchemyError as e:
            raise MetadataStoreError(f"Failed to look up {content_hash}: {e}") from e

    async def delete_by_hash(self, content_hash: str, storage_class: StorageClass) -> int:
        try:
            async with get_session(self._session_maker) as db:
                result = await db.execute(
                    delete(FileMetadataRow).where(
                        FileMetadataRow.content_hash == content_hash,
                        FileMetadataRow.storage_class == storage_class.value,
                    )
                )
                return result.rowcount
        except SQLAlchemyError as e:
            raise MetadataStoreError(f"Failed to delete {content_hash}: {e}") from e

    async def list_all(self, storage_class: StorageClass) -> list[FinalizedFile]:
        query = (
            select(FileMetadataRow)
            .where(FileMetadataRow.storage_class == storage_class.value)
            .order_by(FileMetadataRow.created_at)
        )
        try:
            async with get_session(self._session_maker, read_only=True) as db:
                rows = (await db.execute(query)).scalars().all()
                return [_record_from_row(row) for row in rows]
        except SQLAlchemyError as e:
            raise MetadataStoreError(f"Failed to list {storage_class.value} files: {e}") from e

    async def update(self, record: FinalizedFile) -> int:
        try:
            async with get_session(self._session_maker) as db:
                result = await db.execute(
                    update(FileMetadataRow)
                    .where(
                        FileMetadataRow.content_hash == record.content_hash,
                        FileMetadataRow.storage_class == record.storage_class.value,
                    )
                    .values(
                        last_accessed_at=record.last_accessed_at,
                        visit_count=record.visit_count,
                    )
                )
                return result.rowcount
        except SQLAlchemyError as e:
            raise MetadataStoreError(f"Failed to update {record.file_path}: {e}") from e
