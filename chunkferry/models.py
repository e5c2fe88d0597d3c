"""Pydantic models for upload sessions, finalized files and store listings.

Sessions are treated as values: every mutation produces a new instance
through one of the ``with_*`` helpers, and the session store swaps it in
under an optimistic version check.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing_extensions import Self

from .types import ByteSize, ChunkCount, FileHash, FileName, FolderPath, SessionId


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enum Classes
# =============================================================================


class StorageClass(str, Enum):
    """Storage class of a file."""

    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"


class SessionStatus(str, Enum):
    """Upload session lifecycle state."""

    INIT = "INIT"
    UPLOADING = "UPLOADING"
    READY_TO_MERGE = "READY_TO_MERGE"
    MERGING = "MERGING"
    MERGED = "MERGED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        """No transition leaves a terminal state."""
        return self in _TERMINAL_STATUSES

    def can_transition_to(self, target: SessionStatus) -> bool:
        return target in _TRANSITIONS[self]


_TERMINAL_STATUSES = frozenset(
    {SessionStatus.MERGED, SessionStatus.FAILED, SessionStatus.EXPIRED}
)

# MERGING may fall back to READY_TO_MERGE (transient compose failure) or
# UPLOADING (recorded chunks missing from the store).
_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.INIT: frozenset(
        {
            SessionStatus.UPLOADING,
            SessionStatus.READY_TO_MERGE,
            SessionStatus.FAILED,
            SessionStatus.EXPIRED,
        }
    ),
    SessionStatus.UPLOADING: frozenset(
        {SessionStatus.READY_TO_MERGE, SessionStatus.FAILED, SessionStatus.EXPIRED}
    ),
    SessionStatus.READY_TO_MERGE: frozenset(
        {SessionStatus.MERGING, SessionStatus.FAILED, SessionStatus.EXPIRED}
    ),
    SessionStatus.MERGING: frozenset(
        {
            SessionStatus.MERGED,
            SessionStatus.FAILED,
            SessionStatus.EXPIRED,
            SessionStatus.READY_TO_MERGE,
            SessionStatus.UPLOADING,
        }
    ),
    SessionStatus.MERGED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.EXPIRED: frozenset(),
}


class MetadataState(str, Enum):
    """Outcome of the asynchronous metadata commit for a merged session."""

    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    ORPHANED = "ORPHANED"


# =============================================================================
# Session Models
# =============================================================================


class UploadSession(BaseModel):
    """In-flight upload session and its per-chunk progress.

    ``chunk_paths`` always has exactly ``total_chunks`` slots; slot ``i``
    holds the store path of chunk ``i + 1`` or ``None``. The uploaded count
    is derived from the slots so it can never drift from them.
    """

    session_id: SessionId
    file_name: FileName
    file_hash: FileHash
    file_size: ByteSize
    content_type: str | None = None
    folder_path: FolderPath
    bucket_name: str = Field(min_length=1)
    storage_class: StorageClass
    total_chunks: ChunkCount
    chunk_paths: list[str | None] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.INIT
    metadata_state: MetadataState | None = None
    final_path: str | None = None
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    version: int = Field(default=0, ge=0)

    @field_validator("chunk_paths")
    @classmethod
    def _blank_slots_are_empty(cls, value: list[str | None]) -> list[str | None]:
        return [path or None for path in value]

    @model_validator(mode="after")
    def _pad_chunk_paths(self) -> Self:
        if len(self.chunk_paths) > self.total_chunks:
            raise ValueError(
                f"chunk_paths has {len(self.chunk_paths)} slots "
                f"but total_chunks is {self.total_chunks}"
            )
        missing = self.total_chunks - len(self.chunk_paths)
        if missing:
            self.chunk_paths = [*self.chunk_paths, *([None] * missing)]
        return self

    @property
    def uploaded_count(self) -> int:
        return sum(1 for path in self.chunk_paths if path)

    @property
    def uploaded_chunks(self) -> list[int]:
        """1-based numbers of the chunks already recorded."""
        return [i + 1 for i, path in enumerate(self.chunk_paths) if path]

    @property
    def missing_chunks(self) -> list[int]:
        """1-based numbers of the chunks not yet recorded."""
        return [i + 1 for i, path in enumerate(self.chunk_paths) if not path]

    @property
    def is_complete(self) -> bool:
        return self.uploaded_count == self.total_chunks

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def chunk_path(self, chunk_number: int) -> str | None:
        return self.chunk_paths[chunk_number - 1]

    def ordered_chunk_paths(self) -> list[str]:
        """Chunk paths in chunk order. Only valid for a complete session."""
        if not self.is_complete:
            raise ValueError(f"Session {self.session_id} is missing {self.missing_chunks}")
        return [path for path in self.chunk_paths if path]

    def with_chunk(self, chunk_number: int, path: str, now: datetime) -> UploadSession:
        """Fill one slot and recompute the status from the new counts."""
        paths = list(self.chunk_paths)
        paths[chunk_number - 1] = path
        complete = all(paths)
        return self.model_copy(
            update={
                "chunk_paths": paths,
                "status": SessionStatus.READY_TO_MERGE
                if complete
                else SessionStatus.UPLOADING,
                "updated_at": now,
            }
        )

    def without_chunks(self, chunk_numbers: list[int], now: datetime) -> UploadSession:
        """Clear slots whose objects were lost, reopening the session for upload."""
        paths = list(self.chunk_paths)
        for number in chunk_numbers:
            paths[number - 1] = None
        return self.model_copy(
            update={
                "chunk_paths": paths,
                "status": SessionStatus.UPLOADING,
                "updated_at": now,
            }
        )

    def with_status(self, status: SessionStatus, now: datetime, **changes) -> UploadSession:
        return self.model_copy(update={"status": status, "updated_at": now, **changes})


class SessionView(BaseModel):
    """What the caller sees of a session: status and resumable progress."""

    session_id: str
    status: SessionStatus
    total_chunks: int
    uploaded_count: int
    uploaded_chunks: list[int] = Field(default_factory=list)
    expires_at: datetime | None = None
    file_path: str | None = None
    instant: bool = False
    """True when the upload short-circuited because the content already exists."""

    @classmethod
    def from_session(cls, session: UploadSession) -> SessionView:
        return cls(
            session_id=session.session_id,
            status=session.status,
            total_chunks=session.total_chunks,
            uploaded_count=session.uploaded_count,
            uploaded_chunks=session.uploaded_chunks,
            expires_at=session.expires_at,
            file_path=session.final_path,
        )

    @classmethod
    def instant_upload(
        cls, session_id: str, total_chunks: int, record: FinalizedFile
    ) -> SessionView:
        """Synthetic MERGED view for content that is already stored."""
        return cls(
            session_id=session_id,
            status=SessionStatus.MERGED,
            total_chunks=total_chunks,
            uploaded_count=total_chunks,
            uploaded_chunks=list(range(1, total_chunks + 1)),
            file_path=record.file_path,
            instant=True,
        )


# =============================================================================
# File Models
# =============================================================================


class FinalizedFile(BaseModel):
    """Metadata catalog record for a composed file.

    At most one record exists per (content_hash, storage_class).
    """

    file_path: str = Field(min_length=1)
    original_filename: FileName
    file_size: ByteSize
    content_type: str | None = None
    content_hash: FileHash
    bucket_name: str
    storage_class: StorageClass
    folder_path: str
    created_at: datetime = Field(default_factory=utc_now)
    last_accessed_at: datetime | None = None
    visit_count: int = Field(default=0, ge=0)

    def touched(self, now: datetime) -> FinalizedFile:
        """Copy with one more recorded access."""
        return self.model_copy(
            update={"last_accessed_at": now, "visit_count": self.visit_count + 1}
        )


class StoreObject(BaseModel):
    """One entry of an object store listing. Never persisted."""

    path: str
    size: int = 0
    last_modified: datetime


class FileDetail(BaseModel):
    """Listing entry for a finalized file with its access URL."""

    name: str
    file_path: str
    size: int
    content_type: str | None = None
    visit_count: int = 0
    url: str


class MergedSignal(BaseModel):
    """Immutable completion message emitted once compose has succeeded."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    file: FinalizedFile
    chunk_paths: tuple[str, ...]
    emitted_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_session(cls, session: UploadSession, emitted_at: datetime) -> MergedSignal:
        """Rebuild the signal of a merged session whose commit never finished."""
        if session.status != SessionStatus.MERGED or not session.final_path:
            raise ValueError(f"Session {session.session_id} has no merged file")
        return cls(
            session_id=session.session_id,
            file=FinalizedFile(
                file_path=session.final_path,
                original_filename=session.file_name,
                file_size=session.file_size,
                content_type=session.content_type,
                content_hash=session.file_hash,
                bucket_name=session.bucket_name,
                storage_class=session.storage_class,
                folder_path=session.folder_path,
                created_at=session.updated_at,
                last_accessed_at=session.updated_at,
            ),
            chunk_paths=tuple(session.ordered_chunk_paths()),
            emitted_at=emitted_at,
        )

    @property
    def bucket_name(self) -> str:
        return self.file.bucket_name


class StorageProfile(BaseModel):
    """Capabilities of one storage class: its bucket and URL visibility."""

    model_config = ConfigDict(frozen=True)

    storage_class: StorageClass
    bucket_name: str = Field(min_length=1)
    public_base_url: str | None = None

    @model_validator(mode="after")
    def _public_needs_base_url(self) -> Self:
        if self.storage_class == StorageClass.PUBLIC and not self.public_base_url:
            raise ValueError("PUBLIC storage profile requires public_base_url")
        return self

    @property
    def is_public(self) -> bool:
        """Objects are directly URL-addressable without signing."""
        return self.storage_class == StorageClass.PUBLIC

    def public_url(self, path: str) -> str:
        if not self.public_base_url:
            raise ValueError(f"{self.storage_class.value} objects have no public URL")
        return f"{self.public_base_url.rstrip('/')}/{self.bucket_name}/{path}"


# =============================================================================
# Background Job Reports
# =============================================================================


class PipelineOutcome(BaseModel):
    """Result of handling one completion signal."""

    session_id: str
    file_path: str
    metadata_state: MetadataState
    chunks_deleted: bool


class SweepReport(BaseModel):
    """Result of one store sweep over a storage class bucket."""

    storage_class: StorageClass
    bucket_name: str
    scanned: int = 0
    deleted: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


class SessionSweepReport(BaseModel):
    """Sessions expired, resubmitted and deleted by the session sweep."""

    expired: list[str] = Field(default_factory=list)
    resubmitted: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)


class ReconcileReport(BaseModel):
    """Everything one reconciler pass did."""

    sessions: SessionSweepReport = Field(default_factory=SessionSweepReport)
    stale_chunks: list[SweepReport] = Field(default_factory=list)
    orphans: list[SweepReport] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
