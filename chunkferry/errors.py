"""Error types for upload sessions, merges and the backing stores."""

from __future__ import annotations


class ChunkFerryError(Exception):
    """Base class for chunkferry errors."""


# =============================================================================
# Validation errors (returned synchronously, never retried)
# =============================================================================


class NotFoundError(ChunkFerryError):
    """Unknown session or file."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class InvalidArgumentError(ChunkFerryError):
    """Bad chunk number, hash mismatch, wrong storage class or unsafe path."""


class PreconditionFailedError(ChunkFerryError):
    """Operation attempted before the session allows it.

    Carries the current progress so the caller can decide whether to keep
    polling or re-upload.
    """

    def __init__(
        self,
        message: str,
        session_id: str,
        status: str,
        uploaded_count: int,
        total_chunks: int,
    ):
        super().__init__(
            f"{message} (session={session_id}, status={status}, "
            f"uploaded={uploaded_count}/{total_chunks})"
        )
        self.session_id = session_id
        self.status = status
        self.uploaded_count = uploaded_count
        self.total_chunks = total_chunks


class SessionClosedError(PreconditionFailedError):
    """Session is terminal, expired or merging and no longer accepts chunks."""


class MissingChunksError(PreconditionFailedError):
    """Recorded chunks are absent from the object store."""

    def __init__(
        self,
        session_id: str,
        status: str,
        uploaded_count: int,
        total_chunks: int,
        missing_chunks: list[int],
    ):
        super().__init__(
            f"Chunks missing from store: {missing_chunks}",
            session_id=session_id,
            status=status,
            uploaded_count=uploaded_count,
            total_chunks=total_chunks,
        )
        self.missing_chunks = missing_chunks


class ConflictError(ChunkFerryError):
    """Duplicate terminal operation or lost concurrent update."""


class VersionConflictError(ConflictError):
    """Optimistic version check failed on a session update."""

    def __init__(self, session_id: str, expected_version: int):
        super().__init__(
            f"Session {session_id} changed concurrently (expected version {expected_version})"
        )
        self.session_id = session_id
        self.expected_version = expected_version


# =============================================================================
# Object store errors
# =============================================================================


class StoreError(ChunkFerryError):
    """Base exception for object store operations."""


class ObjectNotFoundError(StoreError):
    """Object or bucket not found in the store."""

    def __init__(self, bucket: str, path: str):
        super().__init__(f"Object not found: {bucket}/{path}")
        self.bucket = bucket
        self.path = path


class TransientStoreError(StoreError):
    """Retryable store failure (network, throttling, server error)."""


class PermanentStoreError(StoreError):
    """The store rejected the request; retrying will not help."""


class PartInvalidError(PermanentStoreError):
    """Compose rejected a source part (too small, wrong order, corrupt)."""


class SourceMissingError(PermanentStoreError):
    """A compose source vanished between validation and compose."""


class MergeFailedError(ChunkFerryError):
    """Compose failed transiently; the caller may retry the merge."""

    def __init__(self, session_id: str, reason: str):
        super().__init__(f"Merge failed for session {session_id}: {reason}")
        self.session_id = session_id


class SessionStoreError(ChunkFerryError):
    """Session store backend failure."""


# =============================================================================
# Metadata store errors
# =============================================================================


class MetadataStoreError(ChunkFerryError):
    """Base exception for metadata catalog operations."""


class DuplicateRecordError(MetadataStoreError):
    """A record already exists for this (content hash, storage class)."""

    def __init__(self, content_hash: str, storage_class: str):
        super().__init__(f"Record already exists: {storage_class}/{content_hash}")
        self.content_hash = content_hash
        self.storage_class = storage_class


class MetadataPersistFailure(MetadataStoreError):
    """Metadata could not be persisted after every retry attempt."""

    def __init__(self, path: str, attempts: int):
        super().__init__(f"Metadata persist failed after {attempts} attempts: {path}")
        self.path = path
        self.attempts = attempts
