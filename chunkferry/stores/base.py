"""Capabilities the upload core consumes.

The core never talks to MinIO or a database directly; it only sees these
interfaces. Implementations translate their backend failures into the
store errors from ``chunkferry.errors`` so the core can choose between
retrying and failing.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import timedelta

from ..models import FinalizedFile, SessionStatus, StorageClass, StoreObject, UploadSession


class ObjectStore(ABC):
    """Object storage with server-side compose.

    All methods raise:
        ObjectNotFoundError: Object (or bucket) does not exist
        TransientStoreError: Retryable failure
        PermanentStoreError: Request rejected by the store
    """

    @abstractmethod
    async def put(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str | None = None,
    ) -> None:
        """Write an object, replacing any existing one."""

    @abstractmethod
    async def compose(self, bucket: str, sources: list[str], target: str) -> None:
        """Concatenate ``sources`` in order into ``target`` inside the store.

        Raises:
            PartInvalidError: A source part was rejected
            SourceMissingError: A source object does not exist
        """

    @abstractmethod
    async def list(
        self, bucket: str, prefix: str = "", recursive: bool = True
    ) -> list[StoreObject]:
        """List objects under a prefix."""

    @abstractmethod
    def get(self, bucket: str, path: str) -> AsyncIterator[bytes]:
        """Stream an object's bytes."""

    @abstractmethod
    async def delete(self, bucket: str, paths: str | list[str]) -> None:
        """Delete one or many objects. Deleting a missing object is a no-op."""

    @abstractmethod
    async def presigned_url(self, bucket: str, path: str, ttl: timedelta) -> str:
        """Time-limited download URL."""


class MetadataStore(ABC):
    """Catalog of finalized files, unique per (content_hash, storage_class).

    All methods raise MetadataStoreError on backend failure.
    """

    @abstractmethod
    async def save(self, record: FinalizedFile) -> None:
        """Insert a record.

        Raises:
            DuplicateRecordError: A record for this hash and storage class exists
        """

    @abstractmethod
    async def find_by_hash(
        self, content_hash: str, storage_class: StorageClass
    ) -> FinalizedFile | None:
        """Look up the record for a content hash."""

    @abstractmethod
    async def delete_by_hash(self, content_hash: str, storage_class: StorageClass) -> int:
        """Delete the record for a content hash. Returns rows removed."""

    @abstractmethod
    async def list_all(self, storage_class: StorageClass) -> list[FinalizedFile]:
        """Every record of a storage class."""

    @abstractmethod
    async def update(self, record: FinalizedFile) -> int:
        """Overwrite the access fields of an existing record. Returns rows affected."""


class SessionStore(ABC):
    """Durable record of in-flight upload sessions, keyed by (session_id, storage_class).

    Updates are compare-and-swap on ``UploadSession.version`` so concurrent
    writers to one session never lose each other's chunk.
    """

    @abstractmethod
    async def get(self, session_id: str, storage_class: StorageClass) -> UploadSession | None:
        """Fetch a session."""

    @abstractmethod
    async def create(self, session: UploadSession) -> UploadSession:
        """Insert a new session at version 0.

        Raises:
            ConflictError: A session with this id and storage class already exists
        """

    @abstractmethod
    async def replace(self, session: UploadSession, expected_version: int) -> UploadSession:
        """Swap in ``session`` if the stored version still equals ``expected_version``.

        Returns the stored session with its version incremented.

        Raises:
            NotFoundError: Session no longer exists
            VersionConflictError: Another writer updated the session first
        """

    @abstractmethod
    async def delete(self, session_id: str, storage_class: StorageClass) -> bool:
        """Delete a session. Returns False if it did not exist."""

    @abstractmethod
    async def list_sessions(
        self, statuses: list[SessionStatus] | None = None
    ) -> list[UploadSession]:
        """Every session, optionally filtered by status."""
