"""In-process store implementations.

Used for tests and single-process deployments. Each store guards its state
with an ``asyncio.Lock`` and follows the same contracts as the MinIO and
SQL adapters, including "delete missing is a no-op" and compare-and-swap
session updates.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import quote

from ..errors import (
    ConflictError,
    DuplicateRecordError,
    NotFoundError,
    ObjectNotFoundError,
    PermanentStoreError,
    SourceMissingError,
    VersionConflictError,
)
from ..models import (
    FinalizedFile,
    SessionStatus,
    StorageClass,
    StoreObject,
    UploadSession,
    utc_now,
)
from .base import MetadataStore, ObjectStore, SessionStore

# Chunk size for streaming reads (8KB)
CHUNK_SIZE = 8192


@dataclass
class _StoredObject:
    data: bytes
    content_type: str | None
    last_modified: datetime


class InMemoryObjectStore(ObjectStore):
    """Dict-backed object store with compose support."""

    def __init__(self, base_url: str = "memory://objects") -> None:
        self._buckets: dict[str, dict[str, _StoredObject]] = {}
        self._lock = asyncio.Lock()
        self._base_url = base_url.rstrip("/")

    def _bucket(self, bucket: str) -> dict[str, _StoredObject]:
        return self._buckets.setdefault(bucket, {})

    async def put(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str | None = None,
    ) -> None:
        async with self._lock:
            self._bucket(bucket)[path] = _StoredObject(
                data=bytes(data),
                content_type=content_type,
                last_modified=utc_now(),
            )

    async def compose(self, bucket: str, sources: list[str], target: str) -> None:
        if not sources:
            raise PermanentStoreError("Compose needs at least one source")
        async with self._lock:
            objects = self._bucket(bucket)
            missing = [path for path in sources if path not in objects]
            if missing:
                raise SourceMissingError(f"Compose sources missing: {missing}")
            objects[target] = _StoredObject(
                data=b"".join(objects[path].data for path in sources),
                content_type=objects[sources[0]].content_type,
                last_modified=utc_now(),
            )

    async def list(
        self, bucket: str, prefix: str = "", recursive: bool = True
    ) -> list[StoreObject]:
        async with self._lock:
            items = sorted(self._bucket(bucket).items())
        result = []
        for path, obj in items:
            if not path.startswith(prefix):
                continue
            if not recursive and "/" in path[len(prefix) :]:
                continue
            result.append(
                StoreObject(path=path, size=len(obj.data), last_modified=obj.last_modified)
            )
        return result

    async def get(self, bucket: str, path: str) -> AsyncIterator[bytes]:
        async with self._lock:
            obj = self._bucket(bucket).get(path)
        if obj is None:
            raise ObjectNotFoundError(bucket, path)
        for i in range(0, len(obj.data), CHUNK_SIZE):
            yield obj.data[i : i + CHUNK_SIZE]

    async def delete(self, bucket: str, paths: str | list[str]) -> None:
        targets = [paths] if isinstance(paths, str) else paths
        async with self._lock:
            objects = self._bucket(bucket)
            for path in targets:
                objects.pop(path, None)

    async def presigned_url(self, bucket: str, path: str, ttl: timedelta) -> str:
        async with self._lock:
            if path not in self._bucket(bucket):
                raise ObjectNotFoundError(bucket, path)
        expires = int((utc_now() + ttl).timestamp())
        return f"{self._base_url}/{bucket}/{quote(path)}?expires={expires}"

    # Test helpers

    def contains(self, bucket: str, path: str) -> bool:
        return path in self._buckets.get(bucket, {})

    def read(self, bucket: str, path: str) -> bytes:
        return self._buckets[bucket][path].data

    def backdate(self, bucket: str, path: str, last_modified: datetime) -> None:
        """Pretend an object was written at ``last_modified``."""
        self._buckets[bucket][path].last_modified = last_modified


class InMemoryMetadataStore(MetadataStore):
    """Dict-backed metadata catalog keyed by (content_hash, storage_class)."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, StorageClass], FinalizedFile] = {}
        self._lock = asyncio.Lock()

    async def save(self, record: FinalizedFile) -> None:
        key = (record.content_hash, record.storage_class)
        async with self._lock:
            if key in self._records:
                raise DuplicateRecordError(record.content_hash, record.storage_class.value)
            self._records[key] = record

    async def find_by_hash(
        self, content_hash: str, storage_class: StorageClass
    ) -> FinalizedFile | None:
        async with self._lock:
            return self._records.get((content_hash, storage_class))

    async def delete_by_hash(self, content_hash: str, storage_class: StorageClass) -> int:
        async with self._lock:
            return 1 if self._records.pop((content_hash, storage_class), None) else 0

    async def list_all(self, storage_class: StorageClass) -> list[FinalizedFile]:
        async with self._lock:
            return sorted(
                (r for r in self._records.values() if r.storage_class == storage_class),
                key=lambda r: r.created_at,
            )

    async def update(self, record: FinalizedFile) -> int:
        key = (record.content_hash, record.storage_class)
        async with self._lock:
            existing = self._records.get(key)
            if existing is None:
                return 0
            self._records[key] = existing.model_copy(
                update={
                    "last_accessed_at": record.last_accessed_at,
                    "visit_count": record.visit_count,
                }
            )
            return 1


class InMemorySessionStore(SessionStore):
    """Dict-backed session store with versioned compare-and-swap."""

    def __init__(self) -> None:
        self._sessions: dict[tuple[str, StorageClass], UploadSession] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str, storage_class: StorageClass) -> UploadSession | None:
        async with self._lock:
            return self._sessions.get((session_id, storage_class))

    async def create(self, session: UploadSession) -> UploadSession:
        key = (session.session_id, session.storage_class)
        async with self._lock:
            if key in self._sessions:
                raise ConflictError(
                    f"Session already exists: {session.storage_class.value}/{session.session_id}"
                )
            stored = session.model_copy(update={"version": 0})
            self._sessions[key] = stored
            return stored

    async def replace(self, session: UploadSession, expected_version: int) -> UploadSession:
        key = (session.session_id, session.storage_class)
        async with self._lock:
            current = self._sessions.get(key)
            if current is None:
                raise NotFoundError("Session", session.session_id)
            if current.version != expected_version:
                raise VersionConflictError(session.session_id, expected_version)
            stored = session.model_copy(update={"version": expected_version + 1})
            self._sessions[key] = stored
            return stored

    async def delete(self, session_id: str, storage_class: StorageClass) -> bool:
        async with self._lock:
            return self._sessions.pop((session_id, storage_class), None) is not None

    async def list_sessions(
        self, statuses: list[SessionStatus] | None = None
    ) -> list[UploadSession]:
        async with self._lock:
            sessions = list(self._sessions.values())
        if statuses is not None:
            sessions = [s for s in sessions if s.status in statuses]
        return sorted(sessions, key=lambda s: s.created_at)
