"""Access to finalized files of one storage class.

URL issuance follows the storage profile: PUBLIC objects are addressed
directly under the public base URL, PRIVATE objects get a presigned URL.
Downloads and URL issuance record an access on the metadata record; a
failure to record it is logged and never fails the caller.
"""

import contextlib
import hashlib
import logging
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta, timezone

from .config import UploadConfig
from .errors import DuplicateRecordError, InvalidArgumentError, MetadataStoreError, StoreError
from .models import FileDetail, FinalizedFile, StorageProfile, utc_now
from .paths import FinalPath, clean_file_name, clean_folder_path
from .stores.base import MetadataStore, ObjectStore

logger = logging.getLogger(__name__)


class FileService:
    """Finalized-file operations for one storage class."""

    def __init__(
        self,
        config: UploadConfig,
        profile: StorageProfile,
        objects: ObjectStore,
        metadata: MetadataStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._profile = profile
        self._objects = objects
        self._metadata = metadata
        self._clock = clock

    @property
    def profile(self) -> StorageProfile:
        return self._profile

    async def find(self, file_hash: str) -> FinalizedFile | None:
        """Record for a content hash in this storage class, if any."""
        return await self._metadata.find_by_hash(file_hash, self._profile.storage_class)

    async def url_for(self, file_path: str) -> str:
        """Download URL for a finalized file. Records an access."""
        url = await self._issue_url(file_path)
        await self._record_access(file_path)
        return url

    async def download(self, file_path: str) -> AsyncIterator[bytes]:
        """Stream a finalized file.

        The access is recorded as soon as the object is found, before the
        first chunk is handed out, so a reader that stops early still counts.
        """
        async with contextlib.aclosing(
            self._objects.get(self._profile.bucket_name, file_path)
        ) as chunks:
            first = await anext(chunks, b"")
            await self._record_access(file_path)
            if first:
                yield first
            async for chunk in chunks:
                yield chunk

    async def list_files(self) -> list[FileDetail]:
        """Every finalized file of this storage class with its URL."""
        details = []
        for record in await self._metadata.list_all(self._profile.storage_class):
            try:
                url = await self._issue_url(record.file_path)
            except StoreError as e:
                logger.error(
                    f"Could not issue URL for {record.file_path}: {e}",
                    extra={"bucket": self._profile.bucket_name, "path": record.file_path},
                )
                continue
            details.append(
                FileDetail(
                    name=record.original_filename,
                    file_path=record.file_path,
                    size=record.file_size,
                    content_type=record.content_type,
                    visit_count=record.visit_count,
                    url=url,
                )
            )
        return details

    async def delete_file(self, file_path: str) -> int:
        """
        Delete a finalized object and its metadata record.

        Returns:
            Number of metadata records removed
        """
        await self._objects.delete(self._profile.bucket_name, file_path)
        logger.info(
            f"Deleted object {file_path}",
            extra={"bucket": self._profile.bucket_name, "path": file_path},
        )

        try:
            content_hash = FinalPath.from_string(file_path).content_hash
        except InvalidArgumentError:
            logger.warning(
                f"Cannot extract content hash from {file_path}, metadata left in place",
                extra={"path": file_path},
            )
            return 0

        removed = await self._metadata.delete_by_hash(content_hash, self._profile.storage_class)
        if not removed:
            logger.warning(f"No metadata record for deleted object {file_path}")
        return removed

    async def upload_file(
        self,
        folder_path: str,
        file_name: str,
        data: bytes,
        content_type: str | None = None,
        file_hash: str | None = None,
    ) -> FinalizedFile:
        """
        Upload a small file in one request, bypassing sessions.

        Content already stored in this storage class is not written again.
        """
        folder_path = clean_folder_path(folder_path)
        file_name = clean_file_name(file_name)
        file_hash = file_hash or hashlib.sha256(data).hexdigest()

        existing = await self.find(file_hash)
        if existing is not None:
            logger.info(f"Content already stored, instant upload: {existing.file_path}")
            return existing

        now = self._clock()
        day = now.astimezone(timezone.utc).date()
        final_path = FinalPath.build(folder_path, file_hash, file_name, day).to_string()
        await self._objects.put(self._profile.bucket_name, final_path, data, content_type)

        record = FinalizedFile(
            file_path=final_path,
            original_filename=file_name,
            file_size=len(data),
            content_type=content_type,
            content_hash=file_hash,
            bucket_name=self._profile.bucket_name,
            storage_class=self._profile.storage_class,
            folder_path=folder_path,
            created_at=now,
            last_accessed_at=now,
        )
        try:
            await self._metadata.save(record)
        except DuplicateRecordError:
            winner = await self.find(file_hash)
            if winner is None:
                raise
            if winner.file_path != final_path:
                await self._objects.delete(self._profile.bucket_name, final_path)
            logger.info(f"Concurrent upload stored the same content: {winner.file_path}")
            return winner

        logger.info(
            f"Uploaded {final_path} ({len(data)} bytes)",
            extra={"bucket": self._profile.bucket_name, "path": final_path},
        )
        return record

    async def _issue_url(self, file_path: str) -> str:
        if self._profile.is_public:
            return self._profile.public_url(file_path)
        return await self._objects.presigned_url(
            self._profile.bucket_name,
            file_path,
            timedelta(seconds=self._config.presigned_url_ttl),
        )

    async def _record_access(self, file_path: str) -> None:
        try:
            content_hash = FinalPath.from_string(file_path).content_hash
        except InvalidArgumentError:
            logger.warning(f"Cannot record access, not a final path: {file_path}")
            return

        try:
            record = await self.find(content_hash)
            if record is None:
                logger.warning(f"Cannot record access, no metadata for {file_path}")
                return
            rows = await self._metadata.update(record.touched(self._clock()))
        except MetadataStoreError as e:
            logger.warning(
                f"Failed to record access for {file_path}: {e}",
                extra={"path": file_path},
            )
            return

        if rows == 0:
            logger.warning(f"Access not recorded, metadata row vanished: {file_path}")
