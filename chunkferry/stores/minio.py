"""
MinIO (S3-compatible) object store.

The MinIO SDK is synchronous, so every call runs in the default executor.
S3 error codes are translated into the store error taxonomy:

- NoSuchKey / NoSuchBucket          -> ObjectNotFoundError (SourceMissingError in compose)
- InvalidPart / EntityTooSmall / ... -> PartInvalidError
- AccessDenied / InvalidArgument ... -> PermanentStoreError
- anything else, connection errors  -> TransientStoreError
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import AsyncIterator, Callable
from datetime import timedelta
from io import BytesIO
from typing import Any, TypeVar

from minio import Minio
from minio.commonconfig import ComposeSource
from minio.deleteobjects import DeleteObject
from minio.error import InvalidResponseError, S3Error, ServerError
from urllib3.exceptions import HTTPError

from ..config import UploadConfig
from ..errors import (
    ObjectNotFoundError,
    PartInvalidError,
    PermanentStoreError,
    SourceMissingError,
    StoreError,
    TransientStoreError,
)
from ..models import StoreObject
from .base import ObjectStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Chunk size for streaming reads (64KB)
CHUNK_SIZE = 65536

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NoSuchObject", "ResourceNotFound"})
PART_INVALID_CODES = frozenset(
    {"InvalidPart", "InvalidPartOrder", "EntityTooSmall", "EntityTooLarge"}
)
PERMANENT_CODES = frozenset(
    {
        "AccessDenied",
        "InvalidArgument",
        "InvalidRequest",
        "InvalidBucketName",
        "InvalidObjectName",
        "MethodNotAllowed",
        "SignatureDoesNotMatch",
        "InvalidAccessKeyId",
    }
)


def translate_error(
    code: str | None,
    message: str,
    bucket: str,
    path: str,
    composing: bool = False,
) -> StoreError:
    """Map an S3 error code onto the store error taxonomy.

    Args:
        code: S3 error code (e.g., "NoSuchKey")
        message: Error message from the server
        bucket: Bucket of the failed request
        path: Object path of the failed request
        composing: Whether the request was a compose (missing objects are sources)

    Returns:
        StoreError subclass instance to raise
    """
    if code in NOT_FOUND_CODES:
        if composing:
            return SourceMissingError(f"Compose source missing for {bucket}/{path}: {message}")
        return ObjectNotFoundError(bucket, path)
    if code in PART_INVALID_CODES:
        return PartInvalidError(f"Invalid part composing {bucket}/{path}: {code} {message}")
    if code in PERMANENT_CODES:
        return PermanentStoreError(f"{code} for {bucket}/{path}: {message}")
    return TransientStoreError(f"{code or 'Error'} for {bucket}/{path}: {message}")


class MinioObjectStore(ObjectStore):
    """
    Object store backed by MinIO.

    Presigned URLs are generated with a separate client pointed at the
    public endpoint when one is configured, so the signature matches the
    host the browser will use.
    """

    def __init__(self, client: Minio, presign_client: Minio | None = None):
        self._client = client
        self._presign_client = presign_client or client

    @classmethod
    def from_config(cls, config: UploadConfig) -> MinioObjectStore:
        client = Minio(
            config.minio_endpoint,
            access_key=config.minio_access_key,
            secret_key=config.minio_secret_key,
            secure=config.minio_secure,
            region=config.minio_region,
        )
        presign_client = None
        if config.minio_public_endpoint:
            # Region is fixed so presigning never needs a network round trip
            presign_client = Minio(
                config.minio_public_endpoint,
                access_key=config.minio_access_key,
                secret_key=config.minio_secret_key,
                secure=config.minio_secure,
                region=config.minio_region,
            )
        logger.info(f"MinIO client initialized: {config.minio_endpoint}")
        return cls(client, presign_client)

    async def _call(
        self,
        func: Callable[..., T],
        *args: Any,
        bucket: str,
        path: str,
        composing: bool = False,
        **kwargs: Any,
    ) -> T:
        """Run a blocking SDK call in the executor and translate its errors."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        except S3Error as e:
            raise translate_error(e.code, e.message, bucket, path, composing) from e
        except (ServerError, InvalidResponseError, HTTPError) as e:
            raise TransientStoreError(f"MinIO request failed for {bucket}/{path}: {e}") from e

    async def put(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str | None = None,
    ) -> None:
        await self._call(
            self._client.put_object,
            bucket,
            path,
            BytesIO(data),
            len(data),
            content_type=content_type or "application/octet-stream",
            bucket=bucket,
            path=path,
        )

    async def compose(self, bucket: str, sources: list[str], target: str) -> None:
        if not sources:
            raise PermanentStoreError("Compose needs at least one source")
        await self._call(
            self._client.compose_object,
            bucket,
            target,
            [ComposeSource(bucket, source) for source in sources],
            bucket=bucket,
            path=target,
            composing=True,
        )

    async def list(
        self, bucket: str, prefix: str = "", recursive: bool = True
    ) -> list[StoreObject]:
        def collect() -> list[StoreObject]:
            return [
                StoreObject(
                    path=item.object_name,
                    size=item.size or 0,
                    last_modified=item.last_modified,
                )
                for item in self._client.list_objects(
                    bucket, prefix=prefix or None, recursive=recursive
                )
                if not item.is_dir
            ]

        return await self._call(collect, bucket=bucket, path=prefix)

    async def get(self, bucket: str, path: str) -> AsyncIterator[bytes]:
        response = await self._call(self._client.get_object, bucket, path, bucket=bucket, path=path)
        loop = asyncio.get_running_loop()
        try:
            while True:
                chunk = await loop.run_in_executor(None, response.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            response.close()
            response.release_conn()

    async def delete(self, bucket: str, paths: str | list[str]) -> None:
        if isinstance(paths, str):
            try:
                await self._call(self._client.remove_object, bucket, paths, bucket=bucket, path=paths)
            except ObjectNotFoundError:
                logger.debug(f"Object already gone: {bucket}/{paths}")
            return

        if not paths:
            return

        def remove_all() -> list[tuple[str, str, str]]:
            # remove_objects is lazy; iterating the errors performs the delete
            errors = self._client.remove_objects(bucket, [DeleteObject(p) for p in paths])
            return [(error.name, error.code, error.message) for error in errors]

        failures = [
            (name, code, message)
            for name, code, message in await self._call(
                remove_all, bucket=bucket, path=f"[{len(paths)} objects]"
            )
            if code not in NOT_FOUND_CODES
        ]
        for name, code, message in failures:
            logger.error(
                f"Bulk delete failed for {bucket}/{name}: {code} {message}",
                extra={"bucket": bucket, "path": name},
            )
        if failures:
            raise TransientStoreError(
                f"Failed to delete {len(failures)} of {len(paths)} objects in {bucket}"
            )

    async def presigned_url(self, bucket: str, path: str, ttl: timedelta) -> str:
        return await self._call(
            self._presign_client.presigned_get_object,
            bucket,
            path,
            expires=ttl,
            bucket=bucket,
            path=path,
        )
