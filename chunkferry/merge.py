"""Merge engine - composes a completed session into its final object.

Protocol:
1. Check the expected hash and merge readiness.
2. Claim the merge (READY_TO_MERGE -> MERGING). A second concurrent merge
   loses the claim with a ConflictError.
3. Verify that every recorded chunk object exists in the store. Missing
   chunks are cleared from the session and reported together.
4. Compose the chunks into the deterministic final path.
5. Mark the session MERGED and publish a completion signal.

The caller gets the FinalizedFile as soon as compose succeeds; the record
is persisted later by the consistency pipeline.
"""

import logging
import posixpath
from collections.abc import Callable
from datetime import datetime, timezone

from .coordinator import SessionCoordinator
from .errors import (
    ChunkFerryError,
    ConflictError,
    InvalidArgumentError,
    MergeFailedError,
    MissingChunksError,
    PermanentStoreError,
    PreconditionFailedError,
    StoreError,
)
from .models import (
    FinalizedFile,
    MergedSignal,
    MetadataState,
    SessionStatus,
    UploadSession,
    utc_now,
)
from .paths import FinalPath
from .pipeline import ConsistencyPipeline
from .stores.base import ObjectStore

logger = logging.getLogger(__name__)


class MergeEngine:
    """Validates and composes sessions of one storage class."""

    def __init__(
        self,
        coordinator: SessionCoordinator,
        objects: ObjectStore,
        pipeline: ConsistencyPipeline,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._coordinator = coordinator
        self._objects = objects
        self._pipeline = pipeline
        self._clock = clock

    async def merge(self, session_id: str, expected_hash: str) -> FinalizedFile:
        """
        Compose a completed session into its final object.

        Args:
            session_id: Session to merge
            expected_hash: Content hash the client claims for the file

        Returns:
            The finalized file record (not yet persisted)

        Raises:
            NotFoundError: Unknown session
            InvalidArgumentError: Hash mismatch
            ConflictError: Session already merging or merged
            PreconditionFailedError: Not every chunk is recorded
            MissingChunksError: Recorded chunks are absent from the store
            MergeFailedError: Compose failed transiently; retry is safe
            PartInvalidError, SourceMissingError: Compose rejected; session FAILED
        """
        session = await self._coordinator.get_session(session_id)

        if session.file_hash != expected_hash:
            raise InvalidArgumentError(
                f"Hash mismatch for session {session_id}: expected {expected_hash}, "
                f"session has {session.file_hash}"
            )
        if session.status in (SessionStatus.MERGING, SessionStatus.MERGED):
            raise ConflictError(f"Session {session_id} is already {session.status.value}")

        if not await self._coordinator.is_ready_to_merge(session_id):
            current = await self._coordinator.get_session(session_id)
            raise PreconditionFailedError(
                "Session is not ready to merge",
                session_id=session_id,
                status=current.status.value,
                uploaded_count=current.uploaded_count,
                total_chunks=current.total_chunks,
            )

        session = await self._coordinator.transition(
            session_id,
            SessionStatus.MERGING,
            allowed_from=(SessionStatus.READY_TO_MERGE,),
        )

        chunk_paths = session.ordered_chunk_paths()
        await self._verify_chunks(session)

        final_path = FinalPath.build(
            session.folder_path,
            session.file_hash,
            session.file_name,
            self._clock().astimezone(timezone.utc).date(),
        ).to_string()

        try:
            await self._objects.compose(session.bucket_name, chunk_paths, final_path)
        except PermanentStoreError as e:
            logger.error(
                f"Compose rejected, failing session: {e}",
                extra={"session_id": session_id, "path": final_path},
            )
            await self._coordinator.transition(
                session_id, SessionStatus.FAILED, allowed_from=(SessionStatus.MERGING,)
            )
            raise
        except StoreError as e:
            logger.warning(
                f"Compose failed, session can be merged again: {e}",
                extra={"session_id": session_id, "path": final_path},
            )
            await self._release_claim(session_id)
            raise MergeFailedError(session_id, str(e)) from e

        now = self._clock()
        record = FinalizedFile(
            file_path=final_path,
            original_filename=session.file_name,
            file_size=session.file_size,
            content_type=session.content_type,
            content_hash=session.file_hash,
            bucket_name=session.bucket_name,
            storage_class=session.storage_class,
            folder_path=session.folder_path,
            created_at=now,
            last_accessed_at=now,
        )

        try:
            await self._coordinator.transition(
                session_id,
                SessionStatus.MERGED,
                allowed_from=(SessionStatus.MERGING,),
                final_path=final_path,
                metadata_state=MetadataState.PENDING,
            )
        except ConflictError as e:
            # The object exists either way; the pipeline still has to record it
            logger.warning(
                f"Composed but could not mark session MERGED: {e}",
                extra={"session_id": session_id, "path": final_path},
            )

        logger.info(
            f"Merged {len(chunk_paths)} chunks into {final_path}",
            extra={"session_id": session_id, "bucket": session.bucket_name},
        )

        self._pipeline.publish(
            MergedSignal(
                session_id=session_id,
                file=record,
                chunk_paths=tuple(chunk_paths),
                emitted_at=now,
            )
        )
        return record

    async def _verify_chunks(self, session: UploadSession) -> None:
        """Check every recorded chunk exists; reopen the session if not."""
        prefixes = {posixpath.dirname(path) for path in session.ordered_chunk_paths()}
        try:
            present: set[str] = set()
            for prefix in sorted(prefixes):
                listing = await self._objects.list(
                    session.bucket_name, f"{prefix}/" if prefix else "", recursive=False
                )
                present.update(obj.path for obj in listing)
        except StoreError as e:
            await self._release_claim(session.session_id)
            raise MergeFailedError(session.session_id, f"chunk listing failed: {e}") from e

        missing = [
            number
            for number, path in enumerate(session.chunk_paths, start=1)
            if path not in present
        ]
        if not missing:
            return

        logger.warning(
            f"Recorded chunks missing from store: {missing}",
            extra={"session_id": session.session_id},
        )
        try:
            reopened = await self._coordinator.reopen_chunks(session.session_id, missing)
        except ChunkFerryError as e:
            await self._release_claim(session.session_id)
            raise MergeFailedError(
                session.session_id, f"could not reopen missing chunks {missing}: {e}"
            ) from e
        raise MissingChunksError(
            session_id=session.session_id,
            status=reopened.status.value,
            uploaded_count=reopened.uploaded_count,
            total_chunks=reopened.total_chunks,
            missing_chunks=missing,
        )

    async def _release_claim(self, session_id: str) -> None:
        """Return a MERGING session to READY_TO_MERGE so the merge can be retried."""
        try:
            await self._coordinator.transition(
                session_id,
                SessionStatus.READY_TO_MERGE,
                allowed_from=(SessionStatus.MERGING,),
            )
        except ChunkFerryError as e:
            logger.error(
                f"Could not release merge claim, session stays MERGING until it expires: {e}",
                extra={"session_id": session_id},
            )
