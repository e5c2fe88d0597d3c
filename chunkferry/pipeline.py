"""Consistency pipeline - persists metadata and cleans up chunks after a merge.

The merge caller only enqueues a ``MergedSignal``; everything here runs in
the background so merge latency never includes catalog latency.

Each signal fans out to two independent handlers:
1. on_merged: save the FinalizedFile, retrying with backoff. On exhaustion
   the session is marked ORPHANED and the composed object is left for the
   reconciler.
2. on_merged_cleanup: delete the chunk objects, retrying with backoff.

Neither handler waits on, or rolls back because of, the other. Both are
idempotent: a duplicate record counts as persisted and deleting a missing
chunk is a no-op.
"""

import asyncio
import logging

from .config import UploadConfig
from .coordinator import update_session
from .errors import (
    ConflictError,
    DuplicateRecordError,
    MetadataPersistFailure,
    NotFoundError,
    StoreError,
)
from .models import MergedSignal, MetadataState, PipelineOutcome, UploadSession
from .stores.base import MetadataStore, ObjectStore, SessionStore

logger = logging.getLogger(__name__)


class ConsistencyPipeline:
    """
    Asynchronous consumer of completion signals.

    ``publish`` is fire-and-forget. ``run`` consumes the queue with at most
    ``pipeline_concurrency`` signals in flight.
    """

    def __init__(
        self,
        config: UploadConfig,
        sessions: SessionStore,
        metadata: MetadataStore,
        objects: ObjectStore,
    ):
        self._config = config
        self._sessions = sessions
        self._metadata = metadata
        self._objects = objects
        self._queue: asyncio.Queue[MergedSignal] = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(config.pipeline_concurrency)
        self._shutdown_event = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Signals queued but not yet picked up."""
        return self._queue.qsize()

    def publish(self, signal: MergedSignal) -> None:
        """Enqueue a completion signal. Never blocks, never raises."""
        self._queue.put_nowait(signal)
        logger.debug(
            "Completion signal queued",
            extra={"session_id": signal.session_id, "path": signal.file.file_path},
        )

    async def run(self) -> None:
        """Run the consumer loop until shutdown."""
        logger.info(
            "Starting consistency pipeline",
            extra={"max_concurrent": self._config.pipeline_concurrency},
        )

        while not self._shutdown_event.is_set():
            try:
                try:
                    signal = await asyncio.wait_for(
                        self._queue.get(), timeout=self._config.poll_interval
                    )
                except asyncio.TimeoutError:
                    continue

                # Permit is released when the handler task completes
                await self._semaphore.acquire()
                task = asyncio.create_task(self._handle_with_permit(signal))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

            except Exception as e:
                logger.error(f"Pipeline error: {e}")
                await asyncio.sleep(1.0)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Consistency pipeline stopped")

    def shutdown(self) -> None:
        """Signal shutdown. In-flight signals finish; queued ones stay queued for ``drain``."""
        self._shutdown_event.set()

    async def join(self) -> None:
        """Wait until every published signal has been handled by ``run``."""
        await self._queue.join()

    async def drain(self) -> list[PipelineOutcome]:
        """Handle every queued signal in the calling task.

        Used after ``run`` has stopped, and by single-shot processes and
        tests that do not run the loop.
        """
        outcomes = []
        while not self._queue.empty():
            signal = self._queue.get_nowait()
            try:
                outcomes.append(await self.handle(signal))
            finally:
                self._queue.task_done()
        return outcomes

    async def _handle_with_permit(self, signal: MergedSignal) -> None:
        try:
            await self.handle(signal)
        except Exception as e:
            logger.error(
                f"Completion signal handling failed: {e}",
                extra={"session_id": signal.session_id},
            )
        finally:
            self._semaphore.release()
            self._queue.task_done()

    async def handle(self, signal: MergedSignal) -> PipelineOutcome:
        """Run both handlers for one signal, independently of each other."""
        persisted, cleaned = await asyncio.gather(
            self.on_merged(signal),
            self.on_merged_cleanup(signal),
            return_exceptions=True,
        )

        if isinstance(persisted, BaseException):
            logger.error(
                f"Metadata handler crashed: {persisted}",
                extra={"session_id": signal.session_id},
            )
            persisted = MetadataState.PENDING
        if isinstance(cleaned, BaseException):
            logger.error(
                f"Cleanup handler crashed: {cleaned}",
                extra={"session_id": signal.session_id},
            )
            cleaned = False

        return PipelineOutcome(
            session_id=signal.session_id,
            file_path=signal.file.file_path,
            metadata_state=persisted,
            chunks_deleted=cleaned,
        )

    async def on_merged(self, signal: MergedSignal) -> MetadataState:
        """
        Persist the finalized file record.

        Returns:
            COMMITTED if the record is stored (or already was), ORPHANED if
            every attempt failed
        """
        try:
            await self._persist(signal)
            state = MetadataState.COMMITTED
        except MetadataPersistFailure as e:
            logger.error(
                f"{e}; object left for reconciliation",
                extra={
                    "session_id": signal.session_id,
                    "bucket": signal.bucket_name,
                    "path": e.path,
                    "attempt": e.attempts,
                },
            )
            state = MetadataState.ORPHANED

        await self._mark_session(signal, state)
        return state

    async def _persist(self, signal: MergedSignal) -> None:
        """Save the record with backoff. A duplicate counts as saved.

        Raises:
            MetadataPersistFailure: Every attempt failed
        """
        retry = self._config.persist_retry
        record = signal.file

        for attempt in range(1, retry.max_attempts + 1):
            try:
                await self._metadata.save(record)
            except DuplicateRecordError:
                logger.info(
                    f"Metadata already recorded: {record.file_path}",
                    extra={"session_id": signal.session_id},
                )
                return
            except Exception as e:
                if attempt >= retry.max_attempts:
                    raise MetadataPersistFailure(record.file_path, attempt) from e
                delay = retry.delay_for(attempt)
                logger.warning(
                    f"Metadata persist failed, retrying in {delay}s: {e}",
                    extra={"session_id": signal.session_id, "attempt": attempt},
                )
                await asyncio.sleep(delay)
            else:
                logger.info(
                    f"Metadata persisted: {record.file_path}",
                    extra={"session_id": signal.session_id, "attempt": attempt},
                )
                return

    async def on_merged_cleanup(self, signal: MergedSignal) -> bool:
        """
        Delete the chunk objects composed into the final file.

        Returns:
            True once the chunks are gone
        """
        retry = self._config.cleanup_retry
        paths = list(signal.chunk_paths)
        if not paths:
            return True

        for attempt in range(1, retry.max_attempts + 1):
            try:
                await self._objects.delete(signal.bucket_name, paths)
            except StoreError as e:
                if attempt >= retry.max_attempts:
                    logger.error(
                        f"Giving up deleting {len(paths)} chunks, left for the stale "
                        f"chunk sweep: {e}",
                        extra={"session_id": signal.session_id, "attempt": attempt},
                    )
                    return False
                delay = retry.delay_for(attempt)
                logger.warning(
                    f"Chunk cleanup failed, retrying in {delay}s: {e}",
                    extra={"session_id": signal.session_id, "attempt": attempt},
                )
                await asyncio.sleep(delay)
            else:
                logger.info(
                    f"Deleted {len(paths)} chunks",
                    extra={"session_id": signal.session_id, "bucket": signal.bucket_name},
                )
                return True
        return False

    async def _mark_session(self, signal: MergedSignal, state: MetadataState) -> None:
        """Record the persist outcome on the session that produced the signal."""

        def mark(session: UploadSession) -> UploadSession | None:
            # A newer session may reuse the id once this one is replaced
            if session.final_path != signal.file.file_path:
                return None
            if session.metadata_state == state:
                return None
            return session.model_copy(update={"metadata_state": state})

        try:
            await update_session(
                self._sessions,
                signal.session_id,
                signal.file.storage_class,
                mark,
                self._config.max_update_attempts,
            )
        except NotFoundError:
            logger.debug(
                "Session already removed, metadata state not recorded",
                extra={"session_id": signal.session_id},
            )
        except ConflictError as e:
            logger.warning(
                f"Could not record metadata state {state.value}: {e}",
                extra={"session_id": signal.session_id},
            )
