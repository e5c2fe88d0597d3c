"""Reconciler - scheduled sweeps that repair drift between store and catalog.

Sweeps:
- Stale chunks: objects that are not final objects and are older than the
  stale threshold belong to abandoned sessions and are deleted.
- Orphans: final objects with no metadata record for their embedded hash
  are deleted, unless the session that composed them is still waiting for
  its metadata commit.
- Sessions: non-terminal sessions past their TTL become EXPIRED; merged
  sessions whose metadata commit is still PENDING after the resubmit grace
  get their completion signal published again (the original may have been
  lost with a crashed process); other terminal sessions older than the
  retention window are deleted.

All sweeps are list-then-delete without a transaction, so the stale
threshold must be generous relative to upload and merge duration.
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from .config import UploadConfig
from .coordinator import update_session
from .errors import ConflictError, NotFoundError
from .models import (
    MergedSignal,
    MetadataState,
    ReconcileReport,
    SessionStatus,
    SessionSweepReport,
    StorageProfile,
    StoreObject,
    SweepReport,
    UploadSession,
    utc_now,
)
from .paths import extract_hash, is_final_path
from .pipeline import ConsistencyPipeline
from .stores.base import MetadataStore, ObjectStore, SessionStore

logger = logging.getLogger(__name__)


class Reconciler:
    """Background sweeps over every configured storage class."""

    def __init__(
        self,
        config: UploadConfig,
        profiles: list[StorageProfile],
        sessions: SessionStore,
        metadata: MetadataStore,
        objects: ObjectStore,
        pipeline: ConsistencyPipeline | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._profiles = profiles
        self._sessions = sessions
        self._metadata = metadata
        self._objects = objects
        self._pipeline = pipeline
        self._clock = clock
        self._shutdown_event = asyncio.Event()

    async def run(self) -> None:
        """Sweep every ``reconcile_interval`` seconds until shutdown."""
        logger.info(
            "Starting reconciler",
            extra={"interval": self._config.reconcile_interval},
        )

        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Reconciler error: {e}")

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self._config.reconcile_interval
                )

        logger.info("Reconciler stopped")

    def shutdown(self) -> None:
        """Signal shutdown."""
        self._shutdown_event.set()

    async def run_once(self) -> ReconcileReport:
        """Run every sweep once. A failing sweep does not stop the others."""
        report = ReconcileReport()

        try:
            report.sessions = await self.sweep_sessions()
        except Exception as e:
            logger.error(f"Session sweep failed: {e}")
            report.errors.append(f"sessions: {e}")

        for profile in self._profiles:
            try:
                report.stale_chunks.append(await self.sweep_stale_chunks(profile))
            except Exception as e:
                logger.error(
                    f"Stale chunk sweep failed: {e}",
                    extra={"bucket": profile.bucket_name},
                )
                report.errors.append(f"stale chunks {profile.bucket_name}: {e}")

            try:
                report.orphans.append(await self.sweep_orphans(profile))
            except Exception as e:
                logger.error(
                    f"Orphan sweep failed: {e}",
                    extra={"bucket": profile.bucket_name},
                )
                report.errors.append(f"orphans {profile.bucket_name}: {e}")

        return report

    async def sweep_stale_chunks(self, profile: StorageProfile) -> SweepReport:
        """Delete non-final objects older than the stale threshold."""
        cutoff = self._clock() - timedelta(seconds=self._config.stale_chunk_threshold)
        objects = await self._objects.list(profile.bucket_name, "", recursive=True)

        stale = [
            obj.path
            for obj in objects
            if not is_final_path(obj.path) and obj.last_modified < cutoff
        ]
        report = SweepReport(
            storage_class=profile.storage_class,
            bucket_name=profile.bucket_name,
            scanned=len(objects),
        )
        if not stale:
            logger.debug(f"No stale chunks in {profile.bucket_name}")
            return report

        await self._objects.delete(profile.bucket_name, stale)
        report.deleted = stale
        logger.info(
            f"Deleted {len(stale)} stale chunks from {profile.bucket_name}",
            extra={"bucket": profile.bucket_name},
        )
        return report

    async def sweep_orphans(self, profile: StorageProfile) -> SweepReport:
        """Delete final objects whose content hash has no metadata record."""
        objects = await self._objects.list(profile.bucket_name, "", recursive=True)
        finals = [obj for obj in objects if is_final_path(obj.path)]
        report = SweepReport(
            storage_class=profile.storage_class,
            bucket_name=profile.bucket_name,
            scanned=len(finals),
        )
        if not finals:
            return report

        known = {
            record.content_hash
            for record in await self._metadata.list_all(profile.storage_class)
        }

        orphans = []
        for obj in finals:
            content_hash = extract_hash(obj.path)
            if content_hash is None or content_hash in known:
                continue
            if await self._persist_in_flight(content_hash, profile, obj):
                report.skipped.append(obj.path)
                continue
            # Re-check after reading the session: the record may have landed since list_all
            if await self._metadata.find_by_hash(content_hash, profile.storage_class):
                continue
            orphans.append(obj.path)

        if orphans:
            await self._objects.delete(profile.bucket_name, orphans)
            report.deleted = orphans
            logger.info(
                f"Deleted {len(orphans)} orphaned objects from {profile.bucket_name}",
                extra={"bucket": profile.bucket_name},
            )
        return report

    async def sweep_sessions(self) -> SessionSweepReport:
        """Expire overdue sessions, resubmit pending commits and delete old terminal ones."""
        now = self._clock()
        retention_cutoff = now - timedelta(seconds=self._config.session_retention)
        resubmit_cutoff = now - timedelta(seconds=self._config.resubmit_grace)
        report = SessionSweepReport()

        for session in await self._sessions.list_sessions():
            if not session.status.is_terminal:
                if session.is_expired(now) and await self._expire(session):
                    report.expired.append(session.session_id)
            elif _commit_pending(session):
                # Kept past retention until the commit resolves
                if session.updated_at <= resubmit_cutoff and self._resubmit(session, now):
                    report.resubmitted.append(session.session_id)
            elif session.updated_at <= retention_cutoff:
                if await self._sessions.delete(session.session_id, session.storage_class):
                    report.deleted.append(session.session_id)

        if report.expired or report.resubmitted or report.deleted:
            logger.info(
                f"Expired {len(report.expired)} sessions, resubmitted "
                f"{len(report.resubmitted)}, deleted {len(report.deleted)}"
            )
        return report

    def _resubmit(self, session: UploadSession, now: datetime) -> bool:
        if self._pipeline is None:
            return False
        try:
            signal = MergedSignal.from_session(session, emitted_at=now)
        except ValueError as e:
            logger.error(
                f"Cannot rebuild completion signal: {e}",
                extra={"session_id": session.session_id},
            )
            return False

        logger.warning(
            f"Metadata commit still pending for {session.final_path}, publishing again",
            extra={"session_id": session.session_id, "bucket": session.bucket_name},
        )
        self._pipeline.publish(signal)
        return True

    async def _expire(self, session: UploadSession) -> bool:
        expired = False

        def expire(current: UploadSession) -> UploadSession | None:
            nonlocal expired
            now = self._clock()
            expired = False
            if current.status.is_terminal or not current.is_expired(now):
                return None
            expired = True
            return current.with_status(SessionStatus.EXPIRED, now)

        try:
            await update_session(
                self._sessions,
                session.session_id,
                session.storage_class,
                expire,
                self._config.max_update_attempts,
            )
        except NotFoundError:
            return False
        except ConflictError as e:
            logger.warning(
                f"Could not expire session: {e}", extra={"session_id": session.session_id}
            )
            return False
        return expired

    async def _persist_in_flight(
        self, content_hash: str, profile: StorageProfile, obj: StoreObject
    ) -> bool:
        """Whether the session that composed ``obj`` is still committing its metadata."""
        session = await self._sessions.get(content_hash, profile.storage_class)
        if session is None:
            return False
        if session.status == SessionStatus.MERGING:
            return not session.is_expired(self._clock())
        return _commit_pending(session) and session.final_path == obj.path


def _commit_pending(session: UploadSession) -> bool:
    return (
        session.status == SessionStatus.MERGED
        and session.metadata_state == MetadataState.PENDING
    )
