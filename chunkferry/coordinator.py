"""Upload session coordinator.

Creates and fetches sessions, short-circuits uploads of content that is
already stored, records chunk arrivals from concurrent writers and decides
when a session is ready to merge.

Every session mutation is a read-modify-write that goes through
``update_session``: the new value is swapped in only if the stored version
is unchanged, otherwise the read is repeated. Concurrent chunk arrivals for
one session therefore serialize without any in-process lock, and the
uploaded count is always recomputed from the slots that were actually
stored.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from pydantic import ValidationError

from .config import UploadConfig
from .errors import (
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    SessionClosedError,
    VersionConflictError,
)
from .models import (
    MetadataState,
    SessionStatus,
    SessionView,
    StorageClass,
    StorageProfile,
    UploadSession,
    utc_now,
)
from .paths import chunk_path, clean_file_name, clean_folder_path
from .stores.base import MetadataStore, ObjectStore, SessionStore

logger = logging.getLogger(__name__)


async def update_session(
    sessions: SessionStore,
    session_id: str,
    storage_class: StorageClass,
    mutate: Callable[[UploadSession], UploadSession | None],
    max_attempts: int,
) -> UploadSession:
    """
    Apply ``mutate`` to a session under an optimistic version check.

    ``mutate`` receives the freshly read session and returns the new value,
    or None to leave the session unchanged. It may raise to abort. On a
    version conflict the session is re-read and ``mutate`` runs again.

    Returns:
        The stored session after the update (or the current one for a no-op)

    Raises:
        NotFoundError: Session does not exist
        ConflictError: Still conflicting after ``max_attempts`` tries
    """
    for attempt in range(1, max_attempts + 1):
        current = await sessions.get(session_id, storage_class)
        if current is None:
            raise NotFoundError("Session", session_id)

        updated = mutate(current)
        if updated is None:
            return current

        try:
            return await sessions.replace(updated, expected_version=current.version)
        except VersionConflictError:
            logger.debug(
                "Session update raced, retrying",
                extra={"session_id": session_id, "attempt": attempt},
            )

    raise ConflictError(
        f"Session {session_id} is under heavy contention; gave up after {max_attempts} attempts"
    )


class SessionCoordinator:
    """
    Session lifecycle for one storage class.

    One coordinator exists per storage class; the class-specific data
    (bucket, URL visibility) lives in the ``StorageProfile`` it is built
    with.
    """

    def __init__(
        self,
        config: UploadConfig,
        profile: StorageProfile,
        sessions: SessionStore,
        metadata: MetadataStore,
        objects: ObjectStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._profile = profile
        self._sessions = sessions
        self._metadata = metadata
        self._objects = objects
        self._clock = clock

    @property
    def profile(self) -> StorageProfile:
        return self._profile

    @property
    def storage_class(self) -> StorageClass:
        return self._profile.storage_class

    async def init(
        self,
        file_hash: str,
        file_name: str,
        file_size: int,
        content_type: str | None,
        folder_path: str,
        total_chunks: int,
        storage_class: StorageClass | None = None,
    ) -> SessionView:
        """
        Start or resume an upload.

        Returns an already-MERGED view without creating a session when a
        finalized file with this hash exists in this storage class (instant
        upload). Otherwise fetches this storage class's session keyed by
        ``file_hash``, or creates it. Expired and failed sessions are replaced,
        not reused, and so is a merged session whose file has since been
        deleted. A merged session still waiting for its metadata commit is
        returned as is.

        Raises:
            InvalidArgumentError: Bad input, wrong storage class, or a
                ``total_chunks`` that differs from the in-flight session
        """
        if storage_class is not None and storage_class != self.storage_class:
            raise InvalidArgumentError(
                f"{self.storage_class.value} coordinator cannot accept a "
                f"{storage_class.value} upload"
            )
        if total_chunks < 1:
            raise InvalidArgumentError(f"total_chunks must be at least 1, got {total_chunks}")
        if file_size < 0:
            raise InvalidArgumentError(f"file_size must not be negative, got {file_size}")
        folder_path = clean_folder_path(folder_path)
        file_name = clean_file_name(file_name)

        existing = await self._metadata.find_by_hash(file_hash, self.storage_class)
        if existing is not None:
            logger.info(
                f"Content already stored, instant upload: {existing.file_path}",
                extra={"session_id": file_hash, "storage_class": self.storage_class.value},
            )
            return SessionView.instant_upload(file_hash, total_chunks, existing)

        for _ in range(self._config.max_update_attempts):
            now = self._clock()
            session = await self._sessions.get(file_hash, self.storage_class)

            if session is not None:
                if self._reusable(session, now):
                    self._check_matches(session, total_chunks)
                    logger.info(
                        f"Resuming upload session ({session.uploaded_count}/{session.total_chunks})",
                        extra={"session_id": session.session_id},
                    )
                    return SessionView.from_session(session)

                logger.info(
                    f"Replacing {session.status.value} session",
                    extra={"session_id": session.session_id},
                )
                await self._sessions.delete(session.session_id, self.storage_class)

            try:
                new_session = UploadSession(
                    session_id=file_hash,
                    file_name=file_name,
                    file_hash=file_hash,
                    file_size=file_size,
                    content_type=content_type,
                    folder_path=folder_path,
                    bucket_name=self._profile.bucket_name,
                    storage_class=self.storage_class,
                    total_chunks=total_chunks,
                    status=SessionStatus.INIT,
                    expires_at=now + timedelta(seconds=self._config.session_ttl),
                    created_at=now,
                    updated_at=now,
                )
            except ValidationError as e:
                raise InvalidArgumentError(f"Invalid upload session: {e}") from e

            try:
                created = await self._sessions.create(new_session)
            except ConflictError:
                # Another init for the same hash won; use its session
                continue

            logger.info(
                f"Created upload session for {file_name} ({total_chunks} chunks)",
                extra={"session_id": created.session_id, "storage_class": self.storage_class.value},
            )
            return SessionView.from_session(created)

        raise ConflictError(f"Could not create or fetch session {file_hash}")

    async def record_chunk(
        self, session_id: str, chunk_number: int, chunk_path: str
    ) -> SessionView:
        """
        Record that chunk ``chunk_number`` is stored at ``chunk_path``.

        Re-delivering an already-recorded chunk is a no-op. When the last
        slot fills, the session moves to READY_TO_MERGE in the same atomic
        update.

        Raises:
            NotFoundError: Unknown session
            InvalidArgumentError: Chunk number out of range, wrong storage
                class, or the slot already holds a different path
            SessionClosedError: Session is terminal, expired or merging
        """
        redelivered = False

        def fill_slot(session: UploadSession) -> UploadSession | None:
            nonlocal redelivered
            now = self._clock()
            redelivered = False
            self._check_writable(session, chunk_number, now)

            existing = session.chunk_path(chunk_number)
            if existing:
                if existing != chunk_path:
                    raise InvalidArgumentError(
                        f"Chunk {chunk_number} of session {session_id} is already "
                        f"recorded at {existing}"
                    )
                redelivered = True
                return None
            return session.with_chunk(chunk_number, chunk_path, now)

        try:
            stored = await update_session(
                self._sessions,
                session_id,
                self.storage_class,
                fill_slot,
                self._config.max_update_attempts,
            )
        except NotFoundError:
            # Raises InvalidArgumentError instead when another storage class owns the id
            await self._require(session_id)
            raise

        if redelivered:
            logger.warning(
                "Chunk already recorded, ignoring re-delivery",
                extra={"session_id": session_id, "chunk_number": chunk_number},
            )
        else:
            logger.info(
                f"Recorded chunk {chunk_number} ({stored.uploaded_count}/{stored.total_chunks}, "
                f"{stored.status.value})",
                extra={"session_id": session_id, "chunk_number": chunk_number},
            )
        return SessionView.from_session(stored)

    async def upload_chunk(
        self,
        session_id: str,
        chunk_number: int,
        data: bytes,
        content_type: str | None = None,
    ) -> SessionView:
        """
        Store one chunk's bytes and record it.

        The session is validated before any bytes are written, so a closed
        or unknown session never leaves stray chunk objects behind.
        """
        session = await self._require(session_id)
        self._check_writable(session, chunk_number, self._clock())

        path = chunk_path(session_id, chunk_number)
        await self._objects.put(session.bucket_name, path, data, content_type)
        return await self.record_chunk(session_id, chunk_number, path)

    async def is_ready_to_merge(self, session_id: str) -> bool:
        """
        Whether the session may be merged now.

        A session whose counts are complete but whose status is stale is
        repaired to READY_TO_MERGE. Expired sessions are never ready.
        """
        session = await self._require(session_id)
        if session.is_expired(self._clock()):
            return False
        if session.status == SessionStatus.READY_TO_MERGE:
            return True
        if session.status in (SessionStatus.INIT, SessionStatus.UPLOADING) and session.is_complete:
            logger.info(
                "All chunks recorded, repairing status to READY_TO_MERGE",
                extra={"session_id": session_id},
            )
            try:
                repaired = await self.transition(
                    session_id,
                    SessionStatus.READY_TO_MERGE,
                    allowed_from=(SessionStatus.INIT, SessionStatus.UPLOADING),
                )
            except ConflictError:
                # Someone else moved it first; trust the stored status
                repaired = await self._require(session_id)
            return repaired.status == SessionStatus.READY_TO_MERGE
        return False

    async def get_status(self, session_id: str) -> SessionView:
        """Current progress of a session, for resuming."""
        return SessionView.from_session(await self._require(session_id))

    async def get_session(self, session_id: str) -> UploadSession:
        return await self._require(session_id)

    async def transition(
        self,
        session_id: str,
        target: SessionStatus,
        allowed_from: Iterable[SessionStatus] | None = None,
        **changes,
    ) -> UploadSession:
        """
        Move a session to ``target`` atomically.

        Raises:
            ConflictError: Current status is not in ``allowed_from`` or the
                state machine forbids the transition
        """
        allowed = frozenset(allowed_from) if allowed_from is not None else None

        def move(session: UploadSession) -> UploadSession:
            if allowed is not None and session.status not in allowed:
                raise ConflictError(
                    f"Session {session_id} is {session.status.value}, expected one of "
                    f"{sorted(s.value for s in allowed)}"
                )
            if not session.status.can_transition_to(target):
                raise ConflictError(
                    f"Session {session_id} cannot move from {session.status.value} "
                    f"to {target.value}"
                )
            return session.with_status(target, self._clock(), **changes)

        stored = await update_session(
            self._sessions,
            session_id,
            self.storage_class,
            move,
            self._config.max_update_attempts,
        )
        logger.info(
            f"Session is now {stored.status.value}",
            extra={"session_id": session_id},
        )
        return stored

    async def reopen_chunks(self, session_id: str, chunk_numbers: list[int]) -> UploadSession:
        """Clear slots whose objects are gone so the client re-uploads them."""

        def clear(session: UploadSession) -> UploadSession:
            return session.without_chunks(chunk_numbers, self._clock())

        return await update_session(
            self._sessions,
            session_id,
            self.storage_class,
            clear,
            self._config.max_update_attempts,
        )

    async def _require(self, session_id: str) -> UploadSession:
        """
        Fetch a session of this storage class.

        Raises:
            InvalidArgumentError: The session exists only in another storage class
            NotFoundError: No such session at all
        """
        session = await self._sessions.get(session_id, self.storage_class)
        if session is not None:
            return session

        for other in StorageClass:
            if other == self.storage_class:
                continue
            if await self._sessions.get(session_id, other) is not None:
                raise InvalidArgumentError(
                    f"Session {session_id} belongs to storage class {other.value}, "
                    f"not {self.storage_class.value}"
                )
        raise NotFoundError("Session", session_id)

    def _reusable(self, session: UploadSession, now: datetime) -> bool:
        """Whether ``init`` may hand back ``session`` when no metadata record exists."""
        if session.is_expired(now):
            return False
        if session.status in (SessionStatus.FAILED, SessionStatus.EXPIRED):
            return False
        if session.status == SessionStatus.MERGED:
            # COMMITTED with no record means the file was deleted; ORPHANED will be swept
            return session.metadata_state == MetadataState.PENDING
        return True

    def _check_matches(self, session: UploadSession, total_chunks: int) -> None:
        if session.total_chunks != total_chunks:
            raise InvalidArgumentError(
                f"Session {session.session_id} was created with {session.total_chunks} "
                f"chunks, not {total_chunks}"
            )

    def _check_writable(self, session: UploadSession, chunk_number: int, now: datetime) -> None:
        if (
            session.status.is_terminal
            or session.status == SessionStatus.MERGING
            or session.is_expired(now)
        ):
            raise SessionClosedError(
                "Session no longer accepts chunks",
                session_id=session.session_id,
                status=session.status.value,
                uploaded_count=session.uploaded_count,
                total_chunks=session.total_chunks,
            )
        if chunk_number < 1 or chunk_number > session.total_chunks:
            raise InvalidArgumentError(
                f"Chunk number must be between 1 and {session.total_chunks}, got {chunk_number}"
            )
