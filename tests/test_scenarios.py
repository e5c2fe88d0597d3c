"""End-to-end upload scenarios through UploadManager."""

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest import mock

import pytest

from chunkferry.config import RetrySettings, UploadConfig
from chunkferry.errors import MetadataStoreError, PreconditionFailedError
from chunkferry.manager import UploadManager
from chunkferry.models import MergedSignal, MetadataState, SessionStatus, StorageClass
from chunkferry.stores import InMemoryMetadataStore, InMemoryObjectStore, InMemorySessionStore

BUCKET = "public-assets"


class Clock:
    """Controllable clock."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def create_system(**config_kwargs) -> SimpleNamespace:
    """Wire an UploadManager over in-memory stores the test can inspect."""
    defaults = {
        "public_base_url": "https://cdn.example.com",
        "persist_retry": RetrySettings(max_attempts=3, base_seconds=0),
        "cleanup_retry": RetrySettings(max_attempts=2, base_seconds=0),
        "poll_interval": 0.01,
        "stale_chunk_threshold": 3600,
    }
    defaults.update(config_kwargs)
    clock = Clock()
    sessions = InMemorySessionStore()
    metadata = InMemoryMetadataStore()
    objects = InMemoryObjectStore()
    manager = UploadManager(
        UploadConfig(**defaults), sessions, metadata, objects, clock=clock
    )
    return SimpleNamespace(
        clock=clock,
        sessions=sessions,
        metadata=metadata,
        objects=objects,
        manager=manager,
        coordinator=manager.coordinator(StorageClass.PUBLIC),
        engine=manager.merge_engine(StorageClass.PUBLIC),
        files=manager.files(StorageClass.PUBLIC),
    )


async def init_abc(system: SimpleNamespace, total_chunks: int, file_size: int = 6):
    return await system.coordinator.init(
        file_hash="abc",
        file_name="name.ext",
        file_size=file_size,
        content_type="application/octet-stream",
        folder_path="uploads",
        total_chunks=total_chunks,
    )


class TestUploadScenarios:
    """Complete upload flows."""

    @pytest.mark.asyncio
    async def test_out_of_order_upload_then_instant_reupload(self):
        system = create_system()
        await init_abc(system, total_chunks=3)

        for number, data in [(2, b"bb"), (1, b"aa"), (3, b"cc")]:
            await system.coordinator.upload_chunk("abc", number, data)
        assert await system.coordinator.is_ready_to_merge("abc") is True

        record = await system.engine.merge("abc", "abc")
        await system.manager.pipeline.drain()

        assert record.file_path.endswith("/abc/name.ext")
        assert system.objects.read(BUCKET, record.file_path) == b"aabbcc"
        stored = await system.sessions.get("abc", StorageClass.PUBLIC)
        assert stored.status == SessionStatus.MERGED
        assert stored.metadata_state == MetadataState.COMMITTED
        assert not system.objects.contains(BUCKET, "abc/1")

        with mock.patch.object(system.objects, "put") as mock_put:
            view = await init_abc(system, total_chunks=3)

        assert view.status == SessionStatus.MERGED
        assert view.instant is True
        assert view.file_path == record.file_path
        mock_put.assert_not_called()

    @pytest.mark.asyncio
    async def test_incomplete_upload_cannot_merge(self):
        system = create_system()
        await init_abc(system, total_chunks=2, file_size=4)
        await system.coordinator.upload_chunk("abc", 1, b"aa")

        with pytest.raises(PreconditionFailedError):
            await system.engine.merge("abc", "abc")

        status = await system.coordinator.get_status("abc")
        assert status.uploaded_chunks == [1]
        assert status.status == SessionStatus.UPLOADING

    @pytest.mark.asyncio
    async def test_failed_metadata_commit_is_swept_as_orphan(self):
        system = create_system()
        await init_abc(system, total_chunks=2, file_size=4)
        await system.coordinator.upload_chunk("abc", 1, b"aa")
        await system.coordinator.upload_chunk("abc", 2, b"bb")

        record = await system.engine.merge("abc", "abc")
        with mock.patch.object(
            system.metadata, "save", side_effect=MetadataStoreError("down")
        ):
            outcomes = await system.manager.pipeline.drain()

        assert outcomes[0].metadata_state == MetadataState.ORPHANED
        assert system.objects.contains(BUCKET, record.file_path)
        assert await system.files.find("abc") is None

        report = await system.manager.reconciler.run_once()

        public_orphans = next(r for r in report.orphans if r.storage_class == StorageClass.PUBLIC)
        assert public_orphans.deleted == [record.file_path]
        assert not system.objects.contains(BUCKET, record.file_path)

    @pytest.mark.asyncio
    async def test_orphaned_content_can_be_uploaded_again(self):
        system = create_system()
        await init_abc(system, total_chunks=1, file_size=2)
        await system.coordinator.upload_chunk("abc", 1, b"aa")
        await system.engine.merge("abc", "abc")
        with mock.patch.object(
            system.metadata, "save", side_effect=MetadataStoreError("down")
        ):
            await system.manager.pipeline.drain()
        await system.manager.reconciler.run_once()

        view = await init_abc(system, total_chunks=1, file_size=2)
        await system.coordinator.upload_chunk("abc", 1, b"aa")
        record = await system.engine.merge("abc", "abc")
        await system.manager.pipeline.drain()

        assert view.status == SessionStatus.INIT
        assert view.instant is False
        assert await system.files.find("abc") == record
        assert system.objects.read(BUCKET, record.file_path) == b"aa"

    @pytest.mark.asyncio
    async def test_abandoned_upload_is_cleaned_up(self):
        system = create_system(session_ttl=600, session_retention=60)
        await init_abc(system, total_chunks=2, file_size=4)
        await system.coordinator.upload_chunk("abc", 1, b"aa")
        system.objects.backdate(BUCKET, "abc/1", system.clock() - timedelta(hours=2))

        system.clock.advance(600)
        first = await system.manager.reconciler.run_once()
        system.clock.advance(60)
        second = await system.manager.reconciler.run_once()

        assert first.sessions.expired == ["abc"]
        assert any("abc/1" in r.deleted for r in first.stale_chunks)
        assert second.sessions.deleted == ["abc"]
        assert await system.sessions.get("abc", StorageClass.PUBLIC) is None

    @pytest.mark.asyncio
    async def test_background_jobs_finish_merge(self):
        system = create_system()
        await init_abc(system, total_chunks=2, file_size=4)
        await system.coordinator.upload_chunk("abc", 2, b"bb")
        await system.coordinator.upload_chunk("abc", 1, b"aa")

        await system.manager.start()
        try:
            record = await system.engine.merge("abc", "abc")
            await asyncio.wait_for(system.manager.pipeline.join(), timeout=2.0)
        finally:
            await system.manager.stop()

        url = await system.files.url_for(record.file_path)
        assert url == f"https://cdn.example.com/{BUCKET}/{record.file_path}"
        assert (await system.files.find("abc")).visit_count == 1

    @pytest.mark.asyncio
    async def test_deleted_file_can_be_uploaded_again(self):
        system = create_system()
        await init_abc(system, total_chunks=1, file_size=2)
        await system.coordinator.upload_chunk("abc", 1, b"aa")
        record = await system.engine.merge("abc", "abc")
        await system.manager.pipeline.drain()

        await system.files.delete_file(record.file_path)
        assert await system.files.find("abc") is None
        view = await init_abc(system, total_chunks=1, file_size=2)
        await system.coordinator.upload_chunk("abc", 1, b"aa")
        again = await system.engine.merge("abc", "abc")
        await system.manager.pipeline.drain()

        assert view.status == SessionStatus.INIT
        assert view.file_path is None
        assert await system.files.find("abc") == again
        assert system.objects.read(BUCKET, again.file_path) == b"aa"

    @pytest.mark.asyncio
    async def test_same_content_in_both_storage_classes(self):
        system = create_system()
        private = system.manager.coordinator(StorageClass.PRIVATE)
        await init_abc(system, total_chunks=1, file_size=2)
        await system.coordinator.upload_chunk("abc", 1, b"aa")
        public_record = await system.engine.merge("abc", "abc")

        view = await private.init("abc", "name.ext", 2, None, "uploads", total_chunks=1)
        await private.upload_chunk("abc", 1, b"aa")
        private_record = await system.manager.merge_engine(StorageClass.PRIVATE).merge(
            "abc", "abc"
        )
        await system.manager.pipeline.drain()

        assert view.status == SessionStatus.INIT
        assert public_record.bucket_name == BUCKET
        assert private_record.bucket_name == "private-files"
        assert await system.files.find("abc") == public_record
        assert await system.manager.files(StorageClass.PRIVATE).find("abc") == private_record

    @pytest.mark.asyncio
    async def test_signal_lost_in_crash_is_delivered_after_restart(self):
        system = create_system(resubmit_grace=60)
        await init_abc(system, total_chunks=2, file_size=4)
        await system.coordinator.upload_chunk("abc", 1, b"aa")
        await system.coordinator.upload_chunk("abc", 2, b"bb")
        record = await system.engine.merge("abc", "abc")

        # The first process dies with the signal still queued
        restarted = UploadManager(
            system.manager._config,
            system.sessions,
            system.metadata,
            system.objects,
            clock=system.clock,
        )
        system.clock.advance(61)
        report = await restarted.reconciler.run_once()
        outcomes = await restarted.pipeline.drain()

        assert report.sessions.resubmitted == ["abc"]
        assert outcomes[0].metadata_state == MetadataState.COMMITTED
        assert outcomes[0].chunks_deleted is True
        assert await system.files.find("abc") is not None
        assert system.objects.contains(BUCKET, record.file_path)
        assert not system.objects.contains(BUCKET, "abc/1")
        stored = await system.sessions.get("abc", StorageClass.PUBLIC)
        assert stored.metadata_state == MetadataState.COMMITTED

    @pytest.mark.asyncio
    async def test_redelivered_signal_is_idempotent(self):
        system = create_system()
        await init_abc(system, total_chunks=1, file_size=2)
        await system.coordinator.upload_chunk("abc", 1, b"aa")
        await system.engine.merge("abc", "abc")
        queued = await system.manager.pipeline.drain()
        stored = await system.sessions.get("abc", StorageClass.PUBLIC)

        redelivered = await system.manager.pipeline.handle(
            MergedSignal.from_session(stored, emitted_at=system.clock())
        )

        assert queued[0].metadata_state == MetadataState.COMMITTED
        assert redelivered.metadata_state == MetadataState.COMMITTED
        assert redelivered.chunks_deleted is True
        assert len(await system.metadata.list_all(StorageClass.PUBLIC)) == 1
