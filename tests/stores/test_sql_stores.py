"""Tests for the SQLAlchemy stores on an aiosqlite database."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from chunkferry.errors import (
    ConflictError,
    DuplicateRecordError,
    NotFoundError,
    VersionConflictError,
)
from chunkferry.models import (
    FinalizedFile,
    MetadataState,
    SessionStatus,
    StorageClass,
    UploadSession,
)
from chunkferry.stores import (
    SqlMetadataStore,
    SqlSessionStore,
    create_session_maker,
    create_tables,
)

NOW = datetime(2025, 8, 12, 10, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine, maker = create_session_maker(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield maker
    await engine.dispose()


def create_session(**kwargs) -> UploadSession:
    """Create test session with defaults."""
    defaults = {
        "session_id": "abc",
        "file_name": "movie.mp4",
        "file_hash": "abc",
        "file_size": 4,
        "content_type": "video/mp4",
        "folder_path": "videos",
        "bucket_name": "public-assets",
        "storage_class": StorageClass.PUBLIC,
        "total_chunks": 2,
        "expires_at": NOW + timedelta(days=1),
        "created_at": NOW,
        "updated_at": NOW,
    }
    defaults.update(kwargs)
    return UploadSession(**defaults)


def create_record(**kwargs) -> FinalizedFile:
    """Create test finalized file with defaults."""
    defaults = {
        "file_path": "videos/2025/08/12/abc/movie.mp4",
        "original_filename": "movie.mp4",
        "file_size": 4,
        "content_type": "video/mp4",
        "content_hash": "abc",
        "bucket_name": "public-assets",
        "storage_class": StorageClass.PUBLIC,
        "folder_path": "videos",
        "created_at": NOW,
    }
    defaults.update(kwargs)
    return FinalizedFile(**defaults)


class TestSqlSessionStore:
    """Test the upload_sessions table store."""

    @pytest.mark.asyncio
    async def test_round_trip(self, session_maker):
        store = SqlSessionStore(session_maker)
        await store.create(create_session())

        loaded = await store.get("abc", StorageClass.PUBLIC)

        assert loaded == create_session()
        assert loaded.expires_at.tzinfo is not None
        assert loaded.chunk_paths == [None, None]

    @pytest.mark.asyncio
    async def test_get_missing(self, session_maker):
        assert await SqlSessionStore(session_maker).get("nope", StorageClass.PUBLIC) is None

    @pytest.mark.asyncio
    async def test_create_twice_conflicts(self, session_maker):
        store = SqlSessionStore(session_maker)
        await store.create(create_session())

        with pytest.raises(ConflictError):
            await store.create(create_session())

    @pytest.mark.asyncio
    async def test_compare_and_swap(self, session_maker):
        store = SqlSessionStore(session_maker)
        created = await store.create(create_session())

        updated = await store.replace(created.with_chunk(1, "abc/1", NOW), 0)
        with pytest.raises(VersionConflictError):
            await store.replace(created.with_chunk(2, "abc/2", NOW), 0)

        loaded = await store.get("abc", StorageClass.PUBLIC)
        assert updated.version == 1
        assert loaded.version == 1
        assert loaded.chunk_paths == ["abc/1", None]
        assert loaded.status == SessionStatus.UPLOADING

    @pytest.mark.asyncio
    async def test_replace_missing_is_not_found(self, session_maker):
        with pytest.raises(NotFoundError):
            await SqlSessionStore(session_maker).replace(create_session(), 0)

    @pytest.mark.asyncio
    async def test_merged_fields_persist(self, session_maker):
        store = SqlSessionStore(session_maker)
        created = await store.create(create_session(total_chunks=1))
        merged = created.with_chunk(1, "abc/1", NOW).with_status(
            SessionStatus.MERGED,
            NOW,
            final_path="videos/2025/08/12/abc/movie.mp4",
            metadata_state=MetadataState.PENDING,
        )

        await store.replace(merged, 0)

        loaded = await store.get("abc", StorageClass.PUBLIC)
        assert loaded.status == SessionStatus.MERGED
        assert loaded.metadata_state == MetadataState.PENDING
        assert loaded.final_path == "videos/2025/08/12/abc/movie.mp4"

    @pytest.mark.asyncio
    async def test_list_and_delete(self, session_maker):
        store = SqlSessionStore(session_maker)
        await store.create(create_session(session_id="a"))
        await store.create(
            create_session(
                session_id="b",
                status=SessionStatus.EXPIRED,
                created_at=NOW + timedelta(seconds=1),
            )
        )

        expired = await store.list_sessions([SessionStatus.EXPIRED])
        everything = await store.list_sessions()

        assert [s.session_id for s in expired] == ["b"]
        assert [s.session_id for s in everything] == ["a", "b"]
        assert await store.delete("a", StorageClass.PUBLIC) is True
        assert await store.delete("a", StorageClass.PUBLIC) is False

    @pytest.mark.asyncio
    async def test_same_id_in_both_storage_classes(self, session_maker):
        store = SqlSessionStore(session_maker)
        await store.create(create_session())
        private = await store.create(
            create_session(storage_class=StorageClass.PRIVATE, bucket_name="private-files")
        )

        await store.replace(private.with_chunk(1, "abc/1", NOW), 0)

        public_loaded = await store.get("abc", StorageClass.PUBLIC)
        private_loaded = await store.get("abc", StorageClass.PRIVATE)
        assert (public_loaded.version, public_loaded.uploaded_count) == (0, 0)
        assert (private_loaded.version, private_loaded.uploaded_count) == (1, 1)
        assert await store.delete("abc", StorageClass.PRIVATE) is True
        assert await store.get("abc", StorageClass.PUBLIC) is not None


class TestSqlMetadataStore:
    """Test the file_metadata table store."""

    @pytest.mark.asyncio
    async def test_save_and_find(self, session_maker):
        store = SqlMetadataStore(session_maker)
        await store.save(create_record())

        found = await store.find_by_hash("abc", StorageClass.PUBLIC)

        assert found == create_record()
        assert await store.find_by_hash("abc", StorageClass.PRIVATE) is None

    @pytest.mark.asyncio
    async def test_unique_per_hash_and_class(self, session_maker):
        store = SqlMetadataStore(session_maker)
        await store.save(create_record())
        await store.save(create_record(storage_class=StorageClass.PRIVATE))

        with pytest.raises(DuplicateRecordError):
            await store.save(create_record(file_path="other/2025/08/12/abc/movie.mp4"))

    @pytest.mark.asyncio
    async def test_update_access_fields(self, session_maker):
        store = SqlMetadataStore(session_maker)
        await store.save(create_record())
        later = NOW + timedelta(hours=1)

        rows = await store.update(create_record().touched(later))

        found = await store.find_by_hash("abc", StorageClass.PUBLIC)
        assert rows == 1
        assert found.visit_count == 1
        assert found.last_accessed_at == later

    @pytest.mark.asyncio
    async def test_update_missing_row(self, session_maker):
        assert await SqlMetadataStore(session_maker).update(create_record()) == 0

    @pytest.mark.asyncio
    async def test_list_and_delete(self, session_maker):
        store = SqlMetadataStore(session_maker)
        await store.save(create_record())
        await store.save(
            create_record(
                file_path="videos/2025/08/12/def/clip.mp4",
                content_hash="def",
                created_at=NOW + timedelta(seconds=1),
            )
        )

        listed = await store.list_all(StorageClass.PUBLIC)
        removed = await store.delete_by_hash("abc", StorageClass.PUBLIC)

        assert [r.content_hash for r in listed] == ["abc", "def"]
        assert removed == 1
        assert await store.delete_by_hash("abc", StorageClass.PUBLIC) == 0
