"""chunkferry - resumable chunked uploads with content-addressed merging.

Clients upload large files as independent chunks, resume interrupted
uploads, skip uploads of content that is already stored, and have the
chunks composed into a final object inside the object store. A background
pipeline keeps the metadata catalog consistent with the store, and a
reconciler cleans up whatever drift remains.

Example:
    from chunkferry import SessionStatus, StorageClass, UploadConfig, UploadManager

    manager = await UploadManager.from_config(UploadConfig())
    await manager.start()

    coordinator = manager.coordinator(StorageClass.PUBLIC)
    view = await coordinator.init(
        file_hash="9f86d081884c7d65",
        file_name="video.mp4",
        file_size=15_000_000,
        content_type="video/mp4",
        folder_path="videos",
        total_chunks=3,
    )
    if view.status != SessionStatus.MERGED:
        for number in range(1, view.total_chunks + 1):
            if number not in view.uploaded_chunks:
                await coordinator.upload_chunk(view.session_id, number, read_chunk(number))
        record = await manager.merge_engine(StorageClass.PUBLIC).merge(
            view.session_id, expected_hash="9f86d081884c7d65"
        )

    await manager.stop()
"""

from importlib.metadata import PackageNotFoundError, version

from .config import BackoffStrategy, RetrySettings, UploadConfig
from .coordinator import SessionCoordinator
from .errors import (
    ChunkFerryError,
    ConflictError,
    DuplicateRecordError,
    InvalidArgumentError,
    MergeFailedError,
    MetadataPersistFailure,
    MetadataStoreError,
    MissingChunksError,
    NotFoundError,
    ObjectNotFoundError,
    PartInvalidError,
    PermanentStoreError,
    PreconditionFailedError,
    SessionClosedError,
    SourceMissingError,
    StoreError,
    TransientStoreError,
    VersionConflictError,
)
from .files import FileService
from .manager import UploadManager
from .merge import MergeEngine
from .models import (
    FileDetail,
    FinalizedFile,
    MergedSignal,
    MetadataState,
    ReconcileReport,
    SessionStatus,
    SessionView,
    StorageClass,
    StorageProfile,
    StoreObject,
    UploadSession,
)
from .pipeline import ConsistencyPipeline
from .reconciler import Reconciler

try:
    __version__ = version("chunkferry")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "BackoffStrategy",
    "ChunkFerryError",
    "ConflictError",
    "ConsistencyPipeline",
    "DuplicateRecordError",
    "FileDetail",
    "FileService",
    "FinalizedFile",
    "InvalidArgumentError",
    "MergeEngine",
    "MergeFailedError",
    "MergedSignal",
    "MetadataPersistFailure",
    "MetadataState",
    "MetadataStoreError",
    "MissingChunksError",
    "NotFoundError",
    "ObjectNotFoundError",
    "PartInvalidError",
    "PermanentStoreError",
    "PreconditionFailedError",
    "ReconcileReport",
    "Reconciler",
    "RetrySettings",
    "SessionClosedError",
    "SessionCoordinator",
    "SessionStatus",
    "SessionView",
    "SourceMissingError",
    "StorageClass",
    "StorageProfile",
    "StoreError",
    "StoreObject",
    "TransientStoreError",
    "UploadConfig",
    "UploadManager",
    "UploadSession",
    "VersionConflictError",
    # Version
    "__version__",
]
