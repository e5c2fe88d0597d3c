"""Upload manager - wires the components and runs the background jobs."""

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncEngine

from .config import UploadConfig
from .coordinator import SessionCoordinator
from .files import FileService
from .merge import MergeEngine
from .models import StorageClass, utc_now
from .pipeline import ConsistencyPipeline
from .reconciler import Reconciler
from .stores import (
    InMemoryMetadataStore,
    InMemoryObjectStore,
    InMemorySessionStore,
    MinioObjectStore,
    SqlMetadataStore,
    SqlSessionStore,
    create_session_maker,
    create_tables,
)
from .stores.base import MetadataStore, ObjectStore, SessionStore

logger = logging.getLogger(__name__)


class UploadManager:
    """
    One coordinator, merge engine and file service per storage class, sharing
    a single consistency pipeline and reconciler.

    Example:
        manager = await UploadManager.from_config(UploadConfig())
        coordinator = manager.coordinator(StorageClass.PRIVATE)
        view = await coordinator.init(file_hash, "report.pdf", size, "application/pdf",
                                      "reports", total_chunks=4)
    """

    def __init__(
        self,
        config: UploadConfig,
        sessions: SessionStore,
        metadata: MetadataStore,
        objects: ObjectStore,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._sessions = sessions
        self._metadata = metadata
        self._objects = objects
        self._engine: AsyncEngine | None = None

        self.pipeline = ConsistencyPipeline(config, sessions, metadata, objects)
        self.reconciler = Reconciler(
            config,
            config.profiles(),
            sessions,
            metadata,
            objects,
            pipeline=self.pipeline,
            clock=clock,
        )

        self._coordinators: dict[StorageClass, SessionCoordinator] = {}
        self._merge_engines: dict[StorageClass, MergeEngine] = {}
        self._files: dict[StorageClass, FileService] = {}
        for profile in config.profiles():
            coordinator = SessionCoordinator(
                config, profile, sessions, metadata, objects, clock=clock
            )
            self._coordinators[profile.storage_class] = coordinator
            self._merge_engines[profile.storage_class] = MergeEngine(
                coordinator, objects, self.pipeline, clock=clock
            )
            self._files[profile.storage_class] = FileService(
                config, profile, objects, metadata, clock=clock
            )

        self._tasks: list[asyncio.Task[None]] = []

    @classmethod
    async def from_config(cls, config: UploadConfig) -> "UploadManager":
        """MinIO object store plus SQL sessions and metadata, tables created."""
        engine, session_maker = create_session_maker(config.database_url)
        await create_tables(engine)
        manager = cls(
            config,
            SqlSessionStore(session_maker),
            SqlMetadataStore(session_maker),
            MinioObjectStore.from_config(config),
        )
        manager._engine = engine
        return manager

    @classmethod
    def in_memory(
        cls, config: UploadConfig, clock: Callable[[], datetime] = utc_now
    ) -> "UploadManager":
        """Everything in process; nothing survives a restart."""
        return cls(
            config,
            InMemorySessionStore(),
            InMemoryMetadataStore(),
            InMemoryObjectStore(),
            clock=clock,
        )

    def coordinator(self, storage_class: StorageClass) -> SessionCoordinator:
        return self._coordinators[storage_class]

    def merge_engine(self, storage_class: StorageClass) -> MergeEngine:
        return self._merge_engines[storage_class]

    def files(self, storage_class: StorageClass) -> FileService:
        return self._files[storage_class]

    async def start(self) -> list[asyncio.Task[None]]:
        """
        Start the pipeline and reconciler.

        Returns the background task handles.
        """
        logger.info("Starting upload manager")
        self._tasks = [
            asyncio.create_task(self.pipeline.run()),
            asyncio.create_task(self.reconciler.run()),
        ]
        logger.info("Upload manager started")
        return self._tasks

    async def stop(self) -> None:
        """Stop the background jobs, then handle every signal still queued."""
        logger.info("Stopping upload manager")

        self.pipeline.shutdown()
        self.reconciler.shutdown()

        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []

        if self.pipeline.pending:
            logger.info(
                f"Handling {self.pipeline.pending} queued completion signals before stopping"
            )
            await self.pipeline.drain()

        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

        logger.info("Upload manager stopped")

    async def run_until_shutdown(self) -> None:
        """
        Run background jobs until SIGINT/SIGTERM.

        Convenience method for standalone worker processes.
        """
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def signal_handler() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        try:
            await self.start()
            await stop_event.wait()
        finally:
            await self.stop()
