"""Upload service configuration."""

from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import StorageClass, StorageProfile


class BackoffStrategy(str, Enum):
    """Retry backoff strategy."""

    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class RetrySettings(BaseModel):
    """Retry policy configuration."""

    model_config = ConfigDict(validate_assignment=True)

    max_attempts: int = Field(default=3, ge=1)
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_seconds: float = Field(default=2.0, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_seconds: float = Field(default=30.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        if attempt <= 0:
            return 0.0
        if self.strategy == BackoffStrategy.FIXED:
            delay = self.base_seconds
        else:
            delay = self.base_seconds * (self.factor ** (attempt - 1))
        return min(delay, self.max_seconds)


class UploadConfig(BaseSettings):
    """
    Upload service configuration.

    Uses Pydantic BaseSettings for automatic environment variable loading.
    Environment variables are prefixed with CHUNKFERRY_.

    Optional environment variables:
        CHUNKFERRY_SESSION_TTL: Session lifetime in seconds (default: 86400)
        CHUNKFERRY_SESSION_RETENTION: Keep terminal sessions this long (default: 86400)
        CHUNKFERRY_STALE_CHUNK_THRESHOLD: Minimum chunk age to sweep (default: 86400)
        CHUNKFERRY_RECONCILE_INTERVAL: Seconds between sweeps (default: 3600)
        CHUNKFERRY_RESUBMIT_GRACE: Age after which a pending metadata commit is
            re-published by the reconciler (default: 300)
        CHUNKFERRY_PERSIST_RETRY__MAX_ATTEMPTS: Metadata persist attempts (default: 3)
        CHUNKFERRY_CLEANUP_RETRY__MAX_ATTEMPTS: Chunk cleanup attempts (default: 3)
        CHUNKFERRY_PIPELINE_CONCURRENCY: Signals handled concurrently (default: 8)
        CHUNKFERRY_PUBLIC_BUCKET / CHUNKFERRY_PRIVATE_BUCKET: Bucket names
        CHUNKFERRY_PUBLIC_BASE_URL: Base URL for public objects
        CHUNKFERRY_PRESIGNED_URL_TTL: Presigned URL lifetime in seconds (default: 3600)
        CHUNKFERRY_MINIO_ENDPOINT, CHUNKFERRY_MINIO_ACCESS_KEY,
        CHUNKFERRY_MINIO_SECRET_KEY, CHUNKFERRY_MINIO_SECURE: MinIO connection
        CHUNKFERRY_DATABASE_URL: SQLAlchemy async URL for sessions and metadata
    """

    model_config = SettingsConfigDict(
        env_prefix="CHUNKFERRY_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Session lifetime before it counts as abandoned (seconds)
    session_ttl: float = Field(default=86400.0, gt=0)

    # How long terminal sessions are kept before deletion (seconds)
    session_retention: float = Field(default=86400.0, ge=0)

    # Unmerged chunks older than this are swept (seconds)
    stale_chunk_threshold: float = Field(
        default=86400.0,
        ge=1,
        validation_alias=AliasChoices(
            "stale_chunk_threshold",
            "CHUNKFERRY_STALE_CHUNK_THRESHOLD",
            "CHUNKFERRY_CHUNK_TTL",
        ),
    )

    # Reconciler period (seconds)
    reconcile_interval: float = Field(default=3600.0, gt=0)

    # Merged sessions still PENDING this long after the merge get their
    # completion signal re-published (seconds)
    resubmit_grace: float = Field(default=300.0, ge=0)

    # Metadata persist retry: 3 attempts, 2s then doubling
    persist_retry: RetrySettings = Field(default_factory=RetrySettings)

    # Chunk cleanup retry
    cleanup_retry: RetrySettings = Field(default_factory=RetrySettings)

    # Maximum completion signals handled concurrently (semaphore limit)
    pipeline_concurrency: int = Field(default=8, ge=1)

    # Queue poll interval when the pipeline is idle (seconds)
    poll_interval: float = Field(default=0.1, gt=0)

    # Optimistic-concurrency retries for one session update
    max_update_attempts: int = Field(default=16, ge=1)

    # Storage classes
    public_bucket: str = Field(default="public-assets", min_length=1)
    private_bucket: str = Field(default="private-files", min_length=1)
    public_base_url: str = Field(default="http://localhost:9000", min_length=1)

    # Presigned URL lifetime for private downloads (seconds)
    presigned_url_ttl: float = Field(
        default=3600.0,
        gt=0,
        le=604800.0,
        validation_alias=AliasChoices(
            "presigned_url_ttl",
            "CHUNKFERRY_PRESIGNED_URL_TTL",
            "CHUNKFERRY_URL_EXPIRY",
        ),
    )

    # MinIO connection
    minio_endpoint: str = "localhost:9000"
    minio_public_endpoint: str | None = None
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_secure: bool = False
    minio_region: str = "us-east-1"

    # Session and metadata catalog
    database_url: str = "sqlite+aiosqlite:///./chunkferry.db"

    def profile(self, storage_class: StorageClass) -> StorageProfile:
        """Capability struct for one storage class."""
        if storage_class == StorageClass.PUBLIC:
            return StorageProfile(
                storage_class=StorageClass.PUBLIC,
                bucket_name=self.public_bucket,
                public_base_url=self.public_base_url,
            )
        return StorageProfile(
            storage_class=StorageClass.PRIVATE,
            bucket_name=self.private_bucket,
        )

    def profiles(self) -> list[StorageProfile]:
        return [self.profile(storage_class) for storage_class in StorageClass]
