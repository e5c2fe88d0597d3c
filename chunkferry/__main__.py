"""Background worker entry point.

Usage:
    python -m chunkferry

    Or via the console script:
    chunkferry-worker

Runs the consistency pipeline and the reconciler against MinIO and the SQL
catalog until SIGINT/SIGTERM.

Environment variables (all optional, see UploadConfig):
    CHUNKFERRY_MINIO_ENDPOINT, CHUNKFERRY_MINIO_ACCESS_KEY, CHUNKFERRY_MINIO_SECRET_KEY
    CHUNKFERRY_DATABASE_URL: SQLAlchemy async URL (default: sqlite+aiosqlite:///./chunkferry.db)
    CHUNKFERRY_RECONCILE_INTERVAL: Seconds between sweeps (default: 3600)
"""

import asyncio
import logging
import sys

from .config import UploadConfig
from .manager import UploadManager

logger = logging.getLogger(__name__)


async def _run(config: UploadConfig) -> None:
    manager = await UploadManager.from_config(config)
    await manager.run_until_shutdown()


def main() -> None:
    """Run the chunkferry background worker."""
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    # Suppress per-request and per-statement logging
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    # Load config from environment
    try:
        config = UploadConfig()
    except Exception as e:
        logger.error(f"Failed to load upload config: {e}")
        sys.exit(1)

    logger.info(
        f"Starting chunkferry worker (buckets: {config.public_bucket}, {config.private_bucket})"
    )

    try:
        asyncio.run(_run(config))
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.error(f"Worker failed: {e}")
        sys.exit(1)

    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
