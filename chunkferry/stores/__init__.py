"""Store capabilities and their implementations.

The core consumes three capabilities: an object store with server-side
compose, a metadata catalog of finalized files, and a session store with
compare-and-swap updates. In-memory versions back tests and single-process
use; MinIO and SQLAlchemy versions back deployments.
"""

from .base import MetadataStore, ObjectStore, SessionStore
from .memory import InMemoryMetadataStore, InMemoryObjectStore, InMemorySessionStore
from .minio import MinioObjectStore
from .sql import SqlMetadataStore, SqlSessionStore, create_session_maker, create_tables

__all__ = [
    "InMemoryMetadataStore",
    "InMemoryObjectStore",
    "InMemorySessionStore",
    "MetadataStore",
    "MinioObjectStore",
    "ObjectStore",
    "SessionStore",
    "SqlMetadataStore",
    "SqlSessionStore",
    "create_session_maker",
    "create_tables",
]
