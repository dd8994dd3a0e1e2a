"""Upload engine services and the factory that wires them from settings."""
import logging
from datetime import timedelta
from typing import List, Optional

from ..core.config import Settings, settings as default_settings
from .assembler import Assembler, AssemblyResult
from .backends import FileBackend, MemoryBackend, RedisBackend, SessionBackend, SqlBackend
from .checksum import ChecksumVerifier
from .object_store import LocalObjectStore, MinIOObjectStore, ObjectStore
from .progress import ProgressTracker
from .session_manager import ResumableUpload, UploadSessionManager
from .session_store import SessionStore
from .splitter import ByteSource, ChunkSplitter, plan_ranges
from .sweeper import SessionSweeper
from .transport import ChunkTransport, HttpChunkTransport, StoreChunkTransport, TransferResult

logger = logging.getLogger(__name__)


def build_session_backends(config: Settings) -> List[SessionBackend]:
    """Tiers in read order: memory, then Redis and SQL when configured, then files"""
    backends: List[SessionBackend] = [MemoryBackend()]
    if config.REDIS_URL:
        backends.append(RedisBackend(url=config.REDIS_URL))
    if config.DATABASE_URL:
        backends.append(SqlBackend(database_url=config.DATABASE_URL))
    if config.SESSION_FILE_DIR:
        backends.append(FileBackend(config.SESSION_FILE_DIR))
    logger.info(f"Session tiers: {', '.join(backend.name for backend in backends)}")
    return backends


def build_object_store(config: Settings) -> ObjectStore:
    if config.STORAGE_BACKEND == "minio":
        store = MinIOObjectStore(
            endpoint=config.MINIO_ENDPOINT,
            access_key=config.MINIO_ACCESS_KEY,
            secret_key=config.MINIO_SECRET_KEY,
            bucket=config.MINIO_BUCKET,
            secure=config.MINIO_SECURE,
            staging_prefix=config.STAGING_PREFIX,
        )
        store.ensure_bucket_exists()
        return store
    if config.STORAGE_BACKEND == "local":
        return LocalObjectStore(config.LOCAL_STORAGE_DIR, staging_prefix=config.STAGING_PREFIX)
    raise ValueError(f"Unknown STORAGE_BACKEND: {config.STORAGE_BACKEND}")


def build_upload_manager(
    config: Optional[Settings] = None,
    object_store: Optional[ObjectStore] = None,
    backends: Optional[List[SessionBackend]] = None,
) -> UploadSessionManager:
    """Assemble a server-side manager whose transport writes straight to the object store"""
    config = config or default_settings
    object_store = object_store or build_object_store(config)
    verifier = ChecksumVerifier(config.CHECKSUM_ALGORITHM)
    store = SessionStore(
        backends if backends is not None else build_session_backends(config),
        retention=timedelta(seconds=config.SESSION_RETENTION_SECONDS),
    )
    return UploadSessionManager(
        store=store,
        object_store=object_store,
        splitter=ChunkSplitter(config.MIN_CHUNK_SIZE, config.MAX_CHUNK_SIZE, verifier),
        transport=StoreChunkTransport(object_store, verifier, timeout=config.CHUNK_UPLOAD_TIMEOUT),
        assembler=Assembler(object_store, verifier, timeout=config.ASSEMBLY_TIMEOUT),
        progress=ProgressTracker(max_samples=config.BANDWIDTH_SAMPLES),
        default_chunk_size=config.DEFAULT_CHUNK_SIZE,
        max_concurrent_uploads=config.MAX_CONCURRENT_UPLOADS,
        max_chunk_retries=config.MAX_CHUNK_RETRIES,
        retry_backoff=config.RETRY_BACKOFF_SECONDS,
        session_ttl=timedelta(hours=config.SESSION_TTL_HOURS),
    )


__all__ = [
    "Assembler",
    "AssemblyResult",
    "ByteSource",
    "ChecksumVerifier",
    "ChunkSplitter",
    "ChunkTransport",
    "FileBackend",
    "HttpChunkTransport",
    "LocalObjectStore",
    "MemoryBackend",
    "MinIOObjectStore",
    "ObjectStore",
    "ProgressTracker",
    "RedisBackend",
    "ResumableUpload",
    "SessionBackend",
    "SessionStore",
    "SessionSweeper",
    "SqlBackend",
    "StoreChunkTransport",
    "TransferResult",
    "UploadSessionManager",
    "build_object_store",
    "build_session_backends",
    "build_upload_manager",
    "plan_ranges",
]
