"""Model exports"""
from .session import (
    Chunk,
    UploadProgress,
    UploadSession,
    UploadStatus,
    chunk_id_for,
    index_from_chunk_id,
    utcnow,
)
from .database import Base, UploadSessionRecord

__all__ = [
    "Chunk",
    "UploadProgress",
    "UploadSession",
    "UploadStatus",
    "chunk_id_for",
    "index_from_chunk_id",
    "utcnow",
    "Base",
    "UploadSessionRecord",
]
