"""Schemas module exports"""
from .upload import (
    CancelResponse,
    ChunkUploadResponse,
    CompleteResponse,
    ErrorResponse,
    InitUploadRequest,
    InitUploadResponse,
    ProgressResponse,
    SessionListResponse,
    SessionResponse,
    VerifiedChunksResponse,
)

__all__ = [
    "CancelResponse",
    "ChunkUploadResponse",
    "CompleteResponse",
    "ErrorResponse",
    "InitUploadRequest",
    "InitUploadResponse",
    "ProgressResponse",
    "SessionListResponse",
    "SessionResponse",
    "VerifiedChunksResponse",
]
