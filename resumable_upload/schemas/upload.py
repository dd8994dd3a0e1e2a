"""
Pydantic schemas for API request/response validation
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import UploadProgress, UploadSession


class InitUploadRequest(BaseModel):
    """Request to open an upload session"""
    file_name: str = Field(..., min_length=1, description="Original file name")
    total_size: int = Field(..., ge=0, description="File size in bytes")
    chunk_size: Optional[int] = Field(None, gt=0, description="Requested chunk size; clamped to server bounds")
    file_hash: Optional[str] = Field(None, description="Whole-file digest checked after assembly")
    content_type: Optional[str] = Field(None, description="MIME type stored with the final object")
    destination_path: Optional[str] = Field(None, description="Final object path; defaults to uploads/{id}/{name}")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InitUploadResponse(BaseModel):
    session_id: str
    total_chunks: int
    chunk_size: int
    expires_at: datetime


class SessionResponse(BaseModel):
    """Upload session summary"""
    session_id: str
    file_name: str
    status: str
    total_size: int
    chunk_size: int
    total_chunks: int
    uploaded_chunks: int
    remaining_chunks: int
    progress: float
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    final_path: str
    error: Optional[str] = None

    @classmethod
    def from_session(cls, session: UploadSession) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            file_name=session.file_name,
            status=session.status.value,
            total_size=session.total_size,
            chunk_size=session.chunk_size,
            total_chunks=session.total_chunks,
            uploaded_chunks=len(session.uploaded_chunk_ids),
            remaining_chunks=session.remaining_chunks,
            progress=session.progress_percent,
            created_at=session.created_at,
            updated_at=session.updated_at,
            expires_at=session.expires_at,
            completed_at=session.completed_at,
            final_path=session.final_path,
            error=session.error,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total_count: int


class ChunkUploadResponse(BaseModel):
    """Successful chunk receipt"""
    session_id: str
    chunk_index: int
    uploaded_chunks: int
    total_chunks: int
    status: str


class VerifiedChunksResponse(BaseModel):
    session_id: str
    uploaded_indices: List[int]
    total_chunks: int


class ProgressResponse(BaseModel):
    """Progress snapshot; status mirrors the stored session"""
    session_id: str
    status: str
    total_bytes: int
    uploaded_bytes: int
    percentage: float
    current_chunk_index: int
    total_chunks: int
    bandwidth: float
    estimated_seconds_remaining: int

    @classmethod
    def from_progress(cls, progress: UploadProgress) -> "ProgressResponse":
        return cls(
            session_id=progress.session_id,
            status=progress.status,
            total_bytes=progress.total_bytes,
            uploaded_bytes=progress.uploaded_bytes,
            percentage=round(progress.percentage, 2),
            current_chunk_index=progress.current_chunk_index,
            total_chunks=progress.total_chunks,
            bandwidth=progress.bandwidth,
            estimated_seconds_remaining=progress.estimated_seconds_remaining,
        )


class CompleteResponse(BaseModel):
    session_id: str
    status: str
    path: str
    size: int
    file_hash: Optional[str] = None


class CancelResponse(BaseModel):
    session_id: str
    status: str = "cancelled"
    staged_chunks_removed: int


class ErrorResponse(BaseModel):
    """Error body for domain failures"""
    error: str
    message: str
    retryable: bool = False
    session_id: Optional[str] = None
