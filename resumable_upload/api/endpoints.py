"""
FastAPI endpoints for resumable chunked uploads
"""
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from starlette.concurrency import run_in_threadpool

from ..models import UploadSession, index_from_chunk_id
from ..schemas import (
    CancelResponse,
    ChunkUploadResponse,
    CompleteResponse,
    InitUploadRequest,
    InitUploadResponse,
    ProgressResponse,
    SessionListResponse,
    SessionResponse,
    VerifiedChunksResponse,
)
from ..services import UploadSessionManager
from .deps import OWNER_KEY, get_current_user_id, get_manager, get_owned_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])

Manager = Annotated[UploadSessionManager, Depends(get_manager)]
OwnedSession = Annotated[UploadSession, Depends(get_owned_session)]
UserId = Annotated[str, Depends(get_current_user_id)]


@router.post("", response_model=InitUploadResponse, status_code=status.HTTP_201_CREATED)
def init_upload(request: InitUploadRequest, manager: Manager, user_id: UserId):
    """Open an upload session"""
    logger.info(f"📤 Init upload: {request.file_name} ({request.total_size} bytes) by {user_id}")

    metadata = dict(request.metadata)
    metadata[OWNER_KEY] = user_id
    if request.content_type:
        metadata["contentType"] = request.content_type

    try:
        session = manager.initialize_session(
            file_name=request.file_name,
            total_size=request.total_size,
            chunk_size=request.chunk_size,
            metadata=metadata,
            file_hash=request.file_hash,
            destination_path=request.destination_path,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return InitUploadResponse(
        session_id=session.session_id,
        total_chunks=session.total_chunks,
        chunk_size=session.chunk_size,
        expires_at=session.expires_at,
    )


@router.get("", response_model=SessionListResponse)
def list_uploads(
    manager: Manager,
    user_id: UserId,
    status_filter: Annotated[Optional[str], Query(alias="status")] = None,
):
    """List the caller's upload sessions, newest first"""
    sessions = [
        s for s in manager.list_sessions(status_filter)
        if s.metadata.get(OWNER_KEY, user_id) == user_id
    ]
    return SessionListResponse(
        sessions=[SessionResponse.from_session(s) for s in sessions],
        total_count=len(sessions),
    )


@router.post("/{session_id}/chunks/{chunk_index}", response_model=ChunkUploadResponse)
async def upload_chunk(
    chunk_index: int,
    request: Request,
    session: OwnedSession,
    manager: Manager,
    x_chunk_checksum: Annotated[Optional[str], Header()] = None,
):
    """
    Receive one chunk as the raw request body.

    The chunk is checked against `X-Chunk-Checksum`, staged, and recorded; the
    final object is assembled as soon as the last chunk lands.
    """
    data = await request.body()
    logger.info(f"📦 Chunk {chunk_index} for {session.session_id}: {len(data)} bytes")

    updated = await run_in_threadpool(
        manager.receive_chunk, session.session_id, chunk_index, x_chunk_checksum, data
    )
    return ChunkUploadResponse(
        session_id=updated.session_id,
        chunk_index=chunk_index,
        uploaded_chunks=len(updated.uploaded_chunk_ids),
        total_chunks=updated.total_chunks,
        status=updated.status.value,
    )


@router.get("/{session_id}/chunks", response_model=VerifiedChunksResponse)
def verify_chunks(session: OwnedSession, manager: Manager):
    """Chunks confirmed present in staging; call before resuming"""
    indices = manager.verified_indices(session.session_id)
    return VerifiedChunksResponse(
        session_id=session.session_id,
        uploaded_indices=indices,
        total_chunks=session.total_chunks,
    )


@router.get("/{session_id}/status", response_model=ProgressResponse)
def get_status(session: OwnedSession, manager: Manager):
    return ProgressResponse.from_progress(manager.get_progress(session.session_id))


@router.get("/{session_id}", response_model=SessionResponse)
def get_upload(session: OwnedSession):
    return SessionResponse.from_session(session)


@router.post("/{session_id}/pause", response_model=SessionResponse)
def pause_upload(session: OwnedSession, manager: Manager):
    logger.info(f"⏸️ Pause {session.session_id}")
    return SessionResponse.from_session(manager.pause(session.session_id))


@router.post("/{session_id}/resume", response_model=VerifiedChunksResponse)
def resume_upload(session: OwnedSession, manager: Manager):
    logger.info(f"▶️ Resume {session.session_id}")
    verified = manager.resume(session.session_id)
    return VerifiedChunksResponse(
        session_id=session.session_id,
        uploaded_indices=sorted(index_from_chunk_id(chunk_id) for chunk_id in verified),
        total_chunks=session.total_chunks,
    )


@router.post("/{session_id}/cancel", response_model=CancelResponse)
def cancel_upload(session: OwnedSession, manager: Manager):
    logger.info(f"🗑️ Cancel {session.session_id}")
    removed = manager.cancel(session.session_id)
    return CancelResponse(session_id=session.session_id, staged_chunks_removed=removed)


@router.post("/{session_id}/complete", response_model=CompleteResponse)
def complete_upload(session: OwnedSession, manager: Manager):
    """Assemble explicitly; safe to repeat after a failed or already finished assembly"""
    result = manager.finalize(session.session_id)
    return CompleteResponse(
        session_id=session.session_id,
        status="completed",
        path=result.path,
        size=result.size,
        file_hash=result.file_hash,
    )


@router.post("/{session_id}/extend", response_model=SessionResponse)
def extend_upload(session: OwnedSession, manager: Manager):
    return SessionResponse.from_session(manager.extend_session(session.session_id))


@router.post("/{session_id}/fresh", response_model=InitUploadResponse, status_code=status.HTTP_201_CREATED)
def fresh_upload(session: OwnedSession, manager: Manager):
    """Replace an expired or failed session with a new one for the same file"""
    fresh = manager.start_fresh_session(session.session_id)
    return InitUploadResponse(
        session_id=fresh.session_id,
        total_chunks=fresh.total_chunks,
        chunk_size=fresh.chunk_size,
        expires_at=fresh.expires_at,
    )
