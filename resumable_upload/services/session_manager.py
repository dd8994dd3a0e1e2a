"""
Upload session orchestration.

The manager is the only component that mutates UploadSession records. It owns
the state machine:

    initialized -> uploading -> {paused <-> uploading} -> {completed | failed}

and the resume primitive: before any resume the object store's staging area is
listed and the session's uploaded set is reconciled to what is actually there,
so neither a lost acknowledgement nor a lost write can mislead the next pass.
"""
import io
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from ..core.exceptions import (
    AssemblyError,
    ChecksumMismatch,
    ChunkBudgetExhausted,
    FileIntegrityError,
    InvalidChunk,
    InvalidSessionState,
    SessionExpired,
    SessionNotFound,
    SessionNotResumable,
    TransientTransportError,
    UploadError,
)
from ..models import Chunk, UploadProgress, UploadSession, UploadStatus, index_from_chunk_id, utcnow
from .assembler import Assembler, AssemblyResult
from .checksum import ChecksumVerifier
from .object_store import ObjectStore
from .progress import ProgressTracker
from .session_store import SessionStore
from .splitter import ByteSource, ChunkSplitter, SourceLike
from .transport import ChunkTransport, StoreChunkTransport

logger = logging.getLogger(__name__)


@dataclass
class ResumableUpload:
    """An incomplete session found on start-up or by a client looking to resume"""
    session: UploadSession
    can_resume: bool
    is_expired: bool
    progress: float
    remaining_chunks: int


class _TransferState:
    """Byte accounting for one upload pass: confirmed bytes plus partial in-flight bytes"""

    def __init__(self, confirmed_bytes: int):
        self.confirmed_bytes = confirmed_bytes
        self.in_flight: Dict[int, int] = {}
        self.lock = threading.Lock()

    def partial(self, index: int, sent: int) -> int:
        with self.lock:
            self.in_flight[index] = sent
            return self.confirmed_bytes + sum(self.in_flight.values())

    def reset(self, index: int) -> None:
        with self.lock:
            self.in_flight.pop(index, None)

    def confirm(self, index: int, size: int) -> int:
        with self.lock:
            self.in_flight.pop(index, None)
            self.confirmed_bytes += size
            return self.confirmed_bytes + sum(self.in_flight.values())


class UploadSessionManager:
    """Creates sessions, decides what still needs transfer, and drives uploads to completion"""

    def __init__(
        self,
        store: SessionStore,
        object_store: ObjectStore,
        splitter: Optional[ChunkSplitter] = None,
        transport: Optional[ChunkTransport] = None,
        assembler: Optional[Assembler] = None,
        progress: Optional[ProgressTracker] = None,
        default_chunk_size: int = 5 * 1024 * 1024,
        max_concurrent_uploads: int = 4,
        max_chunk_retries: int = 3,
        retry_backoff: Sequence[float] = (1, 3, 5),
        session_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_concurrent_uploads < 1:
            raise ValueError("max_concurrent_uploads must be at least 1")
        self.store = store
        self.object_store = object_store
        self.splitter = splitter or ChunkSplitter()
        self.verifier: ChecksumVerifier = self.splitter.verifier
        self.transport = transport or StoreChunkTransport(object_store, self.verifier)
        self.assembler = assembler or Assembler(object_store, self.verifier)
        self.progress = progress or ProgressTracker()
        self.default_chunk_size = default_chunk_size
        self.max_concurrent_uploads = max_concurrent_uploads
        self.max_chunk_retries = max_chunk_retries
        self.retry_backoff = list(retry_backoff) or [0]
        self.session_ttl = session_ttl
        self.clock = clock
        self.sleep = sleep
        # Cancellation marks only live while an upload() for that session is running
        self._cancelled: Set[str] = set()
        self._active_uploads: Dict[str, int] = {}
        self._cancelled_lock = threading.Lock()

    # ==================== Lookup helpers ====================

    def get_session(self, session_id: str) -> UploadSession:
        return self.store.require(session_id)

    def _require_active(self, session_id: str) -> UploadSession:
        """Session that may still accept chunks: not terminal and not expired"""
        session = self.store.require(session_id)
        if session.status.is_terminal:
            raise SessionNotResumable(
                f"Upload session {session_id} is {session.status.value} and cannot be resumed",
                session_id,
                status=session.status.value,
            )
        if session.is_expired(self.clock()):
            raise SessionExpired(
                f"Upload session {session_id} expired at {session.expires_at.isoformat()}; start a fresh session",
                session_id,
            )
        return session

    def _was_cancelled(self, session_id: str) -> bool:
        with self._cancelled_lock:
            return session_id in self._cancelled

    def _ensure_progress(self, session: UploadSession) -> None:
        if self.progress.get_progress(session.session_id) is None:
            self.progress.initialize(session.session_id, session.total_size, session.total_chunks,
                                     uploaded_bytes=session.uploaded_bytes)

    # ==================== Session lifecycle ====================

    def initialize_session(
        self,
        file_name: str,
        total_size: int,
        chunk_size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        file_hash: Optional[str] = None,
        destination_path: Optional[str] = None,
    ) -> UploadSession:
        """Create and persist a session in the `initialized` state"""
        if not file_name:
            raise ValueError("file_name is required")
        if total_size < 0:
            raise ValueError("total_size must not be negative")

        chunk_size = self.splitter.clamp(chunk_size or self.default_chunk_size)
        session = UploadSession.create(
            file_name=file_name,
            total_size=total_size,
            chunk_size=chunk_size,
            metadata=metadata,
            ttl=self.session_ttl,
            now=self.clock(),
            destination_path=destination_path,
            file_hash=file_hash.lower() if file_hash else None,
            checksum_algorithm=self.verifier.algorithm,
        )
        self.store.put(session)
        self.progress.initialize(session.session_id, total_size, session.total_chunks)
        logger.info(
            f"Initialized upload session {session.session_id} for {file_name} "
            f"({session.total_chunks} chunks of {chunk_size} bytes)"
        )
        return session

    def initialize_from_source(
        self,
        source: SourceLike,
        chunk_size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        file_name: Optional[str] = None,
        destination_path: Optional[str] = None,
        compute_file_hash: bool = False,
    ) -> UploadSession:
        byte_source = ByteSource(source)
        file_hash = None
        if compute_file_hash and byte_source.path is not None:
            file_hash = self.verifier.file_checksum(str(byte_source.path))
        return self.initialize_session(
            file_name=file_name or byte_source.name,
            total_size=byte_source.size,
            chunk_size=chunk_size,
            metadata=metadata,
            file_hash=file_hash,
            destination_path=destination_path,
        )

    def extend_session(self, session_id: str) -> UploadSession:
        """Push expiry to a full TTL from now; expiry never moves backward"""
        self._require_active(session_id)
        now = self.clock()

        def _extend(session: UploadSession) -> None:
            session.expires_at = max(session.expires_at or now, now + self.session_ttl)

        session = self.store.update(session_id, _extend)
        logger.info(f"Extended session {session_id} until {session.expires_at.isoformat()}")
        return session

    def start_fresh_session(self, session_id: str) -> UploadSession:
        """
        Replace an expired or failed session with a new one (new id, new expiry)
        carrying the same file layout and metadata.
        """
        old = self.store.require(session_id)
        if old.status == UploadStatus.COMPLETED:
            raise InvalidSessionState(f"Upload session {session_id} already completed", session_id)

        fresh = self.initialize_session(
            file_name=old.file_name,
            total_size=old.total_size,
            chunk_size=old.chunk_size,
            metadata=old.metadata,
            file_hash=old.file_hash,
            destination_path=old.destination_path,
        )
        self._discard(session_id)
        logger.info(f"Started fresh session {fresh.session_id} replacing {session_id}")
        return fresh

    def _discard(self, session_id: str) -> int:
        self.store.delete(session_id)
        self.progress.remove(session_id)
        try:
            return self.object_store.delete_staged_session(session_id)
        except Exception as e:
            logger.warning(f"Could not remove staged chunks for {session_id}: {e}")
            return 0

    def pause(self, session_id: str) -> UploadSession:
        """Freeze further chunk dispatch; in-flight chunks are allowed to finish"""
        session = self._require_active(session_id)
        if session.status == UploadStatus.PAUSED:
            return session
        if session.status != UploadStatus.UPLOADING:
            raise InvalidSessionState(
                f"Cannot pause session {session_id} in state {session.status.value}", session_id
            )

        def _pause(s: UploadSession) -> None:
            if s.status == UploadStatus.UPLOADING:
                s.status = UploadStatus.PAUSED

        session = self.store.update(session_id, _pause)
        self.progress.pause(session_id)
        logger.info(f"Paused upload session {session_id}")
        return session

    def resume(self, session_id: str) -> List[str]:
        """Leave `paused` and reconcile against staging; returns the verified chunk ids"""
        self._require_active(session_id)

        def _resume(s: UploadSession) -> None:
            if s.status == UploadStatus.PAUSED:
                s.status = UploadStatus.UPLOADING

        self.store.update(session_id, _resume)
        verified = self.verify_uploaded_chunks(session_id)
        self.progress.resume(session_id)
        logger.info(f"Resumed upload session {session_id} with {len(verified)} verified chunk(s)")
        return verified

    def cancel(self, session_id: str) -> int:
        """Delete the session record and any staged chunks; returns chunks removed"""
        self.store.require(session_id)
        with self._cancelled_lock:
            if session_id in self._active_uploads:
                self._cancelled.add(session_id)
        removed = self._discard(session_id)
        logger.info(f"Cancelled upload session {session_id} ({removed} staged chunk(s) removed)")
        return removed

    # ==================== Verification & resume ====================

    def _reconcile(self, session_id: str) -> UploadSession:
        staged = self.object_store.list_staged_chunks(session_id)

        def _apply(session: UploadSession) -> None:
            if session.status.is_terminal:
                return
            present = {session.chunk_id(index) for index in staged if 0 <= index < session.total_chunks}
            phantom = session.uploaded_chunk_ids - present
            recovered = present - session.uploaded_chunk_ids
            if phantom:
                logger.warning(f"Session {session_id}: {len(phantom)} chunk(s) recorded but not staged")
            if recovered:
                logger.info(f"Session {session_id}: {len(recovered)} staged chunk(s) recovered from storage")
            session.uploaded_chunk_ids = present
            session.failed_chunk_ids -= present
            session.last_chunk_index = max(
                (index for index in staged if index < session.total_chunks), default=-1
            )

        return self.store.update(session_id, _apply)

    def verify_uploaded_chunks(self, session_id: str) -> List[str]:
        """
        Ask the object store which chunks are durable and make the session match.

        Returns the verified chunk ids ordered by index.
        """
        session = self.store.require(session_id)
        if session.status == UploadStatus.COMPLETED:
            return [session.chunk_id(index) for index in range(session.total_chunks)]
        session = self._require_active(session_id)

        before = session.uploaded_bytes
        try:
            session = self._reconcile(session_id)
        except UploadError:
            raise
        except Exception as e:
            raise TransientTransportError(f"Could not list staged chunks: {e}", session_id) from e

        if session.uploaded_bytes < before or self.progress.get_progress(session_id) is None:
            # Verified state is behind what was reported; start a new tracking epoch
            self.progress.initialize(session_id, session.total_size, session.total_chunks,
                                     uploaded_bytes=session.uploaded_bytes)
        else:
            self.progress.update(session_id, session.uploaded_bytes)
        return sorted(session.uploaded_chunk_ids)

    def verified_indices(self, session_id: str) -> List[int]:
        session = self.store.require(session_id)
        verified = set(self.verify_uploaded_chunks(session_id))
        return [index for index in range(session.total_chunks) if session.chunk_id(index) in verified]

    def chunks_to_upload(self, session_id: str, source: SourceLike) -> List[Chunk]:
        """Re-split the source and return exactly the chunks not verified durable"""
        session = self._require_active(session_id)
        verified = set(self.verify_uploaded_chunks(session_id))

        sequence = self.splitter.split(source, session.chunk_size, id_factory=session.chunk_id)
        if sequence.total_size != session.total_size:
            raise InvalidChunk(
                f"File does not match the original upload session "
                f"({sequence.total_size} bytes, expected {session.total_size})",
                session_id,
            )
        return [
            sequence.chunk_at(index)
            for index in range(session.total_chunks)
            if session.chunk_id(index) not in verified
        ]

    # ==================== Chunk bookkeeping ====================

    def mark_chunk_uploaded(self, session_id: str, chunk_id: str, index: int) -> UploadSession:
        """Record a durable chunk; repeating the call for the same chunk is a no-op"""
        session = self.store.require(session_id)
        if not 0 <= index < session.total_chunks:
            raise InvalidChunk(f"Chunk index {index} out of range 0..{session.total_chunks - 1}", session_id)
        canonical_id = session.chunk_id(index)
        if chunk_id != canonical_id:
            logger.debug(f"Normalizing chunk id {chunk_id} to {canonical_id}")

        def _mark(s: UploadSession) -> None:
            if s.status == UploadStatus.INITIALIZED:
                s.status = UploadStatus.UPLOADING
            s.uploaded_chunk_ids.add(canonical_id)
            s.failed_chunk_ids.discard(canonical_id)
            s.last_chunk_index = max(s.last_chunk_index, index)

        session = self.store.update(session_id, _mark)
        self._ensure_progress(session)
        self.progress.update(session_id, session.uploaded_bytes, index)
        return session

    def mark_chunk_failed(
        self,
        session_id: str,
        chunk_id: str,
        reason: Optional[str] = None,
        index: Optional[int] = None,
    ) -> UploadSession:
        """Count a failed attempt; past the retry budget the whole session fails"""
        session = self.store.require(session_id)
        if index is None:
            index = index_from_chunk_id(chunk_id)
        if index is None or not 0 <= index < session.total_chunks:
            raise InvalidChunk(f"Unknown chunk {chunk_id} for session {session_id}", session_id)
        canonical_id = session.chunk_id(index)
        if chunk_id != canonical_id:
            logger.debug(f"Normalizing chunk id {chunk_id} to {canonical_id}")
        chunk_id = canonical_id

        def _fail(s: UploadSession) -> None:
            count = s.retry_counts.get(chunk_id, 0) + 1
            s.retry_counts[chunk_id] = count
            s.failed_chunk_ids.add(chunk_id)
            if count > self.max_chunk_retries and not s.status.is_terminal:
                s.status = UploadStatus.FAILED
                s.error = f"Chunk {chunk_id} failed {count} times: {reason or 'unknown error'}"

        session = self.store.update(session_id, _fail)
        if session.status == UploadStatus.FAILED:
            self.progress.fail(session_id)
            logger.error(f"Session {session_id} failed: {session.error}")
        else:
            logger.warning(
                f"Chunk {chunk_id} failed (attempt {session.retry_counts[chunk_id]}"
                f"/{self.max_chunk_retries + 1}): {reason}"
            )
        return session

    def _start_uploading(self, session_id: str) -> UploadSession:
        def _start(s: UploadSession) -> None:
            if s.status == UploadStatus.INITIALIZED:
                s.status = UploadStatus.UPLOADING

        return self.store.update(session_id, _start)

    # ==================== Server-side receipt ====================

    def receive_chunk(self, session_id: str, index: int, checksum: Optional[str], data: bytes) -> UploadSession:
        """
        Accept one chunk pushed by a client: validate, stage, record, and
        assemble once every chunk is present.
        """
        session = self._require_active(session_id)
        if not 0 <= index < session.total_chunks:
            raise InvalidChunk(f"Invalid chunk index. Must be between 0 and {session.total_chunks - 1}", session_id)
        expected = session.chunk_length(index)
        if len(data) != expected:
            raise InvalidChunk(f"Chunk size mismatch: got {len(data)} bytes, expected {expected}", session_id)

        chunk_id = session.chunk_id(index)
        if checksum and not self.verifier.matches(checksum, data):
            actual = self.verifier.checksum(data)
            session = self.mark_chunk_failed(session_id, chunk_id, "checksum mismatch", index=index)
            if session.status == UploadStatus.FAILED:
                raise ChunkBudgetExhausted(session.error, session_id, chunk_id=chunk_id)
            raise ChecksumMismatch(f"Checksum mismatch for chunk {index}", session_id,
                                   expected=checksum, actual=actual)

        self._start_uploading(session_id)
        try:
            self.object_store.put_staged_chunk(session_id, index, io.BytesIO(data), len(data))
        except Exception as e:
            raise TransientTransportError(f"Failed to stage chunk {index}: {e}", session_id) from e

        try:
            session = self.mark_chunk_uploaded(session_id, chunk_id, index)
        except SessionNotFound:
            # Cancelled while the chunk was in flight
            self.object_store.delete_staged_chunk(session_id, index)
            raise
        logger.info(f"Stored chunk {index + 1}/{session.total_chunks} for session {session_id}")

        if session.all_chunks_uploaded:
            try:
                self.finalize(session_id)
            except AssemblyError as e:
                if isinstance(e, FileIntegrityError):
                    raise
                logger.error(f"Assembly for {session_id} failed and can be retried: {e}")
            session = self.store.require(session_id)
        return session

    # ==================== Assembly ====================

    def finalize(self, session_id: str) -> AssemblyResult:
        """
        Assemble the final object once staging covers every chunk.

        Runs under the session lock so a repeated completion request waits for
        the first one and then sees `completed`.
        """
        with self.store.lock(session_id):
            return self._finalize(session_id)

    def _finalize(self, session_id: str) -> AssemblyResult:
        session = self.store.require(session_id)
        if session.status == UploadStatus.COMPLETED:
            return AssemblyResult(session_id, session.final_path, session.total_size,
                                  file_hash=session.file_hash, already_existed=True)
        if session.status == UploadStatus.FAILED:
            raise SessionNotResumable(f"Upload session {session_id} is failed", session_id, status="failed")

        # A crash between writing the object and recording completion leaves no staging to reconcile
        recorded_complete = (
            session.all_chunks_uploaded
            and self.object_store.object_size(session.final_path) == session.total_size
        )
        if not recorded_complete:
            session = self._reconcile(session_id)
            if not session.all_chunks_uploaded:
                raise InvalidSessionState(
                    f"Missing chunks: {session.remaining_chunks} of {session.total_chunks} not staged", session_id
                )

        try:
            result = self.assembler.assemble(session)
        except FileIntegrityError as e:
            def _fail(s: UploadSession) -> None:
                s.status = UploadStatus.FAILED
                s.error = e.message

            self.store.update(session_id, _fail)
            self.progress.fail(session_id)
            raise
        except AssemblyError as e:
            def _note(s: UploadSession) -> None:
                s.error = e.message

            # Staged chunks stay; the session stays `uploading` so assembly can be retried
            self.store.update(session_id, _note)
            raise

        def _complete(s: UploadSession) -> None:
            s.status = UploadStatus.COMPLETED
            s.uploaded_chunk_ids = {s.chunk_id(index) for index in range(s.total_chunks)}
            s.failed_chunk_ids.clear()
            s.error = None
            s.completed_at = self.clock()
            if result.file_hash and not s.file_hash:
                s.file_hash = result.file_hash

        self.store.update(session_id, _complete)
        self.progress.complete(session_id)
        logger.info(f"Completed upload {session_id}: {result.size} bytes at {result.path}")
        return result

    # ==================== Transfer driver ====================

    def _should_stop_dispatch(self, session_id: str) -> bool:
        session = self.store.get(session_id)
        if session is None:
            return True
        return session.status != UploadStatus.UPLOADING or session.is_expired(self.clock())

    def _transfer_chunk(self, session_id: str, chunk: Chunk, state: _TransferState) -> bool:
        attempt = 0
        while True:
            def _on_progress(sent: int, index: int = chunk.index) -> None:
                self.progress.update(session_id, state.partial(index, sent), index)

            result = self.transport.upload(chunk, session_id, on_progress=_on_progress)
            if result.success:
                self.progress.update(session_id, state.confirm(chunk.index, chunk.size), chunk.index)
                try:
                    self.mark_chunk_uploaded(session_id, chunk.id, chunk.index)
                except SessionNotFound:
                    if self._was_cancelled(session_id):
                        self.object_store.delete_staged_chunk(session_id, chunk.index)
                    raise
                return True

            state.reset(chunk.index)
            if result.fatal_error is not None:
                raise result.fatal_error

            session = self.mark_chunk_failed(session_id, chunk.id, result.reason, index=chunk.index)
            if session.status == UploadStatus.FAILED:
                raise ChunkBudgetExhausted(session.error, session_id, chunk_id=chunk.id)

            delay = self.retry_backoff[min(attempt, len(self.retry_backoff) - 1)]
            attempt += 1
            logger.info(f"Retrying chunk {chunk.index} for {session_id} in {delay}s")
            self.sleep(delay)
            if self.store.get(session_id) is None:
                raise SessionNotFound(f"Upload session {session_id} was cancelled", session_id)

    def upload(self, session_id: str, source: SourceLike) -> UploadSession:
        """
        Upload every chunk not yet durable using a bounded pool of transfers,
        then assemble. Returns early (without error) when the session is paused.
        """
        with self._cancelled_lock:
            self._active_uploads[session_id] = self._active_uploads.get(session_id, 0) + 1
        try:
            return self._run_upload(session_id, source)
        finally:
            with self._cancelled_lock:
                remaining = self._active_uploads.pop(session_id) - 1
                if remaining:
                    self._active_uploads[session_id] = remaining
                else:
                    self._cancelled.discard(session_id)

    def _run_upload(self, session_id: str, source: SourceLike) -> UploadSession:
        session = self._require_active(session_id)
        if session.status == UploadStatus.PAUSED:
            raise InvalidSessionState(f"Upload session {session_id} is paused; resume it first", session_id)

        pending = self.chunks_to_upload(session_id, source)
        session = self._start_uploading(session_id)
        self._ensure_progress(session)
        self.progress.resume(session_id)
        logger.info(
            f"Uploading {len(pending)} of {session.total_chunks} chunk(s) for {session_id} "
            f"with {self.max_concurrent_uploads} parallel transfer(s)"
        )

        state = _TransferState(session.uploaded_bytes)
        slots = threading.BoundedSemaphore(self.max_concurrent_uploads)
        futures: List[Future] = []
        with ThreadPoolExecutor(max_workers=self.max_concurrent_uploads) as pool:
            for chunk in pending:
                slots.acquire()
                if self._should_stop_dispatch(session_id):
                    slots.release()
                    break
                future = pool.submit(self._transfer_chunk, session_id, chunk, state)
                future.add_done_callback(lambda _: slots.release())
                futures.append(future)

        # Every outstanding chunk has settled; only now decide the session's fate
        errors = [future.exception() for future in futures if future.exception() is not None]
        if self._was_cancelled(session_id) or self.store.get(session_id) is None:
            raise SessionNotFound(f"Upload session {session_id} was cancelled", session_id)
        for error in errors:
            if isinstance(error, ChunkBudgetExhausted):
                raise error
        for error in errors:
            raise error

        session = self.store.require(session_id)
        if session.status == UploadStatus.FAILED:
            raise ChunkBudgetExhausted(session.error or "Upload failed", session_id)
        if session.status == UploadStatus.PAUSED:
            logger.info(f"Session {session_id} paused with {session.remaining_chunks} chunk(s) remaining")
            return session
        if session.is_expired(self.clock()) and not session.all_chunks_uploaded:
            raise SessionExpired(f"Upload session {session_id} expired during upload", session_id)

        if session.all_chunks_uploaded:
            self.finalize(session_id)
        return self.store.require(session_id)

    # ==================== Reporting ====================

    def get_progress(self, session_id: str) -> UploadProgress:
        """Progress view whose status always reflects the stored session"""
        session = self.store.require(session_id)
        progress = self.progress.get_progress(session_id)
        if progress is None:
            uploaded = session.total_size if session.status == UploadStatus.COMPLETED else session.uploaded_bytes
            progress = UploadProgress(
                session_id=session_id,
                total_bytes=session.total_size,
                uploaded_bytes=uploaded,
                percentage=ProgressTracker._percentage(uploaded, session.total_size),
                current_chunk_index=max(session.last_chunk_index, 0),
                total_chunks=session.total_chunks,
                started_at=session.created_at,
                last_update_at=session.updated_at,
            )
        progress.status = session.status.value
        return progress

    def list_sessions(self, status: Optional[str] = None) -> List[UploadSession]:
        sessions = self.store.list_sessions()
        if status:
            sessions = [s for s in sessions if s.status.value == status]
        return sessions

    def detect_resumable_sessions(self) -> List[ResumableUpload]:
        now = self.clock()
        found = []
        for session in self.store.list_sessions():
            if session.status.is_terminal:
                continue
            expired = session.is_expired(now)
            found.append(ResumableUpload(
                session=session,
                can_resume=not expired,
                is_expired=expired,
                progress=session.progress_percent,
                remaining_chunks=session.remaining_chunks,
            ))
        return found

    def session_stats(self, session_id: str) -> Dict[str, Any]:
        session = self.store.require(session_id)
        return {
            "total_chunks": session.total_chunks,
            "uploaded_chunks": len(session.uploaded_chunk_ids),
            "failed_chunks": len(session.failed_chunk_ids),
            "progress": session.progress_percent,
            "remaining_chunks": session.remaining_chunks,
            "is_expired": session.is_expired(self.clock()),
        }

    # ==================== Housekeeping ====================

    def cleanup_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Remove sessions past expiry plus retention, with their staged chunks"""
        now = now or self.clock()
        removed = []
        for session in self.store.list_expired(now - self.store.retention):
            if session.status == UploadStatus.COMPLETED:
                self.store.delete(session.session_id)
                self.progress.remove(session.session_id)
            else:
                self._discard(session.session_id)
            removed.append(session.session_id)
        self.progress.cleanup()
        if removed:
            logger.info(f"Cleaned up {len(removed)} expired session(s)")
        return removed
