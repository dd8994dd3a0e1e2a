import hashlib
import io
import threading
import time

import pytest

from resumable_upload.core.exceptions import (
    ChecksumMismatch,
    ChunkBudgetExhausted,
    FileIntegrityError,
    InvalidChunk,
    InvalidSessionState,
    SessionExpired,
    SessionNotFound,
    SessionNotResumable,
)
from resumable_upload.models import UploadStatus
from resumable_upload.services import (
    ChunkSplitter,
    FileBackend,
    MemoryBackend,
    ProgressTracker,
    SessionStore,
    StoreChunkTransport,
)

from conftest import KB, make_bytes


def send(manager, session_id, chunk):
    """Stage one chunk through the manager's transport and record it"""
    result = manager.transport.upload(chunk, session_id)
    assert result.success
    return manager.mark_chunk_uploaded(session_id, chunk.id, chunk.index)


def final_bytes(object_store, session):
    return object_store._resolve(session.final_path).read_bytes()


# ==================== Lifecycle ====================

def test_initialize_session(manager, clock):
    session = manager.initialize_session("movie.mp4", 100 * KB, chunk_size=16 * KB, metadata={"title": "x"})

    assert session.status == UploadStatus.INITIALIZED
    assert session.total_chunks == 7
    assert session.expires_at == clock() + manager.session_ttl
    assert manager.get_session(session.session_id).metadata == {"title": "x"}
    assert manager.get_progress(session.session_id).percentage == 0.0


def test_initialize_clamps_chunk_size(make_manager):
    manager = make_manager(splitter=ChunkSplitter(min_chunk_size=1024 * 1024, max_chunk_size=10 * 1024 * 1024))

    small = manager.initialize_session("a", 50 * 1024 * 1024, chunk_size=10)
    large = manager.initialize_session("b", 50 * 1024 * 1024, chunk_size=64 * 1024 * 1024)

    assert small.chunk_size == 1024 * 1024
    assert large.chunk_size == 10 * 1024 * 1024


def test_initialize_rejects_bad_input(manager):
    with pytest.raises(ValueError):
        manager.initialize_session("", 10)
    with pytest.raises(ValueError):
        manager.initialize_session("a", -1)


def test_initialize_from_source(manager, write_file):
    data = make_bytes(40 * KB)
    path = write_file(data, "clip.mov")

    session = manager.initialize_from_source(path, chunk_size=16 * KB, compute_file_hash=True)

    assert session.file_name == "clip.mov"
    assert session.total_size == len(data)
    assert session.file_hash == hashlib.sha256(data).hexdigest()


def test_upload_end_to_end(manager, object_store, write_file):
    data = make_bytes(100 * KB)
    path = write_file(data)
    session = manager.initialize_from_source(path, chunk_size=16 * KB, compute_file_hash=True)

    done = manager.upload(session.session_id, path)

    assert done.status == UploadStatus.COMPLETED
    assert done.completed_at is not None
    assert final_bytes(object_store, done) == data
    assert object_store.list_staged_chunks(session.session_id) == []
    assert manager.get_progress(session.session_id).percentage == 100.0


def test_zero_byte_upload(manager, object_store, write_file):
    path = write_file(b"")
    session = manager.initialize_from_source(path)

    done = manager.upload(session.session_id, path)

    assert done.status == UploadStatus.COMPLETED
    assert final_bytes(object_store, done) == b""


# ==================== Idempotency & verification ====================

def test_mark_chunk_uploaded_is_idempotent(manager, write_file):
    path = write_file(make_bytes(50 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    chunk = manager.chunks_to_upload(session.session_id, path)[1]

    first = send(manager, session.session_id, chunk)
    second = manager.mark_chunk_uploaded(session.session_id, chunk.id, chunk.index)

    assert first.uploaded_chunk_ids == second.uploaded_chunk_ids == {chunk.id}
    assert second.status == UploadStatus.UPLOADING


def test_mark_chunk_uploaded_rejects_bad_index(manager):
    session = manager.initialize_session("a", 10 * KB, chunk_size=4 * KB)

    with pytest.raises(InvalidChunk):
        manager.mark_chunk_uploaded(session.session_id, "x", 3)


def test_verification_drops_chunks_missing_from_storage(manager, object_store, write_file):
    path = write_file(make_bytes(64 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    for chunk in manager.chunks_to_upload(session.session_id, path)[:3]:
        send(manager, session.session_id, chunk)

    object_store.delete_staged_chunk(session.session_id, 1)
    verified = manager.verify_uploaded_chunks(session.session_id)

    assert verified == [session.chunk_id(0), session.chunk_id(2)]
    assert [c.index for c in manager.chunks_to_upload(session.session_id, path)] == [1, 3]


def test_verification_recovers_unacknowledged_chunks(manager, object_store, write_file):
    data = make_bytes(64 * KB)
    path = write_file(data)
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    # Write landed but the acknowledgement never did
    object_store.put_staged_chunk(session.session_id, 2, io.BytesIO(data[32 * KB:48 * KB]), 16 * KB)

    assert manager.verify_uploaded_chunks(session.session_id) == [session.chunk_id(2)]
    assert manager.verified_indices(session.session_id) == [2]


def test_chunks_to_upload_rejects_different_file(manager, write_file):
    path = write_file(make_bytes(64 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    other = write_file(make_bytes(60 * KB), "other.bin")

    with pytest.raises(InvalidChunk):
        manager.chunks_to_upload(session.session_id, other)


# ==================== Scenario A / B: crash and resume ====================

def test_crash_after_seven_chunks_then_resume(store, object_store, session_dir, clock, make_manager, write_file):
    data = make_bytes(47_000_000, seed=47)
    path = write_file(data, "big.bin")
    manager = make_manager(splitter=ChunkSplitter(min_chunk_size=1024 * 1024, max_chunk_size=10 * 1024 * 1024))

    session = manager.initialize_from_source(path, chunk_size=5_000_000)
    assert session.total_chunks == 10
    assert session.chunk_length(9) == 2_000_000

    for chunk in manager.chunks_to_upload(session.session_id, path)[:7]:
        send(manager, session.session_id, chunk)

    # New process: in-memory state is gone, the file tier and object store survive
    restarted = make_manager(
        store=SessionStore([MemoryBackend(), FileBackend(str(session_dir))], clock=clock),
        splitter=ChunkSplitter(min_chunk_size=1024 * 1024, max_chunk_size=10 * 1024 * 1024),
        progress=ProgressTracker(),
    )

    verified = restarted.verify_uploaded_chunks(session.session_id)
    assert verified == [session.chunk_id(i) for i in range(7)]
    remaining = restarted.chunks_to_upload(session.session_id, path)
    assert [c.index for c in remaining] == [7, 8, 9]

    done = restarted.upload(session.session_id, path)

    assert done.status == UploadStatus.COMPLETED
    assembled = final_bytes(object_store, done)
    assert len(assembled) == 47_000_000
    assert assembled == data


# ==================== Scenario C: retry budget ====================

def test_retry_budget_exhaustion_fails_session(make_manager, flaky_transport, object_store, write_file, sleeps):
    transport = flaky_transport(failures={3: 4})
    manager = make_manager(transport=transport, max_chunk_retries=3, max_concurrent_uploads=1)
    path = write_file(make_bytes(80 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)

    with pytest.raises(ChunkBudgetExhausted):
        manager.upload(session.session_id, path)

    failed = manager.get_session(session.session_id)
    assert failed.status == UploadStatus.FAILED
    assert failed.retry_counts[session.chunk_id(3)] == 4
    assert transport.attempts.count(3) == 4
    assert sleeps == [1, 3, 5]
    assert not object_store.object_exists(failed.final_path)

    with pytest.raises(SessionNotFound) as excinfo:
        manager.chunks_to_upload(session.session_id, path)
    assert isinstance(excinfo.value, SessionNotResumable)


def test_transient_failures_within_budget_recover(make_manager, flaky_transport, object_store, write_file, sleeps):
    data = make_bytes(64 * KB)
    transport = flaky_transport(failures={0: 2, 2: 3}, checksum_mismatch=False)
    manager = make_manager(transport=transport, max_chunk_retries=3)
    path = write_file(data)
    session = manager.initialize_from_source(path, chunk_size=16 * KB)

    done = manager.upload(session.session_id, path)

    assert done.status == UploadStatus.COMPLETED
    assert final_bytes(object_store, done) == data
    assert done.failed_chunk_ids == set()
    assert sorted(transport.sent) == [0, 1, 2, 3]
    assert len(sleeps) == 5


def test_mark_chunk_failed_counts_attempts(manager):
    session = manager.initialize_session("a", 10 * KB, chunk_size=4 * KB)
    chunk_id = session.chunk_id(0)

    for _ in range(3):
        updated = manager.mark_chunk_failed(session.session_id, chunk_id, "boom")
    assert updated.status == UploadStatus.INITIALIZED
    assert updated.retry_counts[chunk_id] == 3

    updated = manager.mark_chunk_failed(session.session_id, chunk_id, "boom")
    assert updated.status == UploadStatus.FAILED
    assert "boom" in updated.error


def test_mark_chunk_failed_normalizes_chunk_ids(manager, write_file):
    path = write_file(make_bytes(10 * KB))
    session = manager.initialize_from_source(path, chunk_size=4 * KB)
    canonical = session.chunk_id(1)

    manager.mark_chunk_failed(session.session_id, "client-side-id", "boom", index=1)
    manager.mark_chunk_failed(session.session_id, "stale-session:000001", "boom")
    updated = manager.mark_chunk_uploaded(session.session_id, "client-side-id", 1)

    assert updated.retry_counts == {canonical: 2}
    assert updated.failed_chunk_ids == set()
    with pytest.raises(InvalidChunk):
        manager.mark_chunk_failed(session.session_id, "no-index-here", "boom")


# ==================== Scenario D: pause and resume ====================

def test_pause_then_resume_ten_minutes_later(make_manager, flaky_transport, object_store, clock, write_file):
    data = make_bytes(96 * KB)
    path = write_file(data)
    holder = {}

    def pause_after_second_chunk(chunk):
        if chunk.index == 2 and not holder.get("paused"):
            holder["paused"] = True
            holder["manager"].pause(holder["session_id"])

    transport = flaky_transport(before_send=pause_after_second_chunk)
    manager = make_manager(transport=transport, max_concurrent_uploads=1)
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    holder.update(manager=manager, session_id=session.session_id)

    paused = manager.upload(session.session_id, path)

    assert paused.status == UploadStatus.PAUSED
    # The in-flight chunk finished; nothing after it was dispatched
    assert paused.uploaded_indices == {0, 1, 2}
    assert manager.get_progress(session.session_id).status == "paused"

    with pytest.raises(InvalidSessionState):
        manager.upload(session.session_id, path)

    clock.advance(minutes=10)
    verified = manager.resume(session.session_id)
    assert verified == [session.chunk_id(i) for i in range(3)]

    done = manager.upload(session.session_id, path)

    assert done.status == UploadStatus.COMPLETED
    assert transport.sent == [0, 1, 2, 3, 4, 5]
    assert final_bytes(object_store, done) == data


def test_pause_requires_uploading(manager):
    session = manager.initialize_session("a", 10 * KB, chunk_size=4 * KB)

    with pytest.raises(InvalidSessionState):
        manager.pause(session.session_id)


# ==================== Concurrency ====================

class CountingTransport(StoreChunkTransport):
    """Staging transport that records how many transfers overlap"""

    def __init__(self, object_store):
        super().__init__(object_store)
        self.lock = threading.Lock()
        self.in_flight = 0
        self.peak = 0

    def upload(self, chunk, session_id, on_progress=None):
        with self.lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(0.02)
            return super().upload(chunk, session_id, on_progress)
        finally:
            with self.lock:
                self.in_flight -= 1


def test_upload_never_exceeds_concurrency_limit(make_manager, object_store, write_file):
    transport = CountingTransport(object_store)
    manager = make_manager(transport=transport, max_concurrent_uploads=3)
    data = make_bytes(320 * KB)
    path = write_file(data)
    session = manager.initialize_from_source(path, chunk_size=16 * KB)

    manager.upload(session.session_id, path)

    assert 2 <= transport.peak <= 3
    assert manager.get_session(session.session_id).status == UploadStatus.COMPLETED
    assert final_bytes(object_store, session) == data


def test_cancel_without_running_upload_leaves_no_marker(manager):
    session = manager.initialize_session("a", 10 * KB, chunk_size=4 * KB)

    manager.cancel(session.session_id)

    assert manager._cancelled == set()
    assert manager._active_uploads == {}


# ==================== Progress ====================

def test_progress_is_monotonic_during_upload(make_manager, flaky_transport, write_file):
    seen = []

    class RecordingTracker(ProgressTracker):
        def update(self, session_id, uploaded_bytes, current_chunk_index=None):
            super().update(session_id, uploaded_bytes, current_chunk_index)
            progress = self.get_progress(session_id)
            if progress is not None:
                seen.append(progress.percentage)

    transport = flaky_transport(failures={1: 1, 4: 2}, checksum_mismatch=False)
    manager = make_manager(transport=transport, progress=RecordingTracker())
    path = write_file(make_bytes(300 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)

    manager.upload(session.session_id, path)

    assert seen == sorted(seen)
    assert seen[-1] == 100.0


def test_status_reflects_stored_session_without_tracker(make_manager, store, write_file):
    path = write_file(make_bytes(64 * KB))
    manager = make_manager()
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    send(manager, session.session_id, manager.chunks_to_upload(session.session_id, path)[0])

    fresh_process = make_manager(progress=ProgressTracker())
    progress = fresh_process.get_progress(session.session_id)

    assert progress.status == "uploading"
    assert progress.uploaded_bytes == 16 * KB
    assert progress.percentage == 25.0


# ==================== Expiry ====================

def test_expired_session_rejects_uploads(manager, clock, write_file):
    path = write_file(make_bytes(32 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)

    clock.advance(hours=24, seconds=1)

    with pytest.raises(SessionExpired):
        manager.upload(session.session_id, path)
    with pytest.raises(SessionExpired):
        manager.chunks_to_upload(session.session_id, path)
    with pytest.raises(SessionExpired):
        manager.receive_chunk(session.session_id, 0, None, b"x" * 16 * KB)
    with pytest.raises(SessionExpired):
        manager.resume(session.session_id)
    with pytest.raises(SessionExpired):
        manager.extend_session(session.session_id)


def test_start_fresh_session_after_expiry(manager, object_store, clock, write_file):
    data = make_bytes(32 * KB)
    path = write_file(data)
    old = manager.initialize_from_source(path, chunk_size=16 * KB, metadata={"title": "holiday"})
    send(manager, old.session_id, manager.chunks_to_upload(old.session_id, path)[0])
    clock.advance(hours=25)

    fresh = manager.start_fresh_session(old.session_id)

    assert fresh.session_id != old.session_id
    assert fresh.metadata == {"title": "holiday"}
    assert fresh.chunk_size == old.chunk_size
    assert fresh.expires_at == clock() + manager.session_ttl
    assert object_store.list_staged_chunks(old.session_id) == []
    with pytest.raises(SessionNotFound):
        manager.get_session(old.session_id)

    assert manager.upload(fresh.session_id, path).status == UploadStatus.COMPLETED


def test_extend_session(manager, clock):
    session = manager.initialize_session("a", 10 * KB, chunk_size=4 * KB)
    clock.advance(hours=20)

    extended = manager.extend_session(session.session_id)

    assert extended.expires_at == clock() + manager.session_ttl


def test_cleanup_expired_removes_sessions_and_staging(manager, object_store, clock, write_file):
    path = write_file(make_bytes(32 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    send(manager, session.session_id, manager.chunks_to_upload(session.session_id, path)[0])

    clock.advance(hours=24, minutes=30)
    assert manager.cleanup_expired() == []
    assert manager.get_session(session.session_id).is_expired(clock())

    clock.advance(hours=1)
    assert manager.cleanup_expired() == [session.session_id]
    assert object_store.list_staged_chunks(session.session_id) == []
    with pytest.raises(SessionNotFound):
        manager.get_session(session.session_id)


# ==================== Cancel ====================

def test_cancel_removes_record_and_staging(manager, object_store, write_file):
    path = write_file(make_bytes(64 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    for chunk in manager.chunks_to_upload(session.session_id, path)[:2]:
        send(manager, session.session_id, chunk)

    assert manager.cancel(session.session_id) == 2

    assert object_store.list_staged_chunks(session.session_id) == []
    with pytest.raises(SessionNotFound):
        manager.get_session(session.session_id)
    with pytest.raises(SessionNotFound):
        manager.receive_chunk(session.session_id, 2, None, b"x" * 16 * KB)


def test_cancel_during_upload_cleans_late_chunks(make_manager, flaky_transport, object_store, write_file):
    holder = {}

    def cancel_on_chunk_one(chunk):
        if chunk.index == 1 and not holder.get("cancelled"):
            holder["cancelled"] = True
            holder["manager"].cancel(holder["session_id"])

    transport = flaky_transport(before_send=cancel_on_chunk_one)
    manager = make_manager(transport=transport, max_concurrent_uploads=1)
    path = write_file(make_bytes(64 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    holder.update(manager=manager, session_id=session.session_id)

    with pytest.raises(SessionNotFound):
        manager.upload(session.session_id, path)

    assert object_store.list_staged_chunks(session.session_id) == []
    assert session.session_id not in manager._cancelled


# ==================== Server-side receipt ====================

def test_receive_chunks_assembles_on_last(manager, object_store, verifier):
    data = make_bytes(40 * KB)
    session = manager.initialize_session("doc.bin", len(data), chunk_size=16 * KB,
                                         file_hash=hashlib.sha256(data).hexdigest())

    for index in (2, 0, 1):
        piece = data[index * 16 * KB:(index + 1) * 16 * KB]
        updated = manager.receive_chunk(session.session_id, index, verifier.checksum(piece), piece)

    assert updated.status == UploadStatus.COMPLETED
    assert final_bytes(object_store, updated) == data


def test_receive_chunk_validates_index_and_size(manager):
    session = manager.initialize_session("doc.bin", 40 * KB, chunk_size=16 * KB)

    with pytest.raises(InvalidChunk):
        manager.receive_chunk(session.session_id, 3, None, b"x")
    with pytest.raises(InvalidChunk):
        manager.receive_chunk(session.session_id, 0, None, b"x" * 100)
    # Final chunk is shorter than chunk_size
    with pytest.raises(InvalidChunk):
        manager.receive_chunk(session.session_id, 2, None, b"x" * 16 * KB)


def test_receive_chunk_checksum_mismatch_counts_against_budget(manager):
    session = manager.initialize_session("doc.bin", 32 * KB, chunk_size=16 * KB)
    piece = b"x" * 16 * KB

    for _ in range(3):
        with pytest.raises(ChecksumMismatch):
            manager.receive_chunk(session.session_id, 0, "0" * 64, piece)
    with pytest.raises(ChunkBudgetExhausted):
        manager.receive_chunk(session.session_id, 0, "0" * 64, piece)

    assert manager.get_session(session.session_id).status == UploadStatus.FAILED
    with pytest.raises(SessionNotResumable):
        manager.receive_chunk(session.session_id, 0, None, piece)


def test_file_hash_mismatch_fails_session(manager, object_store, verifier):
    data = make_bytes(32 * KB)
    session = manager.initialize_session("doc.bin", len(data), chunk_size=16 * KB, file_hash="a" * 64)

    manager.receive_chunk(session.session_id, 0, verifier.checksum(data[:16 * KB]), data[:16 * KB])
    with pytest.raises(FileIntegrityError):
        manager.receive_chunk(session.session_id, 1, verifier.checksum(data[16 * KB:]), data[16 * KB:])

    failed = manager.get_session(session.session_id)
    assert failed.status == UploadStatus.FAILED
    assert not object_store.object_exists(failed.final_path)


# ==================== Finalize ====================

def test_finalize_requires_all_chunks(manager):
    session = manager.initialize_session("doc.bin", 32 * KB, chunk_size=16 * KB)

    with pytest.raises(InvalidSessionState):
        manager.finalize(session.session_id)


def test_failed_assembly_keeps_session_uploading(manager, object_store, verifier, monkeypatch):
    data = make_bytes(32 * KB)
    session = manager.initialize_session("doc.bin", len(data), chunk_size=16 * KB)

    original = object_store.put_final_object

    def _fail_once(*args, **kwargs):
        monkeypatch.setattr(object_store, "put_final_object", original)
        raise OSError("storage timeout")

    monkeypatch.setattr(object_store, "put_final_object", _fail_once)
    for index in (0, 1):
        piece = data[index * 16 * KB:(index + 1) * 16 * KB]
        manager.receive_chunk(session.session_id, index, verifier.checksum(piece), piece)

    pending = manager.get_session(session.session_id)
    assert pending.status == UploadStatus.UPLOADING
    assert "storage timeout" in pending.error
    assert len(object_store.list_staged_chunks(session.session_id)) == 2

    result = manager.finalize(session.session_id)
    assert result.size == len(data)
    assert manager.get_session(session.session_id).status == UploadStatus.COMPLETED


def test_finalize_twice_is_safe(manager, write_file):
    path = write_file(make_bytes(32 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    manager.upload(session.session_id, path)

    result = manager.finalize(session.session_id)

    assert result.already_existed
    assert manager.verify_uploaded_chunks(session.session_id) == [session.chunk_id(0), session.chunk_id(1)]


def test_finalize_after_crash_between_write_and_status(manager, object_store, write_file):
    path = write_file(make_bytes(32 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    for chunk in manager.chunks_to_upload(session.session_id, path):
        send(manager, session.session_id, chunk)
    manager.assembler.assemble(manager.get_session(session.session_id))

    result = manager.finalize(session.session_id)

    assert result.already_existed
    assert manager.get_session(session.session_id).status == UploadStatus.COMPLETED


def test_finalize_ignores_unrelated_object_at_destination(manager, object_store, write_file):
    object_store.put_final_object("shared/video.bin", io.BytesIO(b"o" * 100), 100)
    session = manager.initialize_session("video.bin", 100, chunk_size=64, destination_path="shared/video.bin")

    with pytest.raises(InvalidSessionState):
        manager.finalize(session.session_id)

    stored = manager.get_session(session.session_id)
    assert stored.status == UploadStatus.INITIALIZED
    assert stored.uploaded_chunk_ids == set()

    data = make_bytes(100)
    path = write_file(data)
    manager.upload(session.session_id, path)

    assert manager.get_session(session.session_id).status == UploadStatus.COMPLETED
    assert final_bytes(object_store, stored) == data


def test_concurrent_finalize_assembles_once(manager, write_file, monkeypatch):
    path = write_file(make_bytes(64 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    for chunk in manager.chunks_to_upload(session.session_id, path):
        send(manager, session.session_id, chunk)

    entered = threading.Event()
    release = threading.Event()
    calls = []
    original = manager.assembler.assemble

    def _slow_assemble(s):
        calls.append(s.session_id)
        entered.set()
        release.wait(5)
        return original(s)

    monkeypatch.setattr(manager.assembler, "assemble", _slow_assemble)
    results, errors = [], []

    def _finalize():
        try:
            results.append(manager.finalize(session.session_id))
        except Exception as e:
            errors.append(e)

    first = threading.Thread(target=_finalize)
    first.start()
    assert entered.wait(5)
    second = threading.Thread(target=_finalize)
    second.start()
    second.join(timeout=0.2)
    assert second.is_alive()

    release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert errors == []
    assert len(calls) == 1
    assert sorted(r.already_existed for r in results) == [False, True]
    stored = manager.get_session(session.session_id)
    assert stored.status == UploadStatus.COMPLETED
    assert stored.uploaded_indices == {0, 1, 2, 3}


def test_reconcile_leaves_completed_session_alone(manager, object_store, write_file):
    path = write_file(make_bytes(32 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    manager.upload(session.session_id, path)
    assert object_store.list_staged_chunks(session.session_id) == []

    stored = manager._reconcile(session.session_id)

    assert stored.status == UploadStatus.COMPLETED
    assert stored.uploaded_indices == {0, 1}


# ==================== Reporting ====================

def test_detect_resumable_sessions(manager, clock):
    active = manager.initialize_session("a", 10 * KB, chunk_size=4 * KB)
    clock.advance(hours=23)
    recent = manager.initialize_session("b", 10 * KB, chunk_size=4 * KB)
    clock.advance(hours=2)

    found = {r.session.session_id: r for r in manager.detect_resumable_sessions()}

    assert found[active.session_id].is_expired
    assert not found[active.session_id].can_resume
    assert found[recent.session_id].can_resume
    assert found[recent.session_id].remaining_chunks == 3


def test_session_stats_and_listing(manager, write_file):
    path = write_file(make_bytes(64 * KB))
    session = manager.initialize_from_source(path, chunk_size=16 * KB)
    send(manager, session.session_id, manager.chunks_to_upload(session.session_id, path)[0])
    manager.mark_chunk_failed(session.session_id, session.chunk_id(1), "boom")

    stats = manager.session_stats(session.session_id)

    assert stats == {
        "total_chunks": 4,
        "uploaded_chunks": 1,
        "failed_chunks": 1,
        "progress": 25.0,
        "remaining_chunks": 3,
        "is_expired": False,
    }
    assert [s.session_id for s in manager.list_sessions("uploading")] == [session.session_id]
    assert manager.list_sessions("completed") == []
