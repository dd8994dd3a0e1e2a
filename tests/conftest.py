import random
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from resumable_upload.services import (
    ChecksumVerifier,
    ChunkSplitter,
    FileBackend,
    LocalObjectStore,
    MemoryBackend,
    SessionStore,
    StoreChunkTransport,
    TransferResult,
    UploadSessionManager,
)

KB = 1024


class FakeClock:
    """Wall clock the tests can move forward"""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_bytes(size: int, seed: int = 7) -> bytes:
    return random.Random(seed).randbytes(size)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "objects"))


@pytest.fixture
def session_dir(tmp_path):
    return tmp_path / "sessions"


@pytest.fixture
def store(session_dir, clock):
    return SessionStore([MemoryBackend(), FileBackend(str(session_dir))], clock=clock)


@pytest.fixture
def verifier():
    return ChecksumVerifier()


@pytest.fixture
def splitter(verifier):
    return ChunkSplitter(min_chunk_size=1, max_chunk_size=10 * 1024 * 1024, verifier=verifier)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_manager(store, object_store, splitter, clock, sleeps):
    def _make(**kwargs):
        options = dict(
            store=store,
            object_store=object_store,
            splitter=splitter,
            default_chunk_size=16 * KB,
            max_concurrent_uploads=4,
            clock=clock,
            sleep=sleeps.append,
        )
        options.update(kwargs)
        return UploadSessionManager(**options)

    return _make


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def write_file(tmp_path):
    def _write(data: bytes, name: str = "payload.bin") -> Path:
        path = tmp_path / name
        path.write_bytes(data)
        return path

    return _write


class FlakyTransport(StoreChunkTransport):
    """Staging transport that reports failures for chosen chunks a fixed number of times"""

    def __init__(self, object_store, failures=None, checksum_mismatch=True, before_send=None):
        super().__init__(object_store)
        self.failures = dict(failures or {})
        self.checksum_mismatch = checksum_mismatch
        self.before_send = before_send
        self.sent = []
        self.attempts = []

    def upload(self, chunk, session_id, on_progress=None):
        self.attempts.append(chunk.index)
        if self.before_send is not None:
            self.before_send(chunk)
        if self.failures.get(chunk.index, 0) > 0:
            self.failures[chunk.index] -= 1
            return self._failure(chunk)
        result = super().upload(chunk, session_id, on_progress)
        if result.success:
            self.sent.append(chunk.index)
        return result

    def _failure(self, chunk):
        return TransferResult.failed(chunk, "simulated failure", checksum_mismatch=self.checksum_mismatch)


@pytest.fixture
def flaky_transport(object_store):
    def _make(**kwargs):
        return FlakyTransport(object_store, **kwargs)

    return _make
