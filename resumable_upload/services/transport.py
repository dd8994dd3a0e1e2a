"""
Single-chunk transfer.

A transport moves one chunk to the staging area and reports the outcome as a
TransferResult instead of raising; the session manager owns retries. Bytes are
streamed in blocks so progress is reported while a large chunk is in flight,
and each transfer is bounded by an upload timeout.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from ..core.exceptions import (
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
from ..models import Chunk
from .checksum import ChecksumVerifier
from .object_store import ObjectStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

STREAM_BLOCK_SIZE = 256 * 1024


@dataclass
class TransferResult:
    chunk_id: str
    index: int
    success: bool
    bytes_transferred: int = 0
    reason: Optional[str] = None
    checksum_mismatch: bool = False
    # Set when retrying cannot help (session gone, expired, terminal)
    fatal_error: Optional[UploadError] = None

    @classmethod
    def ok(cls, chunk: Chunk, bytes_transferred: int) -> "TransferResult":
        return cls(chunk_id=chunk.id, index=chunk.index, success=True, bytes_transferred=bytes_transferred)

    @classmethod
    def failed(cls, chunk: Chunk, reason: str, checksum_mismatch: bool = False,
               fatal_error: Optional[UploadError] = None) -> "TransferResult":
        return cls(
            chunk_id=chunk.id,
            index=chunk.index,
            success=False,
            reason=reason,
            checksum_mismatch=checksum_mismatch,
            fatal_error=fatal_error,
        )


class ProgressReader:
    """
    File-like view over chunk bytes that reports bytes consumed and enforces
    a deadline while the consumer streams it.
    """

    def __init__(self, data: bytes, on_progress: Optional[ProgressCallback] = None,
                 timeout: Optional[float] = None, block_size: int = STREAM_BLOCK_SIZE):
        self._data = memoryview(data)
        self._position = 0
        self._on_progress = on_progress
        self._deadline = time.monotonic() + timeout if timeout else None
        self.block_size = block_size

    def __len__(self) -> int:
        return len(self._data) - self._position

    @property
    def bytes_read(self) -> int:
        return self._position

    def read(self, size: int = -1) -> bytes:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise TransientTransportError(f"Chunk transfer timed out after {self._position} bytes")
        if size is None or size < 0:
            size = len(self._data) - self._position
        else:
            size = min(size, self.block_size)
        block = self._data[self._position:self._position + size].tobytes()
        self._position += len(block)
        if block and self._on_progress:
            self._on_progress(self._position)
        return block


class ChunkTransport:
    """Base class: read, verify and ship one chunk"""

    def __init__(self, verifier: Optional[ChecksumVerifier] = None, timeout: Optional[float] = 120.0):
        self.verifier = verifier or ChecksumVerifier()
        self.timeout = timeout

    def _read_verified(self, chunk: Chunk) -> bytes:
        data = chunk.read()
        if not self.verifier.verify(chunk, data):
            raise ChecksumMismatch(
                f"Chunk {chunk.index} bytes do not match checksum {chunk.checksum}",
                expected=chunk.checksum,
                actual=self.verifier.checksum(data),
            )
        return data

    def upload(self, chunk: Chunk, session_id: str,
               on_progress: Optional[ProgressCallback] = None) -> TransferResult:
        try:
            data = self._read_verified(chunk)
        except ChecksumMismatch as e:
            logger.warning(f"Checksum mismatch reading chunk {chunk.index} for {session_id}")
            return TransferResult.failed(chunk, e.message, checksum_mismatch=True)
        except OSError as e:
            return TransferResult.failed(chunk, f"Could not read source bytes: {e}")
        return self._send(chunk, session_id, data, on_progress)

    def _send(self, chunk: Chunk, session_id: str, data: bytes,
              on_progress: Optional[ProgressCallback]) -> TransferResult:
        raise NotImplementedError


class StoreChunkTransport(ChunkTransport):
    """Writes chunks straight into the object store's staging area"""

    def __init__(self, object_store: ObjectStore, verifier: Optional[ChecksumVerifier] = None,
                 timeout: Optional[float] = 120.0):
        super().__init__(verifier, timeout)
        self.object_store = object_store

    def _send(self, chunk, session_id, data, on_progress):
        reader = ProgressReader(data, on_progress, self.timeout)
        try:
            self.object_store.put_staged_chunk(session_id, chunk.index, reader, len(data))
        except TransientTransportError as e:
            return TransferResult.failed(chunk, e.message)
        except Exception as e:
            # Storage client errors are network failures from the engine's point of view
            logger.warning(f"Staging chunk {chunk.index} for {session_id} failed: {e}")
            return TransferResult.failed(chunk, str(e))
        return TransferResult.ok(chunk, len(data))


_FATAL_ERRORS = {
    SessionNotFound.code: SessionNotFound,
    SessionNotResumable.code: SessionNotResumable,
    SessionExpired.code: SessionExpired,
    InvalidSessionState.code: InvalidSessionState,
    InvalidChunk.code: InvalidChunk,
    ChunkBudgetExhausted.code: ChunkBudgetExhausted,
    FileIntegrityError.code: FileIntegrityError,
}


def error_from_response(response: requests.Response, session_id: str) -> Optional[UploadError]:
    """Rebuild a terminal engine error from an API error body, if it is one"""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error_cls = _FATAL_ERRORS.get(body.get("error"))
    if error_cls is None:
        return None
    return error_cls(body.get("message", "Upload rejected"), session_id)


class HttpChunkTransport(ChunkTransport):
    """Posts chunks to the upload API with requests"""

    def __init__(self, api_url: str, session: Optional[requests.Session] = None,
                 verifier: Optional[ChecksumVerifier] = None, timeout: Optional[float] = 120.0):
        super().__init__(verifier, timeout)
        self.api_url = api_url.rstrip("/")
        self.session = session or requests.Session()

    def _send(self, chunk, session_id, data, on_progress):
        reader = ProgressReader(data, on_progress, self.timeout)
        try:
            response = self.session.post(
                f"{self.api_url}/uploads/{session_id}/chunks/{chunk.index}",
                data=reader,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Length": str(len(data)),
                    "X-Chunk-Checksum": chunk.checksum,
                    "X-Chunk-Id": chunk.id,
                },
                timeout=self.timeout,
            )
        except TransientTransportError as e:
            return TransferResult.failed(chunk, e.message)
        except requests.RequestException as e:
            logger.warning(f"Network error uploading chunk {chunk.index}: {e}")
            return TransferResult.failed(chunk, f"Network error during chunk upload: {e}")

        if response.status_code in (200, 201):
            return TransferResult.ok(chunk, len(data))

        fatal = error_from_response(response, session_id)
        if fatal is not None:
            return TransferResult.failed(chunk, fatal.message, fatal_error=fatal)

        mismatch = False
        try:
            mismatch = response.json().get("error") == ChecksumMismatch.code
        except (ValueError, AttributeError):
            pass
        return TransferResult.failed(
            chunk,
            f"Upload failed: HTTP {response.status_code}",
            checksum_mismatch=mismatch,
        )
