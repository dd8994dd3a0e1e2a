"""
Final object assembly.

Staged chunks are read back strictly in index order (never upload-completion
order) and streamed into one object at the final path. Staged chunks are only
deleted after the final object is confirmed, so a failed assembly can be
retried without re-uploading anything.
"""
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from ..core.exceptions import AssemblyError, FileIntegrityError
from ..models import UploadSession
from .checksum import ChecksumVerifier
from .object_store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class AssemblyResult:
    session_id: str
    path: str
    size: int
    file_hash: Optional[str] = None
    already_existed: bool = False
    staged_chunks_removed: int = 0


class OrderedChunkReader:
    """File-like stream that concatenates staged chunks in index order, one chunk in memory at a time"""

    def __init__(self, object_store: ObjectStore, session: UploadSession,
                 verifier: ChecksumVerifier, timeout: Optional[float] = None):
        self.object_store = object_store
        self.session = session
        self.digest = verifier.hasher()
        self._next_index = 0
        self._buffer = b""
        self._deadline = time.monotonic() + timeout if timeout else None
        self.bytes_read = 0

    def _load_next(self) -> bool:
        if self._next_index >= self.session.total_chunks:
            return False
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise AssemblyError(
                f"Assembly timed out at chunk {self._next_index}/{self.session.total_chunks}",
                self.session.session_id,
            )
        index = self._next_index
        data = self.object_store.get_staged_chunk(self.session.session_id, index)
        expected = self.session.chunk_length(index)
        if len(data) != expected:
            raise AssemblyError(
                f"Staged chunk {index} has {len(data)} bytes, expected {expected}",
                self.session.session_id,
            )
        self.digest.update(data)
        self._buffer = data
        self._next_index += 1
        return True

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            parts = [self._buffer]
            self._buffer = b""
            while self._load_next():
                parts.append(self._buffer)
                self._buffer = b""
            data = b"".join(parts)
        else:
            while not self._buffer and self._load_next():
                pass
            data, self._buffer = self._buffer[:size], self._buffer[size:]
        self.bytes_read += len(data)
        return data


class Assembler:
    """Builds the final object once every chunk is staged"""

    def __init__(self, object_store: ObjectStore, verifier: Optional[ChecksumVerifier] = None,
                 timeout: Optional[float] = 1800.0):
        self.object_store = object_store
        self.verifier = verifier or ChecksumVerifier()
        self.timeout = timeout

    def _object_metadata(self, session: UploadSession) -> Dict[str, str]:
        metadata = {
            "session_id": session.session_id,
            "file_name": session.file_name,
        }
        for key, value in session.metadata.items():
            if value is not None and isinstance(value, (str, int, float, bool)):
                metadata[key] = str(value)
        if "content_type" not in metadata and "contentType" in metadata:
            metadata["content_type"] = metadata.pop("contentType")
        return metadata

    def _cleanup_staging(self, session: UploadSession) -> int:
        try:
            return self.object_store.delete_staged_session(session.session_id)
        except Exception as e:
            # Final object is already durable; leftover staging is reaped later
            logger.warning(f"Could not remove staged chunks for {session.session_id}: {e}")
            return 0

    def missing_chunks(self, session: UploadSession) -> list:
        staged = set(self.object_store.list_staged_chunks(session.session_id))
        return [index for index in range(session.total_chunks) if index not in staged]

    def assemble(self, session: UploadSession) -> AssemblyResult:
        path = session.final_path

        # An existing object is only trusted once staging no longer covers the file
        missing = self.missing_chunks(session)
        if missing:
            existing_size = self.object_store.object_size(path)
            if existing_size == session.total_size:
                logger.info(f"Final object {path} already present for {session.session_id}, skipping assembly")
                removed = self._cleanup_staging(session)
                return AssemblyResult(session.session_id, path, existing_size,
                                      file_hash=session.file_hash, already_existed=True,
                                      staged_chunks_removed=removed)
            raise AssemblyError(
                f"Cannot assemble {session.session_id}: missing staged chunks {missing}",
                session.session_id,
            )

        logger.info(f"Assembling {session.total_chunks} chunks for {session.session_id} into {path}")
        reader = OrderedChunkReader(self.object_store, session, self.verifier, self.timeout)
        try:
            self.object_store.put_final_object(path, reader, session.total_size, self._object_metadata(session))
        except AssemblyError:
            raise
        except Exception as e:
            raise AssemblyError(f"Failed to write final object {path}: {e}", session.session_id) from e

        final_size = self.object_store.object_size(path)
        if final_size != session.total_size:
            raise AssemblyError(
                f"Final object {path} has size {final_size}, expected {session.total_size}",
                session.session_id,
            )

        file_hash = reader.digest.hexdigest()
        if session.file_hash and file_hash != session.file_hash.lower():
            logger.error(f"File hash mismatch for {session.session_id}: expected {session.file_hash}, got {file_hash}")
            self.object_store.delete_object(path)
            raise FileIntegrityError("File integrity check failed. Hash mismatch.", session.session_id)

        removed = self._cleanup_staging(session)
        logger.info(f"Assembled {final_size} bytes for {session.session_id} at {path}")
        return AssemblyResult(session.session_id, path, final_size, file_hash=file_hash,
                              staged_chunks_removed=removed)
