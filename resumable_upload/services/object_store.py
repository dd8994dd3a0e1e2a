"""
Object storage adapters.

Two implementations of the same boundary:
- LocalObjectStore: filesystem directory, used for development and tests
- MinIOObjectStore: S3-compatible storage via the MinIO client

Staged chunks live at {staging_prefix}/{session_id}/{index}; final objects
live at the caller-supplied logical path.
"""
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

from minio import Minio
from minio.error import S3Error

logger = logging.getLogger(__name__)

COPY_BLOCK_SIZE = 64 * 1024


class StoragePaths:
    """Centralized storage path definitions."""

    def __init__(self, staging_prefix: str = "staging"):
        self.staging_prefix = staging_prefix.strip("/")

    def session_prefix(self, session_id: str) -> str:
        return f"{self.staging_prefix}/{session_id}/"

    def staged_chunk(self, session_id: str, index: int) -> str:
        return f"{self.staging_prefix}/{session_id}/{index}"

    @staticmethod
    def index_from_key(key: str) -> Optional[int]:
        name = key.rstrip("/").rsplit("/", 1)[-1]
        return int(name) if name.isdigit() else None


class ObjectStore(ABC):
    """Boundary consumed by transport, verification and assembly."""

    def __init__(self, staging_prefix: str = "staging"):
        self.paths = StoragePaths(staging_prefix)

    @abstractmethod
    def put_staged_chunk(self, session_id: str, index: int, data: BinaryIO, length: int) -> None:
        ...

    @abstractmethod
    def list_staged_chunks(self, session_id: str) -> List[int]:
        ...

    @abstractmethod
    def get_staged_chunk(self, session_id: str, index: int) -> bytes:
        ...

    @abstractmethod
    def delete_staged_chunk(self, session_id: str, index: int) -> None:
        ...

    @abstractmethod
    def put_final_object(self, path: str, stream: BinaryIO, length: int,
                         metadata: Optional[Dict[str, str]] = None) -> None:
        ...

    @abstractmethod
    def object_exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def object_size(self, path: str) -> Optional[int]:
        ...

    @abstractmethod
    def delete_object(self, path: str) -> None:
        ...

    def delete_staged_session(self, session_id: str) -> int:
        """Remove every staged chunk of a session; returns the number removed"""
        removed = 0
        for index in self.list_staged_chunks(session_id):
            self.delete_staged_chunk(session_id, index)
            removed += 1
        return removed


class LocalObjectStore(ObjectStore):
    """Object store backed by a local directory"""

    def __init__(self, root: str, staging_prefix: str = "staging"):
        super().__init__(staging_prefix)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Local object store at {self.root}")

    def _resolve(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if self.root.resolve() not in path.parents and path != self.root.resolve():
            raise ValueError(f"Object key escapes storage root: {key}")
        return path

    def _write_atomic(self, target: Path, stream: BinaryIO) -> int:
        """Copy stream to a temp file then rename, so readers never see partial objects"""
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        written = 0
        try:
            with os.fdopen(fd, "wb") as out:
                while True:
                    block = stream.read(COPY_BLOCK_SIZE)
                    if not block:
                        break
                    out.write(block)
                    written += len(block)
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return written

    def put_staged_chunk(self, session_id: str, index: int, data: BinaryIO, length: int) -> None:
        target = self._resolve(self.paths.staged_chunk(session_id, index))
        written = self._write_atomic(target, data)
        if written != length:
            target.unlink(missing_ok=True)
            raise IOError(f"Staged chunk {index} length mismatch: expected {length}, wrote {written}")

    def list_staged_chunks(self, session_id: str) -> List[int]:
        session_dir = self._resolve(self.paths.session_prefix(session_id))
        if not session_dir.is_dir():
            return []
        indices = (StoragePaths.index_from_key(entry.name) for entry in session_dir.iterdir() if entry.is_file())
        return sorted(index for index in indices if index is not None)

    def get_staged_chunk(self, session_id: str, index: int) -> bytes:
        return self._resolve(self.paths.staged_chunk(session_id, index)).read_bytes()

    def delete_staged_chunk(self, session_id: str, index: int) -> None:
        self._resolve(self.paths.staged_chunk(session_id, index)).unlink(missing_ok=True)

    def delete_staged_session(self, session_id: str) -> int:
        removed = super().delete_staged_session(session_id)
        session_dir = self._resolve(self.paths.session_prefix(session_id))
        if session_dir.is_dir():
            shutil.rmtree(session_dir, ignore_errors=True)
        return removed

    def put_final_object(self, path: str, stream: BinaryIO, length: int,
                         metadata: Optional[Dict[str, str]] = None) -> None:
        target = self._resolve(path)
        written = self._write_atomic(target, stream)
        if written != length:
            target.unlink(missing_ok=True)
            raise IOError(f"Final object length mismatch: expected {length}, wrote {written}")
        logger.info(f"Wrote {written} bytes to {target}")

    def object_exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def object_size(self, path: str) -> Optional[int]:
        target = self._resolve(path)
        return target.stat().st_size if target.is_file() else None

    def delete_object(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)


class MinIOObjectStore(ObjectStore):
    """
    Object store using MinIO (S3-compatible).

    Staging and final objects share one bucket; staging keys are namespaced
    by prefix so a lifecycle rule can reap abandoned chunks.
    """

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        secure: bool = False,
        staging_prefix: str = "staging",
        client: Optional[Minio] = None,
    ):
        super().__init__(staging_prefix)
        self.client = client or Minio(endpoint, access_key=access_key, secret_key=secret_key, secure=secure)
        self.bucket = bucket
        logger.info(f"MinIO client initialized: {endpoint}/{self.bucket}")

    def ensure_bucket_exists(self):
        """Create bucket if it doesn't exist"""
        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
                logger.info(f"Created MinIO bucket: {self.bucket}")
            else:
                logger.info(f"MinIO bucket exists: {self.bucket}")
        except S3Error as e:
            logger.error(f"Failed to create bucket: {e}")
            raise

    def put_staged_chunk(self, session_id: str, index: int, data: BinaryIO, length: int) -> None:
        key = self.paths.staged_chunk(session_id, index)
        self.client.put_object(self.bucket, key, data, length=length)

    def list_staged_chunks(self, session_id: str) -> List[int]:
        objects = self.client.list_objects(
            self.bucket, prefix=self.paths.session_prefix(session_id), recursive=True
        )
        indices = (StoragePaths.index_from_key(obj.object_name) for obj in objects)
        return sorted(index for index in indices if index is not None)

    def get_staged_chunk(self, session_id: str, index: int) -> bytes:
        response = self.client.get_object(self.bucket, self.paths.staged_chunk(session_id, index))
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def delete_staged_chunk(self, session_id: str, index: int) -> None:
        self.client.remove_object(self.bucket, self.paths.staged_chunk(session_id, index))

    def put_final_object(self, path: str, stream: BinaryIO, length: int,
                         metadata: Optional[Dict[str, str]] = None) -> None:
        metadata = dict(metadata or {})
        content_type = metadata.pop("content_type", None) or "application/octet-stream"
        self.client.put_object(
            self.bucket,
            path,
            stream,
            length=length,
            content_type=content_type,
            metadata=metadata or None,
        )
        logger.info(f"Uploaded {length} bytes to {self.bucket}/{path}")

    def object_exists(self, path: str) -> bool:
        return self.object_size(path) is not None

    def object_size(self, path: str) -> Optional[int]:
        try:
            return self.client.stat_object(self.bucket, path).size
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchObject", "NotFound"):
                return None
            raise

    def delete_object(self, path: str) -> None:
        self.client.remove_object(self.bucket, path)
