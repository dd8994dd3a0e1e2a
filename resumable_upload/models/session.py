"""
Domain models for chunked uploads.

UploadSession is the unit of resumability and the only record that is
persisted. Chunk descriptors live in memory while a transfer runs, and
UploadProgress is always derived from session state plus recent samples.
"""
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadStatus(str, Enum):
    INITIALIZED = "initialized"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED)


def chunk_id_for(session_id: str, index: int) -> str:
    """Stable chunk id so a re-split of the same file maps onto persisted state"""
    return f"{session_id}:{index:06d}"


def index_from_chunk_id(chunk_id: str) -> Optional[int]:
    _, _, suffix = chunk_id.rpartition(":")
    return int(suffix) if suffix.isdigit() else None


@dataclass(frozen=True)
class Chunk:
    """One contiguous byte range of a source file."""
    id: str
    index: int
    offset: int
    size: int
    checksum: str
    reader: Optional[Callable[[int, int], bytes]] = field(default=None, compare=False, repr=False)

    @property
    def end(self) -> int:
        return self.offset + self.size

    def read(self) -> bytes:
        """Re-read the chunk's bytes from its source"""
        if self.reader is None:
            raise ValueError(f"Chunk {self.index} has no byte source attached")
        return self.reader(self.offset, self.size)


@dataclass
class UploadSession:
    """Durable record tracking one file's upload across connections."""
    session_id: str
    file_name: str
    total_size: int
    chunk_size: int
    total_chunks: int
    status: UploadStatus = UploadStatus.INITIALIZED
    uploaded_chunk_ids: Set[str] = field(default_factory=set)
    failed_chunk_ids: Set[str] = field(default_factory=set)
    retry_counts: Dict[str, int] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    last_chunk_index: int = -1
    destination_path: Optional[str] = None
    file_hash: Optional[str] = None
    checksum_algorithm: str = "SHA256"
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        file_name: str,
        total_size: int,
        chunk_size: int,
        metadata: Optional[Dict[str, Any]] = None,
        ttl: timedelta = timedelta(hours=24),
        now: Optional[datetime] = None,
        **kwargs: Any,
    ) -> "UploadSession":
        now = now or utcnow()
        return cls(
            session_id=str(uuid.uuid4()),
            file_name=file_name,
            total_size=total_size,
            chunk_size=chunk_size,
            total_chunks=math.ceil(total_size / chunk_size) if total_size else 0,
            created_at=now,
            updated_at=now,
            expires_at=now + ttl,
            metadata=dict(metadata or {}),
            **kwargs,
        )

    def chunk_id(self, index: int) -> str:
        return chunk_id_for(self.session_id, index)

    def chunk_length(self, index: int) -> int:
        """Expected byte length of the chunk at `index`"""
        if index < 0 or index >= self.total_chunks:
            raise IndexError(index)
        return min(self.chunk_size, self.total_size - index * self.chunk_size)

    @property
    def uploaded_indices(self) -> Set[int]:
        indices = (index_from_chunk_id(chunk_id) for chunk_id in self.uploaded_chunk_ids)
        return {index for index in indices if index is not None}

    @property
    def uploaded_bytes(self) -> int:
        return sum(self.chunk_length(index) for index in self.uploaded_indices if index < self.total_chunks)

    @property
    def all_chunks_uploaded(self) -> bool:
        return len(self.uploaded_chunk_ids) >= self.total_chunks

    @property
    def remaining_chunks(self) -> int:
        return max(self.total_chunks - len(self.uploaded_chunk_ids), 0)

    @property
    def progress_percent(self) -> float:
        if self.total_chunks == 0:
            return 100.0 if self.status == UploadStatus.COMPLETED else 0.0
        return round(len(self.uploaded_chunk_ids) / self.total_chunks * 100, 2)

    @property
    def final_path(self) -> str:
        return self.destination_path or f"uploads/{self.session_id}/{self.file_name}"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = max(self.updated_at, now or utcnow())

    def merge(self, other: "UploadSession") -> "UploadSession":
        """
        Monotonic merge of two snapshots of the same session.

        Uploaded ids are unioned, timestamps never move backward, and a terminal
        status on either side wins.
        """
        if other.session_id != self.session_id:
            raise ValueError("Cannot merge snapshots of different sessions")

        merged = UploadSession.from_dict(other.to_dict())
        merged.uploaded_chunk_ids = self.uploaded_chunk_ids | other.uploaded_chunk_ids
        merged.failed_chunk_ids = (self.failed_chunk_ids | other.failed_chunk_ids) - merged.uploaded_chunk_ids
        merged.retry_counts = {
            chunk_id: max(self.retry_counts.get(chunk_id, 0), other.retry_counts.get(chunk_id, 0))
            for chunk_id in set(self.retry_counts) | set(other.retry_counts)
        }
        merged.updated_at = max(self.updated_at, other.updated_at)
        if self.expires_at and other.expires_at:
            merged.expires_at = max(self.expires_at, other.expires_at)
        merged.last_chunk_index = max(self.last_chunk_index, other.last_chunk_index)
        if self.status.is_terminal and not other.status.is_terminal:
            merged.status = self.status
            merged.error = self.error
            merged.completed_at = self.completed_at
        return merged

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "file_name": self.file_name,
            "total_size": self.total_size,
            "chunk_size": self.chunk_size,
            "total_chunks": self.total_chunks,
            "status": self.status.value,
            "uploaded_chunk_ids": sorted(self.uploaded_chunk_ids),
            "failed_chunk_ids": sorted(self.failed_chunk_ids),
            "retry_counts": dict(self.retry_counts),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "metadata": dict(self.metadata),
            "last_chunk_index": self.last_chunk_index,
            "destination_path": self.destination_path,
            "file_hash": self.file_hash,
            "checksum_algorithm": self.checksum_algorithm,
            "error": self.error,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadSession":
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            session_id=data["session_id"],
            file_name=data["file_name"],
            total_size=data["total_size"],
            chunk_size=data["chunk_size"],
            total_chunks=data["total_chunks"],
            status=UploadStatus(data.get("status", UploadStatus.INITIALIZED.value)),
            uploaded_chunk_ids=set(data.get("uploaded_chunk_ids", [])),
            failed_chunk_ids=set(data.get("failed_chunk_ids", [])),
            retry_counts=dict(data.get("retry_counts", {})),
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data["updated_at"]),
            expires_at=_dt(data.get("expires_at")),
            metadata=dict(data.get("metadata", {})),
            last_chunk_index=data.get("last_chunk_index", -1),
            destination_path=data.get("destination_path"),
            file_hash=data.get("file_hash"),
            checksum_algorithm=data.get("checksum_algorithm", "SHA256"),
            error=data.get("error"),
            completed_at=_dt(data.get("completed_at")),
        )


@dataclass
class UploadProgress:
    """Derived view of an upload; never persisted."""
    session_id: str
    total_bytes: int
    uploaded_bytes: int = 0
    percentage: float = 0.0
    current_chunk_index: int = 0
    total_chunks: int = 0
    bandwidth: float = 0.0                    # bytes per second
    estimated_seconds_remaining: int = 0
    status: str = "queued"
    started_at: datetime = field(default_factory=utcnow)
    last_update_at: datetime = field(default_factory=utcnow)
