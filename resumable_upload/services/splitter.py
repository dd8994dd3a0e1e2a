"""
Deterministic file partitioning.

Splitting is a pure function of (file size, chunk size): re-splitting the same
file yields the same indices, sizes and byte ranges. Chunk bytes are read on
demand, so iterating a ChunkSequence never holds more than one chunk in memory.
"""
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Optional, Tuple, Union

from ..models import Chunk
from .checksum import ChecksumVerifier

logger = logging.getLogger(__name__)

SourceLike = Union[str, os.PathLike, BinaryIO]


class ByteSource:
    """Random-access reader over a path or a seekable binary file object."""

    def __init__(self, source: SourceLike):
        self._lock = threading.Lock()
        if isinstance(source, (str, os.PathLike)):
            self.path: Optional[Path] = Path(source)
            self._fileobj: Optional[BinaryIO] = None
            if not self.path.is_file():
                raise FileNotFoundError(f"File not found: {self.path}")
            self.name = self.path.name
        else:
            if not source.seekable():
                raise ValueError("File object must be seekable")
            self.path = None
            self._fileobj = source
            self.name = os.path.basename(getattr(source, "name", "") or "") or "upload.bin"

    @property
    def size(self) -> int:
        if self.path is not None:
            return self.path.stat().st_size
        with self._lock:
            position = self._fileobj.tell()
            size = self._fileobj.seek(0, os.SEEK_END)
            self._fileobj.seek(position)
            return size

    def read(self, offset: int, length: int) -> bytes:
        if self.path is not None:
            # Separate handle per read keeps concurrent workers independent
            with open(self.path, "rb") as f:
                f.seek(offset)
                return f.read(length)
        with self._lock:
            self._fileobj.seek(offset)
            return self._fileobj.read(length)


class ChunkSequence:
    """Lazy, finite, restartable sequence of chunks."""

    def __init__(
        self,
        source: ByteSource,
        chunk_size: int,
        verifier: ChecksumVerifier,
        id_factory: Optional[Callable[[int], str]] = None,
    ):
        self.source = source
        self.chunk_size = chunk_size
        self.total_size = source.size
        self.verifier = verifier
        self.id_factory = id_factory or (lambda index: uuid.uuid4().hex)

    def __len__(self) -> int:
        return -(-self.total_size // self.chunk_size)

    def ranges(self) -> List[Tuple[int, int]]:
        return plan_ranges(self.total_size, self.chunk_size)

    def range_at(self, index: int) -> Tuple[int, int]:
        if not 0 <= index < len(self):
            raise IndexError(f"Chunk index {index} out of range for {len(self)} chunk(s)")
        start = index * self.chunk_size
        return start, min(start + self.chunk_size, self.total_size)

    def chunk_at(self, index: int) -> Chunk:
        start, end = self.range_at(index)
        data = self.source.read(start, end - start)
        if len(data) != end - start:
            raise IOError(f"Short read for chunk {index}: expected {end - start} bytes, got {len(data)}")
        return Chunk(
            id=self.id_factory(index),
            index=index,
            offset=start,
            size=end - start,
            checksum=self.verifier.checksum(data),
            reader=self.source.read,
        )

    def __iter__(self) -> Iterator[Chunk]:
        for index in range(len(self)):
            yield self.chunk_at(index)


def plan_ranges(total_size: int, chunk_size: int) -> List[Tuple[int, int]]:
    """[start, end) byte ranges covering [0, total_size) with no gaps or overlaps"""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [
        (start, min(start + chunk_size, total_size))
        for start in range(0, total_size, chunk_size)
    ]


class ChunkSplitter:
    """Partitions files into fixed-size chunks within configured bounds"""

    def __init__(
        self,
        min_chunk_size: int = 1 * 1024 * 1024,
        max_chunk_size: int = 10 * 1024 * 1024,
        verifier: Optional[ChecksumVerifier] = None,
    ):
        if min_chunk_size <= 0 or min_chunk_size > max_chunk_size:
            raise ValueError("Invalid chunk size bounds")
        self.min_chunk_size = min_chunk_size
        self.max_chunk_size = max_chunk_size
        self.verifier = verifier or ChecksumVerifier()

    def clamp(self, chunk_size: int) -> int:
        clamped = max(self.min_chunk_size, min(self.max_chunk_size, chunk_size))
        if clamped != chunk_size:
            logger.info(f"Chunk size {chunk_size} clamped to {clamped}")
        return clamped

    def plan(self, total_size: int, chunk_size: int) -> List[Tuple[int, int]]:
        return plan_ranges(total_size, self.clamp(chunk_size))

    def split(
        self,
        source: Union[SourceLike, ByteSource],
        chunk_size: int,
        id_factory: Optional[Callable[[int], str]] = None,
    ) -> ChunkSequence:
        byte_source = source if isinstance(source, ByteSource) else ByteSource(source)
        return ChunkSequence(byte_source, self.clamp(chunk_size), self.verifier, id_factory)
