"""
Chunk integrity digests.

Uses hashlib so any algorithm it knows (SHA256, MD5, BLAKE2B, ...) can be
configured. Digests are lower-case hex strings.
"""
import hashlib

from ..models import Chunk


class ChecksumVerifier:
    """Computes and validates chunk digests"""

    def __init__(self, algorithm: str = "SHA256"):
        self.algorithm = algorithm.upper()
        # Fail fast on an unknown algorithm name
        hashlib.new(self.algorithm.lower())

    def hasher(self):
        """Incremental hash object for streaming digests"""
        return hashlib.new(self.algorithm.lower())

    def checksum(self, data: bytes) -> str:
        return hashlib.new(self.algorithm.lower(), data).hexdigest()

    def matches(self, expected: str, data: bytes) -> bool:
        return self.checksum(data) == expected.strip().lower()

    def verify(self, chunk: Chunk, data: bytes) -> bool:
        """True when `data` has the chunk's recorded size and digest"""
        if len(data) != chunk.size:
            return False
        return self.matches(chunk.checksum, data)

    def file_checksum(self, path: str, block_size: int = 65536) -> str:
        """Digest of an entire file, read in 64KB blocks"""
        digest = self.hasher()
        with open(path, "rb") as f:
            while True:
                block = f.read(block_size)
                if not block:
                    break
                digest.update(block)
        return digest.hexdigest()
