"""Resumable upload client with parallel workers, per-chunk checksums and verified resume."""
import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set

import requests

from ..core.config import settings
from ..core.exceptions import UploadError
from ..models import Chunk, chunk_id_for
from ..services.checksum import ChecksumVerifier
from ..services.progress import ProgressTracker
from ..services.splitter import ByteSource, ChunkSequence
from ..services.transport import HttpChunkTransport, error_from_response

logger = logging.getLogger(__name__)

API_BASE_URL = settings.API_BASE_URL
CHUNK_SIZE = settings.DEFAULT_CHUNK_SIZE
MAX_WORKERS = settings.MAX_CONCURRENT_UPLOADS


class ResumableUploader:
    """Client for uploading large files through the chunked upload API."""

    def __init__(
        self,
        api_url: str = API_BASE_URL,
        chunk_size: int = CHUNK_SIZE,
        max_workers: int = MAX_WORKERS,
        max_retries: int = settings.MAX_CHUNK_RETRIES,
        retry_backoff: Sequence[float] = tuple(settings.RETRY_BACKOFF_SECONDS),
        user_id: Optional[str] = None,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_url = api_url.rstrip("/")
        self.chunk_size = chunk_size
        self.max_workers = max_workers
        self.max_retries = max_retries
        self.retry_backoff = list(retry_backoff) or [0]
        self.sleep = sleep
        self.http = http or requests.Session()
        if user_id:
            self.http.headers["X-User-Id"] = user_id
        self.verifier = ChecksumVerifier(settings.CHECKSUM_ALGORITHM)
        self.transport = HttpChunkTransport(
            self.api_url, session=self.http, verifier=self.verifier, timeout=settings.CHUNK_UPLOAD_TIMEOUT
        )
        self.progress = ProgressTracker(max_samples=settings.BANDWIDTH_SAMPLES)

    def _request(self, method: str, path: str, session_id: str = "", **kwargs) -> dict:
        response = self.http.request(method, f"{self.api_url}{path}", timeout=30, **kwargs)
        if response.status_code >= 400:
            error = error_from_response(response, session_id)
            if error is not None:
                raise error
            response.raise_for_status()
        return response.json()

    def init_upload(self, file_path: Path, file_hash: Optional[str] = None) -> dict:
        """Initialize upload session and return the server's layout for it."""
        file_size = file_path.stat().st_size
        print(f"Initializing upload for {file_path.name} ({file_size / (1024*1024):.2f} MB)...")
        data = self._request("POST", "/uploads", json={
            "file_name": file_path.name,
            "total_size": file_size,
            "chunk_size": self.chunk_size,
            "file_hash": file_hash,
        })
        print(f"✓ Session initialized: {data['session_id']}")
        print(f"  Total chunks: {data['total_chunks']} of {data['chunk_size']} bytes")
        return data

    def get_session(self, session_id: str) -> dict:
        return self._request("GET", f"/uploads/{session_id}", session_id)

    def get_status(self, session_id: str) -> dict:
        return self._request("GET", f"/uploads/{session_id}/status", session_id)

    def verify_chunks(self, session_id: str) -> Set[int]:
        """Indices the server confirms are staged."""
        return set(self._request("GET", f"/uploads/{session_id}/chunks", session_id)["uploaded_indices"])

    def resume_session(self, session_id: str) -> Set[int]:
        """Leave a paused state (if any) and return the verified indices."""
        return set(self._request("POST", f"/uploads/{session_id}/resume", session_id)["uploaded_indices"])

    def complete_upload(self, session_id: str) -> dict:
        """Assemble the file; safe to call after the server already assembled it."""
        print("\nCompleting upload...")
        return self._request("POST", f"/uploads/{session_id}/complete", session_id)

    def upload_chunk(self, session_id: str, chunk: Chunk, uploaded_bytes: Callable[[int, int], None]) -> bool:
        """Upload one chunk, retrying transient failures with backoff."""
        for attempt in range(self.max_retries + 1):
            result = self.transport.upload(chunk, session_id, on_progress=partial(uploaded_bytes, chunk.index))
            if result.success:
                return True
            if result.fatal_error is not None:
                raise result.fatal_error
            uploaded_bytes(chunk.index, 0)
            if attempt < self.max_retries:
                delay = self.retry_backoff[min(attempt, len(self.retry_backoff) - 1)]
                logger.warning(f"Chunk {chunk.index} attempt {attempt + 1} failed ({result.reason}); retrying in {delay}s")
                self.sleep(delay)
            else:
                logger.error(f"Chunk {chunk.index} failed after {attempt + 1} attempts: {result.reason}")
        return False

    def upload_file(self, file_path: str, session_id: Optional[str] = None) -> str:
        """
        Upload a file in chunks.

        If session_id is provided, resume from that session: the server is asked
        which chunks are actually staged and only the rest are sent.
        Otherwise, start a new upload.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        if session_id:
            print(f"Resuming upload session: {session_id}")
            session = self.get_session(session_id)
            chunk_size = session["chunk_size"]
            total_chunks = session["total_chunks"]
            completed = self.resume_session(session_id)
            print(f"Verified on server: {len(completed)}/{total_chunks} chunks")
        else:
            print("Calculating file hash...")
            file_hash = self.verifier.file_checksum(str(file_path))
            print(f"✓ File {self.verifier.algorithm}: {file_hash[:16]}...")
            data = self.init_upload(file_path, file_hash)
            session_id = data["session_id"]
            chunk_size = data["chunk_size"]
            total_chunks = data["total_chunks"]
            completed = set()

        sequence = ChunkSequence(ByteSource(file_path), chunk_size, self.verifier,
                                 id_factory=partial(chunk_id_for, session_id))
        if len(sequence) != total_chunks:
            raise UploadError(f"{file_path} does not match session {session_id}", session_id)

        pending: List[int] = [index for index in range(total_chunks) if index not in completed]
        completed_bytes = sum(end - start for index, (start, end) in enumerate(sequence.ranges()) if index in completed)
        self.progress.initialize(session_id, sequence.total_size, total_chunks, uploaded_bytes=completed_bytes)
        in_flight = {}
        lock = threading.Lock()

        def _report(index: int, sent: int) -> None:
            with lock:
                in_flight[index] = sent
                total = completed_bytes + sum(in_flight.values())
            self.progress.update(session_id, total, index)

        print(f"\nUploading {len(pending)} chunks using {self.max_workers} parallel workers...")
        start_time = time.time()
        successful_uploads = 0
        failed_uploads = 0

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.upload_chunk, session_id, sequence.chunk_at(index), _report): index
                for index in pending
            }

            for future in as_completed(futures):
                index = futures[future]
                try:
                    success = future.result()
                except UploadError:
                    executor.shutdown(wait=True, cancel_futures=True)
                    raise
                if success:
                    successful_uploads += 1
                    progress = self.progress.get_progress(session_id)
                    print(f"  ✓ Chunk {index + 1}/{total_chunks} uploaded ({progress.percentage:.1f}%)")
                else:
                    failed_uploads += 1
                    print(f"  ✗ Chunk {index + 1} failed")

        upload_time = max(time.time() - start_time, 1e-6)

        if failed_uploads > 0:
            print(f"\n⚠ Upload incomplete: {failed_uploads} chunks failed")
            print(f"  Resume with: resumable-upload {file_path} --resume {session_id}")
            return session_id

        result = self.complete_upload(session_id)
        self.progress.complete(session_id)

        print("\n✓ Upload completed successfully!")
        print(f"  File: {result['path']}")
        print(f"  Time: {upload_time:.2f} seconds")
        print(f"  Speed: {sequence.total_size / upload_time / (1024*1024):.2f} MB/s")

        return session_id


def main():
    """CLI for the resumable uploader."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if len(sys.argv) < 2:
        print("Usage:")
        print("  New upload:    resumable-upload <file_path>")
        print("  Resume upload: resumable-upload <file_path> --resume <session_id>")
        sys.exit(1)

    file_path = sys.argv[1]
    session_id = None

    if "--resume" in sys.argv:
        resume_idx = sys.argv.index("--resume")
        if len(sys.argv) > resume_idx + 1:
            session_id = sys.argv[resume_idx + 1]

    uploader = ResumableUploader(user_id=os.getenv("UPLOAD_USER_ID"))

    try:
        uploader.upload_file(file_path, session_id=session_id)
    except Exception as e:
        print(f"\n✗ Upload failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
