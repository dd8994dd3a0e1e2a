"""
Upload progress tracking.

Derives percentage, smoothed bandwidth and ETA from a stream of cumulative
byte counts. Progress is advisory: a missing record never blocks the
authoritative session state.
"""
import logging
import math
import threading
import time
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, List, Optional

from ..models import UploadProgress

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Thread-safe per-session progress bookkeeping"""

    def __init__(self, max_samples: int = 10, clock: Callable[[], float] = time.monotonic):
        self.max_samples = max_samples
        self.clock = clock
        self._progress: Dict[str, UploadProgress] = {}
        self._samples: Dict[str, Deque[float]] = {}
        self._last_seen: Dict[str, float] = {}
        self._started: Dict[str, float] = {}
        self._lock = threading.Lock()

    def initialize(self, session_id: str, total_bytes: int, total_chunks: int, uploaded_bytes: int = 0) -> None:
        now = datetime.now(timezone.utc)
        with self._lock:
            self._progress[session_id] = UploadProgress(
                session_id=session_id,
                total_bytes=total_bytes,
                uploaded_bytes=uploaded_bytes,
                percentage=self._percentage(uploaded_bytes, total_bytes),
                total_chunks=total_chunks,
                status="queued",
                started_at=now,
                last_update_at=now,
            )
            self._samples[session_id] = deque(maxlen=self.max_samples)
            self._last_seen[session_id] = self.clock()
            self._started[session_id] = self._last_seen[session_id]

    def update(self, session_id: str, uploaded_bytes: int, current_chunk_index: Optional[int] = None) -> None:
        with self._lock:
            progress = self._progress.get(session_id)
            if progress is None:
                return

            now = self.clock()
            if current_chunk_index is not None:
                progress.current_chunk_index = current_chunk_index

            previous_bytes = progress.uploaded_bytes
            if uploaded_bytes < previous_bytes:
                # Percentage never goes backwards between initialize and complete
                logger.debug(f"Ignoring regressing byte count for {session_id}: {uploaded_bytes} < {previous_bytes}")
                return

            elapsed = now - self._last_seen[session_id]
            if uploaded_bytes > previous_bytes and elapsed > 0:
                self._samples[session_id].append((uploaded_bytes - previous_bytes) / elapsed)
                samples = self._samples[session_id]
                progress.bandwidth = sum(samples) / len(samples)

            progress.uploaded_bytes = uploaded_bytes
            progress.percentage = self._percentage(uploaded_bytes, progress.total_bytes)
            progress.last_update_at = datetime.now(timezone.utc)
            self._last_seen[session_id] = now

            if progress.percentage >= 100:
                progress.status = "completed"
            elif progress.status == "queued":
                progress.status = "uploading"
            progress.estimated_seconds_remaining = self._eta(progress)

    @staticmethod
    def _percentage(uploaded: int, total: int) -> float:
        if total <= 0:
            return 100.0
        return min(uploaded / total * 100, 100.0)

    @staticmethod
    def _eta(progress: UploadProgress) -> int:
        remaining = progress.total_bytes - progress.uploaded_bytes
        if progress.bandwidth <= 0 or remaining <= 0:
            return 0
        return math.ceil(remaining / progress.bandwidth)

    def get_progress(self, session_id: str) -> Optional[UploadProgress]:
        with self._lock:
            progress = self._progress.get(session_id)
            return replace(progress) if progress else None

    def bandwidth(self, session_id: str) -> float:
        progress = self.get_progress(session_id)
        return progress.bandwidth if progress else 0.0

    def estimate_time_remaining(self, session_id: str) -> int:
        progress = self.get_progress(session_id)
        return progress.estimated_seconds_remaining if progress else 0

    def set_status(self, session_id: str, status: str) -> None:
        with self._lock:
            progress = self._progress.get(session_id)
            if progress:
                progress.status = status
                progress.last_update_at = datetime.now(timezone.utc)

    def pause(self, session_id: str) -> None:
        self.set_status(session_id, "paused")

    def resume(self, session_id: str) -> None:
        self.set_status(session_id, "uploading")

    def fail(self, session_id: str) -> None:
        self.set_status(session_id, "failed")

    def complete(self, session_id: str) -> None:
        with self._lock:
            progress = self._progress.get(session_id)
            if progress:
                progress.status = "completed"
                progress.percentage = 100.0
                progress.uploaded_bytes = progress.total_bytes
                progress.estimated_seconds_remaining = 0
                progress.last_update_at = datetime.now(timezone.utc)

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._progress.pop(session_id, None)
            self._samples.pop(session_id, None)
            self._last_seen.pop(session_id, None)
            self._started.pop(session_id, None)

    def all_progress(self) -> List[UploadProgress]:
        with self._lock:
            return [replace(progress) for progress in self._progress.values()]

    def duration(self, session_id: str) -> float:
        """Seconds between initialize and the last update (or now while running)"""
        with self._lock:
            progress = self._progress.get(session_id)
            if progress is None:
                return 0.0
            end = self._last_seen[session_id] if progress.status == "completed" else self.clock()
            return max(end - self._started[session_id], 0.0)

    def average_speed(self, session_id: str) -> float:
        duration = self.duration(session_id)
        progress = self.get_progress(session_id)
        if not progress or duration <= 0:
            return 0.0
        return progress.uploaded_bytes / duration

    def cleanup(self, max_age: timedelta = timedelta(hours=1)) -> int:
        """Drop completed or failed records not updated within `max_age`"""
        cutoff = datetime.now(timezone.utc) - max_age
        with self._lock:
            stale = [
                session_id for session_id, progress in self._progress.items()
                if progress.status in ("completed", "failed") and progress.last_update_at < cutoff
            ]
        for session_id in stale:
            self.remove(session_id)
        return len(stale)
