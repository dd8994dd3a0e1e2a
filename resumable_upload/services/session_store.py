"""
Tiered session persistence.

Backends are ranked fastest first (memory, then Redis, SQL, JSON file). Reads
try each tier in order and back-fill faster tiers on a hit. Writes always land
in the first tier; every other tier is best-effort, so a degraded backing store
never aborts an in-progress upload.

Updates for one session are serialized with a per-session lock. `put` merges
the incoming snapshot into the stored one (union of uploaded chunk ids), while
`update` applies a read-modify-write and stores the result as-is, which is what
reconciliation against the object store needs.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from ..core.exceptions import SessionNotFound
from ..models import UploadSession, utcnow
from .backends import MemoryBackend, SessionBackend

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    """Result of one backend call"""
    ok: bool
    value: Any = None
    error: Optional[Exception] = None


class SessionStore:
    """Read-through / write-through store for UploadSession records"""

    def __init__(
        self,
        backends: Optional[Sequence[SessionBackend]] = None,
        retention: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backends: List[SessionBackend] = list(backends) if backends else [MemoryBackend()]
        self.retention = retention
        self.clock = clock
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ==================== Backend plumbing ====================

    def _call(self, backend: SessionBackend, operation: str, *args: Any) -> Outcome:
        try:
            return Outcome(ok=True, value=getattr(backend, operation)(*args))
        except Exception as e:
            logger.warning(f"Session backend '{backend.name}' failed on {operation}: {e}")
            return Outcome(ok=False, error=e)

    def _ttl_seconds(self, session: UploadSession) -> Optional[int]:
        if session.expires_at is None:
            return None
        remaining = session.expires_at + self.retention - self.clock()
        return max(int(remaining.total_seconds()), 1)

    def _write(self, session: UploadSession) -> None:
        record = session.to_dict()
        ttl = self._ttl_seconds(session)
        primary, *others = self.backends
        # The first tier is authoritative for this process and must not fail silently
        primary.put(session.session_id, record, ttl)
        for backend in others:
            self._call(backend, "put", session.session_id, record, ttl)

    def lock(self, session_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.RLock()
            return lock

    # ==================== Public API ====================

    def get(self, session_id: str) -> Optional[UploadSession]:
        missed: List[SessionBackend] = []
        for backend in self.backends:
            outcome = self._call(backend, "get", session_id)
            if outcome.ok and outcome.value is not None:
                session = UploadSession.from_dict(outcome.value)
                if missed:
                    ttl = self._ttl_seconds(session)
                    for faster in missed:
                        self._call(faster, "put", session_id, outcome.value, ttl)
                    logger.debug(f"Session {session_id} restored from '{backend.name}' tier")
                return session
            missed.append(backend)
        return None

    def require(self, session_id: str) -> UploadSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound(f"Upload session {session_id} not found", session_id)
        return session

    def put(self, session: UploadSession) -> UploadSession:
        """Store a snapshot, merging monotonically with whatever is already stored"""
        with self.lock(session.session_id):
            existing = self.get(session.session_id)
            merged = existing.merge(session) if existing else session
            self._write(merged)
            return merged

    def update(self, session_id: str, mutator: Callable[[UploadSession], Any]) -> UploadSession:
        """
        Serialized read-modify-write.

        The mutator receives the current session and changes it in place; the
        result is written to every tier without merging.
        """
        with self.lock(session_id):
            session = self.require(session_id)
            mutator(session)
            session.touch(self.clock())
            self._write(session)
            return session

    def delete(self, session_id: str) -> None:
        with self.lock(session_id):
            for backend in self.backends:
                self._call(backend, "delete", session_id)
        with self._locks_guard:
            self._locks.pop(session_id, None)

    def _collect(self, operation: str, *args: Any) -> Dict[str, UploadSession]:
        found: Dict[str, UploadSession] = {}
        for backend in self.backends:
            outcome = self._call(backend, operation, *args)
            if not outcome.ok:
                continue
            try:
                records: Iterator[dict] = iter(outcome.value)
                for record in records:
                    session = UploadSession.from_dict(record)
                    current = found.get(session.session_id)
                    if current is None or session.updated_at > current.updated_at:
                        found[session.session_id] = session
            except Exception as e:
                logger.warning(f"Session backend '{backend.name}' failed during {operation}: {e}")
        return found

    def list_sessions(self) -> List[UploadSession]:
        """Every known session across all tiers, newest snapshot per id"""
        found = self._collect("scan")
        return sorted(found.values(), key=lambda s: s.created_at, reverse=True)

    def list_expired(self, now: Optional[datetime] = None) -> List[UploadSession]:
        now = now or self.clock()
        expired = []
        for session_id in self._collect("scan_expired", now):
            # A faster tier may hold a newer snapshot with an extended expiry
            session = self.get(session_id)
            if session is not None and session.is_expired(now):
                expired.append(session)
        return expired

    def sweep_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Delete records whose expiry plus retention has passed from all tiers"""
        now = now or self.clock()
        removed = []
        for session in self.list_expired(now - self.retention):
            self.delete(session.session_id)
            removed.append(session.session_id)
        if removed:
            logger.info(f"Swept {len(removed)} expired session(s)")
        return removed

    def close(self) -> None:
        for backend in self.backends:
            self._call(backend, "close")
