"""
Session persistence backends.

Each backend stores JSON-serializable session records keyed by session id and
may raise on failure; SessionStore wraps every call so a degraded backend is
logged and skipped instead of aborting an upload.
"""
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import redis
from sqlalchemy import delete, select
from sqlalchemy.engine import Engine

from ..core.database import create_db_engine, create_session_factory
from ..models import Base, UploadSessionRecord

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class SessionBackend(ABC):
    """One storage tier for session records."""

    name = "backend"

    @abstractmethod
    def get(self, session_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    def put(self, session_id: str, record: Record, ttl_seconds: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def delete(self, session_id: str) -> None:
        ...

    @abstractmethod
    def scan(self) -> Iterator[Record]:
        ...

    def scan_expired(self, cutoff: datetime) -> Iterator[Record]:
        """Records whose expiry is at or before `cutoff`"""
        for record in self.scan():
            expires_at = record.get("expires_at")
            if expires_at and datetime.fromisoformat(expires_at) <= cutoff:
                yield record

    def close(self) -> None:
        pass


class MemoryBackend(SessionBackend):
    """In-process cache; records are copied in and out so callers never share state"""

    name = "memory"

    def __init__(self):
        self._records: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[Record]:
        with self._lock:
            raw = self._records.get(session_id)
        return json.loads(raw) if raw is not None else None

    def put(self, session_id: str, record: Record, ttl_seconds: Optional[int] = None) -> None:
        raw = json.dumps(record)
        with self._lock:
            self._records[session_id] = raw

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._records.pop(session_id, None)

    def scan(self) -> Iterator[Record]:
        with self._lock:
            snapshot = list(self._records.values())
        for raw in snapshot:
            yield json.loads(raw)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class RedisBackend(SessionBackend):
    """Shared key-value tier; keys expire on their own via Redis TTL"""

    name = "redis"
    KEY_PREFIX = "upload_session:"

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        if client is None and not url:
            raise ValueError("RedisBackend needs a URL or a client")
        self.client = client or redis.Redis.from_url(url, decode_responses=True)

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    def get(self, session_id: str) -> Optional[Record]:
        raw = self.client.get(self._key(session_id))
        return json.loads(raw) if raw else None

    def put(self, session_id: str, record: Record, ttl_seconds: Optional[int] = None) -> None:
        ex = max(int(ttl_seconds), 1) if ttl_seconds is not None else None
        self.client.set(self._key(session_id), json.dumps(record), ex=ex)

    def delete(self, session_id: str) -> None:
        self.client.delete(self._key(session_id))

    def scan(self) -> Iterator[Record]:
        for key in self.client.scan_iter(match=f"{self.KEY_PREFIX}*"):
            raw = self.client.get(key)
            if raw:
                yield json.loads(raw)

    def close(self) -> None:
        self.client.close()


class SqlBackend(SessionBackend):
    """Durable metadata tier in a relational database"""

    name = "sql"

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None and not database_url:
            raise ValueError("SqlBackend needs a database URL or an engine")
        self.engine = engine or create_db_engine(database_url)
        self.session_maker = create_session_factory(self.engine)
        Base.metadata.create_all(bind=self.engine)

    def get(self, session_id: str) -> Optional[Record]:
        with self.session_maker() as db:
            row = db.get(UploadSessionRecord, session_id)
            return dict(row.payload) if row else None

    def put(self, session_id: str, record: Record, ttl_seconds: Optional[int] = None) -> None:
        expires_at = datetime.fromisoformat(record["expires_at"]) if record.get("expires_at") else None
        with self.session_maker() as db:
            row = db.get(UploadSessionRecord, session_id)
            if row is None:
                row = UploadSessionRecord(session_id=session_id)
                db.add(row)
            row.status = record["status"]
            row.payload = record
            row.expires_at = expires_at
            row.updated_at = datetime.fromisoformat(record["updated_at"])
            db.commit()

    def delete(self, session_id: str) -> None:
        with self.session_maker() as db:
            db.execute(delete(UploadSessionRecord).where(UploadSessionRecord.session_id == session_id))
            db.commit()

    def scan(self) -> Iterator[Record]:
        with self.session_maker() as db:
            rows = db.execute(select(UploadSessionRecord.payload)).scalars().all()
        for payload in rows:
            yield dict(payload)

    def scan_expired(self, cutoff: datetime) -> Iterator[Record]:
        query = select(UploadSessionRecord.payload).where(UploadSessionRecord.expires_at <= cutoff)
        with self.session_maker() as db:
            rows = db.execute(query).scalars().all()
        for payload in rows:
            yield dict(payload)

    def close(self) -> None:
        self.engine.dispose()


class FileBackend(SessionBackend):
    """Last-resort local tier: one JSON file per session"""

    name = "file"

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        if "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.directory / f"{session_id}.json"

    def get(self, session_id: str) -> Optional[Record]:
        path = self._path(session_id)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def put(self, session_id: str, record: Record, ttl_seconds: Optional[int] = None) -> None:
        path = self._path(session_id)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{session_id}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, session_id: str) -> None:
        self._path(session_id).unlink(missing_ok=True)

    def scan(self) -> Iterator[Record]:
        for path in sorted(self.directory.glob("*.json")):
            try:
                yield json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable session file {path}: {e}")
