"""
Database model for the SQL session tier

One row per upload session. The full session snapshot lives in `payload`;
`status` and `expires_at` are broken out so the expiry sweep can filter in SQL.
"""
from datetime import datetime

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


class UploadSessionRecord(Base):
    """Upload session snapshot stored in the metadata database."""

    __tablename__ = "upload_sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<UploadSessionRecord(session_id={self.session_id}, status={self.status})>"
