import enum
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from telemetry_store.db import Base


class SessionStatus(str, enum.Enum):
    pending = "PENDING"
    committed = "COMMITTED"
    failed = "FAILED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionRecord(Base):
    __tablename__ = "session_records"
    __table_args__ = (
        Index("idx_session_records_owner_uploaded", "owner_id", "uploaded_at"),
        Index("idx_session_records_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    content_digest: Mapped[str] = mapped_column(String(64), nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=SessionStatus.pending.value)

    track: Mapped[str] = mapped_column(Text, nullable=False, default="Unknown")
    date_start: Mapped[str] = mapped_column(String(64), nullable=False)
    date_end: Mapped[str | None] = mapped_column(String(64), nullable=True)
    car: Mapped[str | None] = mapped_column(Text, nullable=True)
    driver: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Unknown")
    session_category: Mapped[str] = mapped_column(String(32), nullable=False, default="unknown")
    session_type_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    lap_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    laps_valid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    best_lap_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    avg_clean_lap_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stint_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    payload_encoding: Mapped[str] = mapped_column(String(32), nullable=False, default="utf-8")

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    committed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    chunks: Mapped[list["SessionChunk"]] = relationship(back_populates="session", cascade="all, delete-orphan")


class SessionChunk(Base):
    __tablename__ = "session_chunks"
    __table_args__ = (UniqueConstraint("session_id", "chunk_index", name="uq_session_chunk_index"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("session_records.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    checksum_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    session: Mapped[SessionRecord] = relationship(back_populates="chunks")


class ContentDigestEntry(Base):
    """One claim per (owner, digest); the primary key is the dedup lock."""

    __tablename__ = "content_digests"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    content_digest: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
