from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    pass


class MeetingJobModel(Base):
    __tablename__ = "meeting_job"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(sa.String, nullable=False)
    meeting_id: Mapped[Optional[str]] = mapped_column(sa.String)
    chunk_keys: Mapped[list] = mapped_column(sa.JSON, nullable=False)
    # None for sequential chunks, one label per key for simultaneous tracks
    track_labels: Mapped[Optional[list]] = mapped_column(sa.JSON)
    meeting_meta: Mapped[Optional[dict]] = mapped_column(sa.JSON)
    status: Mapped[str] = mapped_column(
        sa.String(20), nullable=False, server_default="pending"
    )
    result: Mapped[Optional[dict]] = mapped_column(sa.JSON)
    error: Mapped[Optional[str]] = mapped_column(sa.Text)
    attempts: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, server_default=sa.text("0")
    )
    processing_deadline: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        sa.Index("idx_meeting_job_status_created_at", "status", "created_at"),
        sa.Index("idx_meeting_job_session_id", "session_id"),
    )


class MeetingModel(Base):
    __tablename__ = "meeting"

    id: Mapped[str] = mapped_column(sa.String, primary_key=True)
    meeting_code: Mapped[Optional[str]] = mapped_column(sa.String, unique=True)
    title: Mapped[Optional[str]] = mapped_column(sa.String)
    audio_link: Mapped[Optional[str]] = mapped_column(sa.String)
    analysis_payload: Mapped[Optional[str]] = mapped_column(sa.Text)
    start_time: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    end_time: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    duration_ms: Mapped[Optional[int]] = mapped_column(sa.BigInteger)
    host_audio: Mapped[Optional[str]] = mapped_column(sa.String)
    participant_audio: Mapped[Optional[list]] = mapped_column(sa.JSON)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False
    )


metadata = Base.metadata
