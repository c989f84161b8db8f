"""SQLModel ORM tables for file records and the analysis job queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    text,
)
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class FileRecord(SQLModel, table=True):
    __tablename__ = "files"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_files_user_upload", "user_id", "upload_date"),)

    file_id: str = Field(primary_key=True)
    user_id: str = Field(default=DEFAULT_USER_ID, index=True)
    filename: str
    original_name: str
    path: str
    mime_type: str = Field(index=True)
    size_bytes: int = Field(default=0)
    upload_date: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    analyzed: bool = Field(default=False, index=True)
    ai_tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    summary: str = Field(default="", sa_column=Column(Text, nullable=False))
    analysis_date: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    analysis_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisJob(SQLModel, table=True):
    __tablename__ = "analysis_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_analysis_jobs_queue", "state", "priority", "next_eligible_at", "seq"),
        Index("idx_analysis_jobs_finished", "state", "finished_at"),
        Index(
            "uq_analysis_jobs_active_file",
            "file_id",
            unique=True,
            sqlite_where=text("state = 'active'"),
        ),
    )

    job_id: str = Field(primary_key=True)
    seq: int = Field(sa_column=Column(BigInteger, nullable=False, unique=True))
    file_id: str = Field(index=True)
    file_path: str
    mime_type: str
    state: str = Field(index=True)
    priority: int = Field(default=1)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    next_eligible_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    progress: int = Field(default=0)
    failure_kind: str | None = Field(default=None, index=True)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisJobEvent(SQLModel, table=True):
    __tablename__ = "analysis_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_analysis_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("analysis_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    state_from: str | None = Field(default=None)
    state_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisJobStateCount(SQLModel, table=True):
    __tablename__ = "analysis_job_state_counts"  # type: ignore[bad-override]

    state: str = Field(primary_key=True)
    count: int = Field(default=0)
