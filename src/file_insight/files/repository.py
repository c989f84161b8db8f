"""File record store: upload metadata plus the analysis projection."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlmodel import Session, select

from file_insight.storage.alembic_runner import upgrade_head
from file_insight.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from file_insight.storage.sqlmodel_models import DEFAULT_USER_ID, FileRecord

UPDATABLE_FIELDS = frozenset(
    {
        "filename",
        "original_name",
        "path",
        "mime_type",
        "size_bytes",
        "analyzed",
        "ai_tags",
        "summary",
        "analysis_date",
        "analysis_error",
    },
)


@dataclass(slots=True)
class FileCreate:
    """Fields captured at upload time."""

    filename: str
    original_name: str
    path: str
    mime_type: str
    size_bytes: int = 0
    user_id: str = DEFAULT_USER_ID
    file_id: str | None = None
    upload_date: datetime | None = None


@dataclass(slots=True)
class FileRecordView:
    """Stored file record."""

    file_id: str
    user_id: str
    filename: str
    original_name: str
    path: str
    mime_type: str
    size_bytes: int
    upload_date: datetime
    analyzed: bool
    ai_tags: list[str] = field(default_factory=list)
    summary: str = ""
    analysis_date: datetime | None = None
    analysis_error: str | None = None


class FileRecordRepository:
    """Persistence for uploaded file records backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create(self, fields: FileCreate) -> str:
        """Insert a new record with ``analyzed=False`` and return its id."""

        now = to_db_datetime(utc_now())
        file_id = fields.file_id or str(uuid4())
        with Session(self.engine) as session:
            session.add(
                FileRecord(
                    file_id=file_id,
                    user_id=fields.user_id,
                    filename=fields.filename,
                    original_name=fields.original_name,
                    path=fields.path,
                    mime_type=fields.mime_type,
                    size_bytes=fields.size_bytes,
                    upload_date=to_db_datetime(fields.upload_date) if fields.upload_date else now,
                    analyzed=False,
                    ai_tags_json="[]",
                    summary="",
                    analysis_date=None,
                    analysis_error=None,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        return file_id

    def get(self, file_id: str) -> FileRecordView | None:
        with Session(self.engine) as session:
            row = session.exec(select(FileRecord).where(FileRecord.file_id == file_id)).one_or_none()
        return _to_view(row) if row is not None else None

    def update(self, file_id: str, changes: dict[str, Any]) -> bool:
        """Apply a partial update.

        Returns ``False`` when the record does not exist. Re-applying values the
        record already holds leaves it untouched, ``updated_at`` included, so the
        same result can be written any number of times.
        """

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported file record fields: {', '.join(sorted(unknown))}")

        with Session(self.engine) as session:
            row = session.exec(select(FileRecord).where(FileRecord.file_id == file_id)).one_or_none()
            if row is None:
                return False
            changed = False
            for name, value in changes.items():
                column, stored = _to_column_value(name, value)
                if getattr(row, column) != stored:
                    setattr(row, column, stored)
                    changed = True
            if changed:
                row.updated_at = to_db_datetime(utc_now())
                session.add(row)
                session.commit()
        return True

    def delete(self, file_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(select(FileRecord).where(FileRecord.file_id == file_id)).one_or_none()
            if row is None:
                return False
            session.delete(row)
            session.commit()
        return True


def _to_column_value(name: str, value: Any) -> tuple[str, Any]:
    if name == "ai_tags":
        return "ai_tags_json", json.dumps(list(value or []), ensure_ascii=False)
    if name == "analysis_date":
        return name, to_db_datetime(value) if value is not None else None
    if name == "summary":
        return name, value or ""
    return name, value


def _to_view(row: FileRecord) -> FileRecordView:
    tags = json.loads(row.ai_tags_json or "[]")
    return FileRecordView(
        file_id=row.file_id,
        user_id=row.user_id,
        filename=row.filename,
        original_name=row.original_name,
        path=row.path,
        mime_type=row.mime_type,
        size_bytes=row.size_bytes,
        upload_date=to_utc_aware(row.upload_date),
        analyzed=row.analyzed,
        ai_tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
        summary=row.summary,
        analysis_date=to_utc_aware(row.analysis_date) if row.analysis_date is not None else None,
        analysis_error=row.analysis_error,
    )
