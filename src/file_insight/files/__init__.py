"""File record store."""

from file_insight.files.repository import FileCreate, FileRecordRepository, FileRecordView

__all__ = ["FileCreate", "FileRecordRepository", "FileRecordView"]
