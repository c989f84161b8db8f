"""Shared test fixtures."""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Iterator
from pathlib import Path

import pytest

from file_insight.analysis.base import AnalysisError, AnalysisResult
from file_insight.files.repository import FileCreate, FileRecordRepository
from file_insight.queue.models import FileRef
from file_insight.queue.repository import JobRepository


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("FILE_INSIGHT_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "file_insight.db"


@pytest.fixture()
def jobs(db_path: Path) -> Iterator[JobRepository]:
    repository = JobRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def files(jobs: JobRepository, db_path: Path) -> Iterator[FileRecordRepository]:
    repository = FileRecordRepository(db_path)
    yield repository
    repository.close()


@pytest.fixture()
def stored_file(tmp_path: Path, files: FileRecordRepository):
    """Factory writing a file to disk and creating its record; returns a FileRef."""

    counter = {"value": 0}

    def _create(
        content: bytes = b"Queue workers analyze uploaded files.",
        *,
        name: str | None = None,
        mime_type: str = "text/plain",
    ) -> FileRef:
        counter["value"] += 1
        filename = name or f"upload-{counter['value']}.txt"
        path = tmp_path / "uploads" / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        file_id = files.create(
            FileCreate(
                filename=filename,
                original_name=filename,
                path=str(path),
                mime_type=mime_type,
                size_bytes=len(content),
            ),
        )
        return FileRef(file_id=file_id, path=str(path), mime_type=mime_type)

    return _create


class ScriptedAnalyzer:
    """Analyzer returning or raising scripted outcomes in call order.

    Each step is an ``AnalysisResult``, an exception instance, or a
    ``(delay_seconds, outcome)`` tuple. The last step repeats once the script
    is exhausted.
    """

    def __init__(self, *steps: object) -> None:
        self.steps = list(steps) or [AnalysisResult(tags=("stub",), summary="stub summary")]
        self.calls: list[tuple[Path, str]] = []
        self._lock = threading.Lock()

    def analyze(self, path: Path, mime_type: str) -> AnalysisResult:
        with self._lock:
            index = min(len(self.calls), len(self.steps) - 1)
            self.calls.append((path, mime_type))
            step = self.steps[index]
        if isinstance(step, tuple):
            delay, step = step
            time.sleep(delay)
        if isinstance(step, BaseException):
            raise step
        return step


@pytest.fixture()
def failing_analyzer() -> ScriptedAnalyzer:
    return ScriptedAnalyzer(AnalysisError("model unavailable"))
