from __future__ import annotations

import allure
import pytest
from sqlalchemy.exc import OperationalError

from conftest import ScriptedAnalyzer
from file_insight.files.repository import FileCreate, FileRecordRepository
from file_insight.queue.errors import EnqueueFailure
from file_insight.queue.models import JobState
from file_insight.queue.producer import PENDING_ANALYSIS_WARNING, AnalysisProducer
from file_insight.queue.repository import JobRepository
from file_insight.queue.retry import RetryPolicy
from file_insight.queue.worker import AnalysisWorker

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Producer"),
]


def _broken_enqueue(*_: object, **__: object) -> None:
    raise OperationalError("INSERT INTO analysis_jobs", {}, Exception("database is locked"))


def test_enqueue_returns_waiting_handle_without_analyzing(
    jobs: JobRepository,
    stored_file,
) -> None:
    producer = AnalysisProducer(repository=jobs, default_priority=3, max_attempts=5)

    handle = producer.enqueue(stored_file())

    assert handle.state == JobState.WAITING
    assert handle.job.priority == 3
    assert handle.job.max_attempts == 5
    assert jobs.stats().waiting == 1


def test_enqueue_wraps_store_errors(
    jobs: JobRepository,
    stored_file,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(jobs, "enqueue_job", _broken_enqueue)
    producer = AnalysisProducer(repository=jobs)

    with pytest.raises(EnqueueFailure, match="database is locked"):
        producer.enqueue(stored_file())


def test_upload_survives_enqueue_failure_with_warning(
    jobs: JobRepository,
    files: FileRecordRepository,
    tmp_path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(jobs, "enqueue_job", _broken_enqueue)
    producer = AnalysisProducer(repository=jobs)
    path = tmp_path / "notes.txt"
    path.write_text("Uploaded while the queue was down.", encoding="utf-8")

    outcome = producer.enqueue_upload(
        files,
        FileCreate(
            filename="notes.txt",
            original_name="notes.txt",
            path=str(path),
            mime_type="text/plain",
        ),
    )

    assert outcome.job is None
    assert outcome.warning == PENDING_ANALYSIS_WARNING
    record = files.get(outcome.file_id)
    assert record is not None
    assert record.analyzed is False
    assert record.analysis_error is None
    assert jobs.stats().total == 0


def test_handle_wait_returns_terminal_job(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
) -> None:
    handle = AnalysisProducer(repository=jobs).enqueue(stored_file())
    AnalysisWorker(
        repository=jobs,
        files=files,
        analyzer=ScriptedAnalyzer(),
        worker_id="worker-test",
        retry_policy=RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0),
    ).run_once()

    finished = handle.wait(timeout=1.0)

    assert finished.state == JobState.COMPLETED
    assert handle.state == JobState.COMPLETED


def test_handle_wait_times_out_while_job_is_waiting(jobs: JobRepository, stored_file) -> None:
    handle = AnalysisProducer(repository=jobs).enqueue(stored_file())

    with pytest.raises(TimeoutError, match="still waiting"):
        handle.wait(timeout=0.05, poll_interval=0.01)


def test_handle_progress_requires_hub(jobs: JobRepository, stored_file) -> None:
    handle = AnalysisProducer(repository=jobs).enqueue(stored_file())

    with pytest.raises(RuntimeError, match="ProgressHub"):
        handle.progress()
