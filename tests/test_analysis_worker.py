from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlmodel import Session, select

from conftest import ScriptedAnalyzer
from file_insight.analysis.base import AnalysisError, AnalysisResult
from file_insight.files.repository import FileRecordRepository
from file_insight.queue.models import FailureKind, JobCreate, JobState
from file_insight.queue.producer import AnalysisProducer
from file_insight.queue.progress import ProgressHub
from file_insight.queue.repository import JobRepository
from file_insight.queue.retry import RetryPolicy
from file_insight.queue.worker import AnalysisWorker
from file_insight.storage.common import utc_now
from file_insight.storage.sqlmodel_models import FileRecord

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Worker Execution"),
]

NO_DELAY = RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0, max_attempts=3)


def _worker(
    jobs: JobRepository,
    files: FileRecordRepository,
    analyzer: object,
    **overrides: object,
) -> AnalysisWorker:
    options: dict[str, object] = {
        "worker_id": "worker-test",
        "retry_policy": NO_DELAY,
        "job_timeout_seconds": 5.0,
        "stall_timeout_seconds": 300.0,
        "poll_interval_seconds": 0.01,
    }
    options.update(overrides)
    return AnalysisWorker(repository=jobs, files=files, analyzer=analyzer, **options)


def test_successful_analysis_updates_file_and_completes_job(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
) -> None:
    ref = stored_file()
    job = jobs.enqueue_job(JobCreate(file_ref=ref))
    analyzer = ScriptedAnalyzer(AnalysisResult(tags=("queue", "report"), summary="A report."))

    summary = _worker(jobs, files, analyzer).run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    assert analyzer.calls == [(Path(ref.path), "text/plain")]

    finished = jobs.get_job(job_id=job.job_id)
    assert finished is not None
    assert finished.state == JobState.COMPLETED
    assert finished.progress == 100
    assert finished.attempts == 1

    record = files.get(ref.file_id)
    assert record is not None
    assert record.analyzed is True
    assert record.ai_tags == ["queue", "report"]
    assert record.summary == "A report."
    assert record.analysis_date is not None
    assert record.analysis_error is None

    details = jobs.get_job_details(job_id=job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued", "claimed", "completed"]


def test_always_failing_analysis_ends_failed_after_max_attempts(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
    failing_analyzer: ScriptedAnalyzer,
) -> None:
    ref = stored_file()
    job = jobs.enqueue_job(JobCreate(file_ref=ref, max_attempts=3))

    summary = _worker(jobs, files, failing_analyzer).run_loop(max_idle_polls=1)

    assert summary.processed == 3
    assert summary.retried == 2
    assert summary.failed == 1
    assert summary.succeeded == 0
    assert len(failing_analyzer.calls) == 3

    failed = jobs.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.state == JobState.FAILED
    assert failed.attempts == 3
    assert failed.failure_kind == FailureKind.ANALYSIS_ERROR
    assert failed.last_error == "model unavailable"

    record = files.get(ref.file_id)
    assert record is not None
    assert record.analyzed is False
    assert record.analysis_error == "model unavailable"

    stats = jobs.stats()
    assert stats.failed == 1
    assert stats.total == 1


def test_timeout_then_success_keeps_second_attempt_result(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
) -> None:
    ref = stored_file()
    job = jobs.enqueue_job(JobCreate(file_ref=ref))
    analyzer = ScriptedAnalyzer(
        (0.6, AnalysisResult(tags=("stale",), summary="too late")),
        AnalysisResult(tags=("fresh", "second"), summary="second attempt"),
    )

    summary = _worker(jobs, files, analyzer, job_timeout_seconds=0.1).run_loop(max_idle_polls=1)

    assert summary.timeouts == 1
    assert summary.retried == 1
    assert summary.succeeded == 1

    finished = jobs.get_job(job_id=job.job_id)
    assert finished is not None
    assert finished.state == JobState.COMPLETED
    assert finished.attempts == 2

    record = files.get(ref.file_id)
    assert record is not None
    assert record.ai_tags == ["fresh", "second"]
    assert record.summary == "second attempt"
    assert record.analysis_error is None

    details = jobs.get_job_details(job_id=job.job_id)
    assert details is not None
    retry_events = [event for event in details.events if event.event_type == "retry_scheduled"]
    assert len(retry_events) == 1
    assert retry_events[0].details["failure_kind"] == FailureKind.TIMEOUT.value


def test_retry_waits_for_exponential_backoff(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
    failing_analyzer: ScriptedAnalyzer,
) -> None:
    job = jobs.enqueue_job(JobCreate(file_ref=stored_file()))
    worker = _worker(jobs, files, failing_analyzer, retry_policy=RetryPolicy())

    before = utc_now()
    first = worker.run_once()
    after = utc_now()

    assert first.retried == 1
    waiting = jobs.get_job(job_id=job.job_id)
    assert waiting is not None
    assert waiting.state == JobState.WAITING
    assert before + timedelta(seconds=2) <= waiting.next_eligible_at
    assert waiting.next_eligible_at <= after + timedelta(seconds=2)

    second = worker.run_once()
    assert second.processed == 0
    assert second.idle_polls == 1


def test_unexpected_analyzer_error_is_recorded_as_internal_failure(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
    caplog: pytest.LogCaptureFixture,
) -> None:
    job = jobs.enqueue_job(JobCreate(file_ref=stored_file(), max_attempts=1))
    analyzer = ScriptedAnalyzer(KeyError("tags"))

    with caplog.at_level(logging.ERROR):
        summary = _worker(jobs, files, analyzer).run_once()

    assert summary.failed == 1
    failed = jobs.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.state == JobState.FAILED
    assert failed.failure_kind == FailureKind.INTERNAL_ERROR
    assert "Internal error" in (failed.last_error or "")
    assert "Unexpected error while analyzing job" in caplog.text


def test_deleted_file_record_completes_without_analysis(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
) -> None:
    ref = stored_file()
    job = jobs.enqueue_job(JobCreate(file_ref=ref))
    assert files.delete(ref.file_id)
    analyzer = ScriptedAnalyzer()

    summary = _worker(jobs, files, analyzer).run_once()

    assert summary.skipped == 1
    assert summary.failed == 0
    assert analyzer.calls == []
    finished = jobs.get_job(job_id=job.job_id)
    assert finished is not None
    assert finished.state == JobState.COMPLETED
    assert finished.last_error is None


def test_missing_file_content_completes_without_analysis(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
) -> None:
    ref = stored_file()
    Path(ref.path).unlink()
    job = jobs.enqueue_job(JobCreate(file_ref=ref))
    analyzer = ScriptedAnalyzer()

    summary = _worker(jobs, files, analyzer).run_once()

    assert summary.skipped == 1
    assert analyzer.calls == []
    finished = jobs.get_job(job_id=job.job_id)
    assert finished is not None
    assert finished.state == JobState.COMPLETED
    record = files.get(ref.file_id)
    assert record is not None
    assert record.analyzed is False


def test_stalled_job_is_recovered_and_previous_owner_loses_it(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
) -> None:
    ref = stored_file()
    job = jobs.enqueue_job(JobCreate(file_ref=ref))
    abandoned = jobs.claim_next_ready_job(worker_id="worker-crashed")
    assert abandoned is not None
    time.sleep(0.1)

    analyzer = ScriptedAnalyzer(AnalysisResult(tags=("recovered",), summary="ok"))
    summary = _worker(jobs, files, analyzer, stall_timeout_seconds=0.05).run_once()

    assert summary.stalled_recovered == 1
    assert summary.succeeded == 1
    finished = jobs.get_job(job_id=job.job_id)
    assert finished is not None
    assert finished.state == JobState.COMPLETED
    assert finished.attempts == 2
    assert finished.worker_id == "worker-test"

    assert not jobs.complete_job(job_id=job.job_id, worker_id="worker-crashed")
    details = jobs.get_job_details(job_id=job.job_id)
    assert details is not None
    stall_events = [event for event in details.events if event.event_type == "retry_scheduled"]
    assert stall_events[0].details["failure_kind"] == FailureKind.STALLED.value


def test_stalled_job_on_last_attempt_fails(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
) -> None:
    ref = stored_file()
    job = jobs.enqueue_job(JobCreate(file_ref=ref, max_attempts=1))
    jobs.claim_next_ready_job(worker_id="worker-crashed")
    time.sleep(0.1)

    summary = _worker(jobs, files, ScriptedAnalyzer(), stall_timeout_seconds=0.05).run_once()

    assert summary.stalled_recovered == 1
    assert summary.processed == 0
    failed = jobs.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.state == JobState.FAILED
    assert failed.failure_kind == FailureKind.STALLED
    record = files.get(ref.file_id)
    assert record is not None
    assert "stalled" in (record.analysis_error or "")


@pytest.mark.parametrize(
    "late_outcome",
    [
        AnalysisError("late failure from superseded owner"),
        AnalysisResult(tags=("stale",), summary="stale result"),
    ],
    ids=["late-failure", "late-success"],
)
def test_superseded_owner_cannot_overwrite_new_owner_result(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
    late_outcome: object,
) -> None:
    ref = stored_file()
    job = jobs.enqueue_job(JobCreate(file_ref=ref))
    slow = _worker(jobs, files, ScriptedAnalyzer((0.8, late_outcome)), worker_id="worker-a")
    slow_summaries = []
    slow_thread = threading.Thread(target=lambda: slow_summaries.append(slow.run_once()))
    slow_thread.start()

    deadline = time.monotonic() + 2.0
    while jobs.stats().active == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert jobs.stats().active == 1
    time.sleep(0.3)

    fresh = AnalysisResult(tags=("fresh",), summary="new owner result")
    recovering = _worker(
        jobs,
        files,
        ScriptedAnalyzer(fresh),
        worker_id="worker-b",
        stall_timeout_seconds=0.2,
    )
    summary = recovering.run_once()
    slow_thread.join(timeout=5.0)

    assert summary.stalled_recovered == 1
    assert summary.succeeded == 1
    assert not slow_thread.is_alive()
    assert slow_summaries[0].succeeded == 0
    assert slow_summaries[0].failed == 0
    assert slow_summaries[0].retried == 0

    finished = jobs.get_job(job_id=job.job_id)
    assert finished is not None
    assert finished.state == JobState.COMPLETED
    assert finished.attempts == 2
    assert finished.worker_id == "worker-b"

    record = files.get(ref.file_id)
    assert record is not None
    assert record.analyzed is True
    assert record.ai_tags == ["fresh"]
    assert record.summary == "new owner result"
    assert record.analysis_error is None


def test_repeated_result_write_is_idempotent(
    files: FileRecordRepository,
    stored_file,
) -> None:
    ref = stored_file()
    changes = {
        "ai_tags": ["queue"],
        "summary": "same",
        "analyzed": True,
        "analysis_date": utc_now(),
        "analysis_error": None,
    }
    assert files.update(ref.file_id, changes)
    with Session(files.engine) as session:
        first = session.exec(select(FileRecord).where(FileRecord.file_id == ref.file_id)).one()
    time.sleep(0.01)

    assert files.update(ref.file_id, changes)

    with Session(files.engine) as session:
        second = session.exec(select(FileRecord).where(FileRecord.file_id == ref.file_id)).one()
    assert second.updated_at == first.updated_at
    assert second.ai_tags_json == first.ai_tags_json == '["queue"]'


def test_file_update_rejects_unknown_fields(files: FileRecordRepository, stored_file) -> None:
    ref = stored_file()

    with pytest.raises(ValueError, match="owner"):
        files.update(ref.file_id, {"owner": "someone"})
    assert files.update("missing", {"analyzed": True}) is False


def test_progress_events_follow_job_to_completion(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
) -> None:
    hub = ProgressHub()
    producer = AnalysisProducer(repository=jobs, progress_hub=hub)
    handle = producer.enqueue(stored_file())

    with handle.progress() as subscription:
        _worker(jobs, files, ScriptedAnalyzer(), progress_hub=hub).run_once()
        events = list(subscription.events(timeout=1.0))

    assert [event.progress for event in events] == [10, 80, 100, 100]
    assert events[-1].state == JobState.COMPLETED
    assert all(event.job_id == handle.job_id for event in events)
    assert handle.refresh().state == JobState.COMPLETED


def test_stop_request_prevents_new_claims(
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
) -> None:
    jobs.enqueue_job(JobCreate(file_ref=stored_file()))
    worker = _worker(jobs, files, ScriptedAnalyzer())
    worker.request_stop(reason="test")

    summary = worker.run_loop(max_idle_polls=None)

    assert summary.processed == 0
    assert jobs.stats().waiting == 1
