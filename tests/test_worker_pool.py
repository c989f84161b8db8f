from __future__ import annotations

import threading
import time
from pathlib import Path

import allure

from conftest import ScriptedAnalyzer
from file_insight.analysis.base import AnalysisResult
from file_insight.analysis.heuristic import HeuristicAnalyzer
from file_insight.files.repository import FileRecordRepository
from file_insight.queue.models import JobState, ProgressEvent
from file_insight.queue.pool import PoolSettings, WorkerPool
from file_insight.queue.producer import AnalysisProducer
from file_insight.queue.progress import ProgressHub
from file_insight.queue.repository import JobRepository
from file_insight.queue.retry import RetryPolicy

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Worker Pool"),
]

FAST_POOL = PoolSettings(
    concurrency=3,
    poll_interval_seconds=0.02,
    job_timeout_seconds=5.0,
    graceful_shutdown_seconds=5,
    error_backoff_seconds=0.05,
)


def test_pool_processes_every_job_exactly_once(
    db_path: Path,
    jobs: JobRepository,
    files: FileRecordRepository,
    stored_file,
) -> None:
    producer = AnalysisProducer(repository=jobs)
    handles = [
        producer.enqueue(stored_file(f"Report number {index} about uploads.".encode()))
        for index in range(8)
    ]

    with WorkerPool(
        db_path=db_path,
        analyzer_factory=HeuristicAnalyzer,
        worker_id_prefix="pool",
        retry_policy=RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0),
        settings=FAST_POOL,
    ) as pool:
        assert pool.wait_until_idle(timeout=20.0)
    summary = pool.summary

    assert summary.processed == 8
    assert summary.succeeded == 8
    assert not pool.running
    for handle in handles:
        job = handle.refresh()
        assert job.state == JobState.COMPLETED
        assert job.attempts == 1
        assert job.worker_id is not None
        assert job.worker_id.startswith("pool-")
        record = files.get(handle.file_id)
        assert record is not None
        assert record.analyzed is True
        assert "report" in record.ai_tags
    assert jobs.stats().completed == 8


def test_pool_shares_progress_hub_with_producer(
    db_path: Path,
    jobs: JobRepository,
    stored_file,
) -> None:
    hub = ProgressHub()
    producer = AnalysisProducer(repository=jobs, progress_hub=hub)
    handle = producer.enqueue(stored_file())
    subscription = handle.progress()
    pool = WorkerPool(
        db_path=db_path,
        analyzer_factory=lambda: ScriptedAnalyzer(AnalysisResult(tags=("x",), summary="y")),
        worker_id_prefix="pool",
        settings=FAST_POOL,
        progress_hub=hub,
    )

    pool.start()
    try:
        events = list(subscription.events(timeout=10.0))
    finally:
        pool.stop()
        subscription.close()

    assert events[-1].state == JobState.COMPLETED
    assert events[-1].progress == 100


def test_stop_drains_in_flight_job(
    db_path: Path,
    jobs: JobRepository,
    stored_file,
) -> None:
    started = threading.Event()

    class _SlowAnalyzer:
        def analyze(self, path: Path, mime_type: str) -> AnalysisResult:
            started.set()
            time.sleep(0.3)
            return AnalysisResult(tags=("slow",), summary="done")

    handle = AnalysisProducer(repository=jobs).enqueue(stored_file())
    pool = WorkerPool(
        db_path=db_path,
        analyzer_factory=_SlowAnalyzer,
        worker_id_prefix="pool",
        settings=PoolSettings(concurrency=1, poll_interval_seconds=0.02, graceful_shutdown_seconds=5),
    )
    pool.start()
    assert started.wait(timeout=10.0)

    summary = pool.stop(drain=True)

    assert summary.succeeded == 1
    assert handle.refresh().state == JobState.COMPLETED


def test_stop_closes_analyzers_built_for_each_worker(db_path: Path, jobs: JobRepository) -> None:
    built: list[_ClosingAnalyzer] = []

    def _factory() -> _ClosingAnalyzer:
        analyzer = _ClosingAnalyzer()
        built.append(analyzer)
        return analyzer

    pool = WorkerPool(
        db_path=db_path,
        analyzer_factory=_factory,
        worker_id_prefix="pool",
        settings=FAST_POOL,
    )
    pool.start()
    deadline = time.monotonic() + 5.0
    while len(built) < FAST_POOL.concurrency and time.monotonic() < deadline:
        time.sleep(0.01)

    pool.stop(drain=True)

    assert len(built) == FAST_POOL.concurrency
    assert all(analyzer.closed == 1 for analyzer in built)


class _ClosingAnalyzer(ScriptedAnalyzer):
    def __init__(self) -> None:
        super().__init__()
        self.closed = 0

    def close(self) -> None:
        self.closed += 1


def test_progress_hub_filters_by_job_and_broadcasts_to_wildcard() -> None:
    hub = ProgressHub()
    mine = hub.subscribe("job-1")
    everything = hub.subscribe()

    hub.publish(ProgressEvent(job_id="job-2", file_id="f2", progress=10, state=JobState.ACTIVE))
    hub.publish(ProgressEvent(job_id="job-1", file_id="f1", progress=10, state=JobState.ACTIVE))
    hub.publish(
        ProgressEvent(job_id="job-1", file_id="f1", progress=0, state=JobState.FAILED, error="x"),
    )

    mine_events = list(mine.events(timeout=0.05))
    assert [(event.progress, event.state) for event in mine_events] == [
        (10, JobState.ACTIVE),
        (0, JobState.FAILED),
    ]
    assert mine_events[-1].error == "x"
    assert [event.job_id for event in everything.events(timeout=0.05)] == [
        "job-2",
        "job-1",
        "job-1",
    ]

    mine.close()
    hub.publish(ProgressEvent(job_id="job-1", file_id="f1", progress=50, state=JobState.ACTIVE))
    assert mine.get(timeout=0.01) is None
