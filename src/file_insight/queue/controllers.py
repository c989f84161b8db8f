"""Controllers for upload and job queue CLI commands."""

from __future__ import annotations

import mimetypes
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from file_insight.analysis.base import Analyzer, close_analyzer, file_category
from file_insight.analysis.heuristic import HeuristicAnalyzer
from file_insight.analysis.http_analyzer import HttpAnalyzer
from file_insight.config import Settings
from file_insight.files.repository import FileCreate, FileRecordRepository
from file_insight.queue.models import JobState
from file_insight.queue.pool import PoolSettings, WorkerPool
from file_insight.queue.producer import AnalysisProducer
from file_insight.queue.reaper import Reaper
from file_insight.queue.repository import JobRepository
from file_insight.queue.retry import RetryPolicy
from file_insight.queue.stats import StatsReporter, render_stats_lines
from file_insight.queue.worker import AnalysisWorker, WorkerRunSummary


@dataclass(slots=True)
class UploadCommand:
    """CLI input for registering a file and scheduling its analysis."""

    db_path: Path | None
    path: Path
    mime_type: str | None
    priority: int | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    concurrency: int | None
    max_jobs: int | None
    max_idle_polls: int = 1
    forever: bool = False


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    state: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class ShowFileCommand:
    """CLI input for file record display."""

    db_path: Path | None
    file_id: str


class QueueCliController:
    """Coordinates upload, worker, and inspection CLI operations."""

    def upload(self, command: UploadCommand) -> list[str]:
        settings = _settings(command.db_path)
        path = command.path.resolve()
        if not path.is_file():
            raise ValueError(f"File not found: {command.path}")
        size = path.stat().st_size
        if size > settings.max_file_size:
            raise ValueError(
                f"File too large: {size} bytes (limit {settings.max_file_size} bytes).",
            )
        mime_type = command.mime_type or mimetypes.guess_type(path.name)[0]
        if not mime_type:
            mime_type = "application/octet-stream"

        with _repositories(settings) as (jobs, files):
            producer = AnalysisProducer(
                repository=jobs,
                default_priority=settings.queue.default_priority,
                max_attempts=settings.queue.max_attempts,
            )
            outcome = producer.enqueue_upload(
                files,
                FileCreate(
                    filename=path.name,
                    original_name=command.path.name,
                    path=str(path),
                    mime_type=mime_type,
                    size_bytes=size,
                ),
                priority=command.priority,
            )

        lines = [f"File stored: file_id={outcome.file_id} mime_type={mime_type} size={size}"]
        if outcome.job is not None:
            lines.append(
                f"Analysis queued: job_id={outcome.job.job_id} state={outcome.job.state.value}",
            )
        if outcome.warning:
            lines.append(f"Warning: {outcome.warning}")
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        concurrency = command.concurrency or settings.worker.concurrency
        with _repositories(settings) as (jobs, files):
            if command.once or concurrency == 1:
                analyzer = _analyzer_factory(settings)()
                worker = AnalysisWorker(
                    repository=jobs,
                    files=files,
                    analyzer=analyzer,
                    worker_id=settings.worker.worker_id,
                    retry_policy=_retry_policy(settings),
                    job_timeout_seconds=settings.queue.job_timeout_seconds,
                    stall_timeout_seconds=settings.queue.stall_timeout_seconds,
                    poll_interval_seconds=settings.worker.poll_interval_seconds,
                )
                try:
                    summary = (
                        worker.run_once()
                        if command.once
                        else worker.run_loop(
                            max_jobs=command.max_jobs,
                            max_idle_polls=None if command.forever else command.max_idle_polls,
                        )
                    )
                finally:
                    close_analyzer(analyzer)
            else:
                summary = self._run_pool(
                    settings=settings,
                    jobs=jobs,
                    concurrency=concurrency,
                    forever=command.forever,
                )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"timeouts={summary.timeouts} skipped={summary.skipped} "
            f"stalled_recovered={summary.stalled_recovered} idle_polls={summary.idle_polls}",
        ]

    def stats(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repositories(settings) as (jobs, _):
            stats = StatsReporter(jobs).stats()
        return render_stats_lines(stats)

    def reconcile(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repositories(settings) as (jobs, _):
            corrections = StatsReporter(jobs).reconcile()
        if not corrections:
            return ["State counters are consistent."]
        lines = [f"Corrected {len(corrections)} state counter(s):"]
        for state, (stored, actual) in corrections.items():
            lines.append(f"  {state.value}: {stored} -> {actual}")
        return lines

    def reap(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repositories(settings) as (jobs, _):
            result = Reaper(
                repository=jobs,
                completed_retention_seconds=settings.queue.completed_retention_seconds,
                failed_retention_seconds=settings.queue.failed_retention_seconds,
            ).run_once()
        if result is None:
            return ["Queue cleanup failed; see log for details."]
        return [
            "Queue cleaned: "
            f"completed_removed={result.completed_removed} failed_removed={result.failed_removed}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        state = _parse_state(command.state)
        with _repositories(settings) as (jobs, _):
            rows = jobs.list_jobs(state=state, limit=command.limit)

        lines = [f"Jobs: {len(rows)}"]
        for job in rows:
            lines.append(
                f"  {job.job_id} file={job.file_id} state={job.state.value} "
                f"priority={job.priority} attempts={job.attempts}/{job.max_attempts} "
                f"progress={job.progress} next_eligible_at={job.next_eligible_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repositories(settings) as (jobs, _):
            details = jobs.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"File: {job.file_id} ({job.file_ref.mime_type}) {job.file_ref.path}",
            f"State: {job.state.value}",
            f"Priority: {job.priority}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Progress: {job.progress}",
            f"Failure kind: {job.failure_kind.value if job.failure_kind else '-'}",
            f"Last error: {job.last_error or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.state_from.value if event.state_from else '-'} -> "
                f"{event.state_to.value if event.state_to else '-'}",
            )
        return lines

    def show_file(self, command: ShowFileCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repositories(settings) as (_, files):
            record = files.get(command.file_id)
        if record is None:
            return [f"File not found: {command.file_id}"]
        return [
            f"File: {record.file_id}",
            f"Name: {record.original_name}",
            f"Path: {record.path}",
            f"Type: {record.mime_type} "
            f"({file_category(record.mime_type)}, {record.size_bytes} bytes)",
            f"Analyzed: {'yes' if record.analyzed else 'no'}",
            f"Tags: {', '.join(record.ai_tags) or '-'}",
            f"Summary: {record.summary or '-'}",
            f"Analysis date: {record.analysis_date.isoformat() if record.analysis_date else '-'}",
            f"Analysis error: {record.analysis_error or '-'}",
        ]

    def _run_pool(
        self,
        *,
        settings: Settings,
        jobs: JobRepository,
        concurrency: int,
        forever: bool,
    ) -> WorkerRunSummary:
        pool = WorkerPool(
            db_path=settings.db_path,
            analyzer_factory=_analyzer_factory(settings),
            worker_id_prefix=settings.worker.worker_id,
            retry_policy=_retry_policy(settings),
            settings=PoolSettings(
                concurrency=concurrency,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                job_timeout_seconds=settings.queue.job_timeout_seconds,
                stall_timeout_seconds=settings.queue.stall_timeout_seconds,
                graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
            ),
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        reaper = Reaper(
            repository=jobs,
            completed_retention_seconds=settings.queue.completed_retention_seconds,
            failed_retention_seconds=settings.queue.failed_retention_seconds,
            interval_seconds=settings.worker.reaper_interval_seconds,
        )
        pool.start()
        if forever:
            reaper.start()
        try:
            if forever:
                while pool.running:
                    time.sleep(settings.worker.poll_interval_seconds)
            else:
                pool.wait_until_idle(timeout=float("inf"))
        except KeyboardInterrupt:
            pass
        finally:
            reaper.stop()
            summary = pool.stop(drain=True)
        return summary


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        base_delay_seconds=settings.queue.base_delay_seconds,
        max_delay_seconds=settings.queue.max_delay_seconds,
        max_attempts=settings.queue.max_attempts,
    )


def _analyzer_factory(settings: Settings) -> Callable[[], Analyzer]:
    if settings.analyzer.kind == "http":
        url = settings.analyzer.url
        timeout = settings.analyzer.timeout_seconds
        return lambda: HttpAnalyzer(url=url, timeout_seconds=timeout)
    return HeuristicAnalyzer


def _parse_state(value: str | None) -> JobState | None:
    if value is None:
        return None
    return JobState(value.strip().lower())


@contextmanager
def _repositories(settings: Settings) -> Iterator[tuple[JobRepository, FileRecordRepository]]:
    jobs = JobRepository(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    jobs.init_schema()
    files = FileRecordRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        yield jobs, files
    finally:
        files.close()
        jobs.close()
