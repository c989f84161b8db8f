"""Queue worker that executes file analysis jobs."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import NamedTuple

from file_insight.analysis.base import AnalysisError, AnalysisResult, Analyzer
from file_insight.files.repository import FileRecordRepository
from file_insight.queue.errors import AnalysisFailure, ReferenceGone, StallDetected
from file_insight.queue.models import FailureKind, JobState, JobView, ProgressEvent
from file_insight.queue.progress import ProgressHub
from file_insight.queue.repository import JobRepository
from file_insight.queue.retry import RetryPolicy
from file_insight.storage.common import utc_now

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_ANALYZED = 80
PROGRESS_DONE = 100


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    skipped: int = 0
    stalled_recovered: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.timeouts += other.timeouts
        self.skipped += other.skipped
        self.stalled_recovered += other.stalled_recovered
        self.idle_polls += other.idle_polls


class RetryOutcome(NamedTuple):
    retried: bool
    failed: bool


@dataclass(frozen=True, slots=True)
class _AnalysisSource:
    path: Path
    mime_type: str


class AnalysisWorker:
    """Claims Waiting jobs, runs the analyzer and records the outcome."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        files: FileRecordRepository,
        analyzer: Analyzer,
        worker_id: str,
        retry_policy: RetryPolicy | None = None,
        job_timeout_seconds: float = 120.0,
        stall_timeout_seconds: float = 300.0,
        poll_interval_seconds: float = 1.0,
        progress_hub: ProgressHub | None = None,
    ) -> None:
        self.repository = repository
        self.files = files
        self.analyzer = analyzer
        self.worker_id = worker_id
        self.retry_policy = retry_policy or RetryPolicy()
        self.job_timeout_seconds = job_timeout_seconds
        self.stall_timeout_seconds = stall_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.progress_hub = progress_hub
        self._stop_requested = False
        self._current_job_id: str | None = None

    def request_stop(self, *, reason: str = "requested") -> None:
        """Stop claiming new jobs; the job in flight is finished first."""

        self._stop_requested = True
        if self._current_job_id is not None:
            logger.info(
                "Worker %s stopping after job %s (%s)",
                self.worker_id,
                self._current_job_id,
                reason,
            )

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.stalled_recovered = self._recover_stalled_jobs()
        job = self.repository.claim_next_ready_job(worker_id=self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.job_id
        logger.info(
            "Processing analysis job %s for file %s (attempt %d/%d)",
            job.job_id,
            job.file_id,
            job.attempts,
            job.max_attempts,
        )
        try:
            self._execute(job=job, summary=summary)
        finally:
            self._current_job_id = None
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle, stop is requested or max_jobs reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = keep polling until stopped).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _execute(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        try:
            self._report_progress(job=job, progress=PROGRESS_STARTED)
            source = self._resolve_source(job=job)
            result = self._invoke_analyzer(job=job, source=source)
        except ReferenceGone as gone:
            self._complete_without_analysis(job=job, reason=str(gone), summary=summary)
            return
        except AnalysisFailure as failure:
            self._handle_failure(job=job, kind=failure.kind, message=str(failure), summary=summary)
            return
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while analyzing job %s", job.job_id)
            self._handle_failure(
                job=job,
                kind=FailureKind.INTERNAL_ERROR,
                message=f"Internal error: {error}",
                summary=summary,
            )
            return

        try:
            self._report_progress(job=job, progress=PROGRESS_ANALYZED)
            if not self._write_success(job=job, result=result):
                logger.warning(
                    "Job %s was reclaimed during analysis; result discarded for file %s",
                    job.job_id,
                    job.file_id,
                )
                return
            self._report_progress(job=job, progress=PROGRESS_DONE)
        except Exception as error:  # noqa: BLE001
            logger.exception("Failed to store analysis result for job %s", job.job_id)
            self._handle_failure(
                job=job,
                kind=FailureKind.INTERNAL_ERROR,
                message=f"Failed to store analysis result: {error}",
                summary=summary,
            )
            return

        if not self.repository.complete_job(
            job_id=job.job_id,
            worker_id=self.worker_id,
            details={"tags": list(result.tags)},
        ):
            logger.warning(
                "Job %s was reclaimed before completion; result kept on file %s",
                job.job_id,
                job.file_id,
            )
            return
        summary.succeeded = 1
        logger.info(
            "AI analysis completed for file %s (job %s); tags: %s",
            job.file_id,
            job.job_id,
            ", ".join(result.tags),
        )
        self._publish(job=job, progress=PROGRESS_DONE, state=JobState.COMPLETED)

    def _resolve_source(self, *, job: JobView) -> _AnalysisSource:
        record = self.files.get(job.file_id)
        if record is None:
            raise ReferenceGone(job.file_id)
        path = Path(record.path)
        if not path.is_file():
            raise ReferenceGone(job.file_id, reason="file content missing")
        return _AnalysisSource(path=path, mime_type=record.mime_type)

    def _invoke_analyzer(self, *, job: JobView, source: _AnalysisSource) -> AnalysisResult:
        executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"analyze-{job.job_id[:8]}",
        )
        try:
            future = executor.submit(self.analyzer.analyze, source.path, source.mime_type)
            try:
                return future.result(timeout=self.job_timeout_seconds)
            except TimeoutError as error:
                raise AnalysisFailure(
                    f"Analysis timed out after {self.job_timeout_seconds:g}s",
                    kind=FailureKind.TIMEOUT,
                ) from error
            except AnalysisError as error:
                raise AnalysisFailure(str(error)) from error
        finally:
            # A timed-out analyzer call keeps running in its thread; do not wait for it.
            executor.shutdown(wait=False, cancel_futures=True)

    def _write_success(self, *, job: JobView, result: AnalysisResult) -> bool:
        if not self.repository.owns_job(job_id=job.job_id, worker_id=self.worker_id):
            return False
        updated = self.files.update(
            job.file_id,
            {
                "ai_tags": list(result.tags),
                "summary": result.summary,
                "analyzed": True,
                "analysis_date": utc_now(),
                "analysis_error": None,
            },
        )
        if not updated:
            logger.info("File %s deleted during analysis of job %s", job.file_id, job.job_id)
        return True

    def _complete_without_analysis(
        self,
        *,
        job: JobView,
        reason: str,
        summary: WorkerRunSummary,
    ) -> None:
        logger.info("Skipping analysis job %s: %s", job.job_id, reason)
        if self.repository.complete_job(
            job_id=job.job_id,
            worker_id=self.worker_id,
            details={"reference_gone": reason},
        ):
            summary.skipped = 1
            self._publish(job=job, progress=PROGRESS_DONE, state=JobState.COMPLETED)

    def _handle_failure(
        self,
        *,
        job: JobView,
        kind: FailureKind,
        message: str,
        summary: WorkerRunSummary,
    ) -> None:
        logger.error("AI analysis failed for file %s (job %s): %s", job.file_id, job.job_id, message)
        if kind == FailureKind.TIMEOUT:
            summary.timeouts = 1
        if not self.repository.owns_job(job_id=job.job_id, worker_id=self.worker_id):
            logger.warning(
                "Job %s was reclaimed during analysis; error not recorded on file %s",
                job.job_id,
                job.file_id,
            )
            return
        self._record_failure_on_file(file_id=job.file_id, message=message)
        outcome = self._retry_or_fail(
            job_id=job.job_id,
            worker_id=self.worker_id,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            kind=kind,
            message=message,
        )
        if outcome.retried:
            summary.retried = 1
            self._publish(job=job, progress=0, state=JobState.WAITING, error=message)
        elif outcome.failed:
            summary.failed = 1
            self._publish(job=job, progress=0, state=JobState.FAILED, error=message)

    def _record_failure_on_file(self, *, file_id: str, message: str) -> None:
        try:
            self.files.update(file_id, {"analyzed": False, "analysis_error": message})
        except Exception:  # noqa: BLE001
            logger.exception("Could not record analysis error on file %s", file_id)

    def _retry_or_fail(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str | None,
        attempts: int,
        max_attempts: int,
        kind: FailureKind,
        message: str,
        claimed_before: datetime | None = None,
    ) -> RetryOutcome:
        decision = self.retry_policy.decide(attempts=attempts, max_attempts=max_attempts)
        if decision.retry:
            retried = self.repository.schedule_retry(
                job_id=job_id,
                worker_id=worker_id,
                next_eligible_at=decision.eligible_at(),
                failure_kind=kind,
                error=message,
                claimed_before=claimed_before,
            )
            if retried:
                logger.info(
                    "Job %s retry %d/%d scheduled in %.1fs",
                    job_id,
                    attempts + 1,
                    max_attempts,
                    decision.delay_seconds,
                )
            return RetryOutcome(retried=retried, failed=False)

        failed = self.repository.fail_job(
            job_id=job_id,
            worker_id=worker_id,
            failure_kind=kind,
            error=message,
            claimed_before=claimed_before,
        )
        if failed:
            logger.error("Job %s failed after %d attempts: %s", job_id, attempts, message)
        return RetryOutcome(retried=False, failed=failed)

    def _recover_stalled_jobs(self) -> int:
        if self.stall_timeout_seconds <= 0:
            return 0
        cutoff = utc_now() - timedelta(seconds=self.stall_timeout_seconds)
        recovered = 0
        for stalled in self.repository.list_stalled_jobs(claimed_before=cutoff):
            stall = StallDetected(
                f"Job stalled: not finished within {self.stall_timeout_seconds:g}s "
                f"(worker {stalled.worker_id or 'unknown'})",
            )
            logger.warning("Job %s stalled (taking too long)", stalled.job_id)
            outcome = self._retry_or_fail(
                job_id=stalled.job_id,
                worker_id=stalled.worker_id,
                attempts=stalled.attempts,
                max_attempts=stalled.max_attempts,
                kind=stall.kind,
                message=str(stall),
                claimed_before=cutoff,
            )
            # A retried job reports its own outcome on the next attempt.
            if outcome.failed:
                self._record_failure_on_file(file_id=stalled.file_id, message=str(stall))
            if outcome.retried or outcome.failed:
                recovered += 1
        return recovered

    def _report_progress(self, *, job: JobView, progress: int) -> None:
        if not self.repository.update_progress(
            job_id=job.job_id,
            worker_id=self.worker_id,
            progress=progress,
        ):
            logger.debug("Progress %d for job %s ignored: no longer owned", progress, job.job_id)
            return
        logger.debug("Job %s progress: %d%%", job.job_id, progress)
        self._publish(job=job, progress=progress, state=JobState.ACTIVE)

    def _publish(
        self,
        *,
        job: JobView,
        progress: int,
        state: JobState,
        error: str | None = None,
    ) -> None:
        if self.progress_hub is None:
            return
        self.progress_hub.publish(
            ProgressEvent(
                job_id=job.job_id,
                file_id=job.file_id,
                progress=progress,
                state=state,
                error=error,
            ),
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
