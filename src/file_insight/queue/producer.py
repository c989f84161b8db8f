"""Producer side of the queue: enqueue analysis jobs for uploaded files."""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from file_insight.files.repository import FileCreate, FileRecordRepository
from file_insight.queue.errors import EnqueueFailure
from file_insight.queue.models import FileRef, JobCreate, JobState, JobView
from file_insight.queue.progress import ProgressHub, ProgressSubscription
from file_insight.queue.repository import JobRepository

logger = logging.getLogger(__name__)

PENDING_ANALYSIS_WARNING = "File uploaded, but analysis could not be scheduled; it is pending."


class JobHandle:
    """Caller-side view of one enqueued job."""

    def __init__(
        self,
        job: JobView,
        *,
        repository: JobRepository,
        progress_hub: ProgressHub | None = None,
    ) -> None:
        self._job = job
        self._repository = repository
        self._progress_hub = progress_hub

    @property
    def job_id(self) -> str:
        return self._job.job_id

    @property
    def file_id(self) -> str:
        return self._job.file_id

    @property
    def state(self) -> JobState:
        """State as of the last refresh."""

        return self._job.state

    @property
    def job(self) -> JobView:
        return self._job

    def refresh(self) -> JobView:
        job = self._repository.get_job(job_id=self.job_id)
        if job is None:
            raise RuntimeError(f"Job not found (possibly cleaned up): {self.job_id}")
        self._job = job
        return job

    def wait(self, *, timeout: float, poll_interval: float = 0.1) -> JobView:
        """Poll the job store until the job is terminal; raise TimeoutError after ``timeout``."""

        deadline = time.monotonic() + timeout
        while True:
            job = self.refresh()
            if job.state.terminal:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(
                    f"Job {self.job_id} still {job.state.value} after {timeout:.1f}s",
                )
            time.sleep(min(poll_interval, remaining))

    def progress(self) -> ProgressSubscription:
        """Subscribe to progress events published by in-process workers."""

        if self._progress_hub is None:
            raise RuntimeError("Progress events need a ProgressHub shared with the worker pool.")
        return self._progress_hub.subscribe(self.job_id)


@dataclass(slots=True)
class UploadOutcome:
    """Result of storing a file record and scheduling its analysis."""

    file_id: str
    job: JobHandle | None
    warning: str | None = None


class AnalysisProducer:
    """Enqueues one analysis job per upload event; never waits for analysis."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        default_priority: int = 1,
        max_attempts: int = 3,
        progress_hub: ProgressHub | None = None,
    ) -> None:
        self.repository = repository
        self.default_priority = default_priority
        self.max_attempts = max_attempts
        self.progress_hub = progress_hub

    def enqueue(self, file_ref: FileRef, *, priority: int | None = None) -> JobHandle:
        """Persist a Waiting job for ``file_ref``.

        Raises:
            EnqueueFailure: the job store is unavailable or rejected the insert.
        """

        effective_priority = self.default_priority if priority is None else priority
        try:
            job = self.repository.enqueue_job(
                JobCreate(
                    file_ref=file_ref,
                    priority=effective_priority,
                    max_attempts=self.max_attempts,
                ),
            )
        except (SQLAlchemyError, sqlite3.Error, OSError) as error:
            logger.error("Failed to add job to queue for file %s: %s", file_ref.file_id, error)
            raise EnqueueFailure(
                f"Could not enqueue analysis for file {file_ref.file_id}: {error}",
            ) from error

        logger.info(
            "Added job %s to queue for file %s (priority=%d)",
            job.job_id,
            file_ref.file_id,
            effective_priority,
        )
        return JobHandle(job, repository=self.repository, progress_hub=self.progress_hub)

    def enqueue_upload(
        self,
        files: FileRecordRepository,
        fields: FileCreate,
        *,
        priority: int | None = None,
    ) -> UploadOutcome:
        """Create the file record, then schedule analysis.

        An enqueue failure leaves the stored record as is and is reported as a
        warning; file-store errors propagate since there is no upload without them.
        """

        file_id = files.create(fields)
        file_ref = FileRef(file_id=file_id, path=fields.path, mime_type=fields.mime_type)
        try:
            handle = self.enqueue(file_ref, priority=priority)
        except EnqueueFailure as error:
            logger.warning("Upload %s stored without analysis job: %s", file_id, error)
            return UploadOutcome(file_id=file_id, job=None, warning=PENDING_ANALYSIS_WARNING)
        return UploadOutcome(file_id=file_id, job=handle)
