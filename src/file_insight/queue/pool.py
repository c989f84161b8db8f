"""Pool of worker threads sharing one SQLite job store."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from file_insight.analysis.base import Analyzer, close_analyzer
from file_insight.files.repository import FileRecordRepository
from file_insight.queue.progress import ProgressHub
from file_insight.queue.repository import JobRepository
from file_insight.queue.retry import RetryPolicy
from file_insight.queue.worker import AnalysisWorker, WorkerRunSummary

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PoolSettings:
    """Tunables passed to each worker thread."""

    concurrency: int = 2
    poll_interval_seconds: float = 1.0
    job_timeout_seconds: float = 120.0
    stall_timeout_seconds: float = 300.0
    graceful_shutdown_seconds: int = 30
    error_backoff_seconds: float = 5.0


class WorkerPool:
    """Runs ``concurrency`` :class:`AnalysisWorker` loops in daemon threads.

    Each thread opens its own repositories against ``db_path``; the job store's
    conditional claim keeps workers from processing the same job concurrently.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        db_path: Path,
        analyzer_factory: Callable[[], Analyzer],
        worker_id_prefix: str,
        retry_policy: RetryPolicy | None = None,
        settings: PoolSettings | None = None,
        progress_hub: ProgressHub | None = None,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.analyzer_factory = analyzer_factory
        self.worker_id_prefix = worker_id_prefix
        self.retry_policy = retry_policy or RetryPolicy()
        self.settings = settings or PoolSettings()
        self.progress_hub = progress_hub or ProgressHub()
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._workers: list[AnalysisWorker] = []
        self._workers_lock = threading.Lock()
        self._summary = WorkerRunSummary()
        self._summary_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    @property
    def summary(self) -> WorkerRunSummary:
        with self._summary_lock:
            snapshot = WorkerRunSummary()
            snapshot.add(self._summary)
            return snapshot

    def start(self) -> None:
        if self.running:
            raise RuntimeError("Worker pool is already running.")
        self._stop.clear()
        self._threads = []
        for index in range(self.settings.concurrency):
            worker_id = f"{self.worker_id_prefix}-{index + 1}"
            thread = threading.Thread(
                target=self._worker_loop,
                args=(worker_id,),
                daemon=True,
                name=f"analysis-{worker_id}",
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Worker pool started with %d workers", self.settings.concurrency)

    def stop(self, *, drain: bool = True) -> WorkerRunSummary:
        """Stop claiming jobs; with ``drain`` wait for in-flight jobs to finish."""

        self._stop.set()
        with self._workers_lock:
            for worker in self._workers:
                worker.request_stop(reason="pool shutdown")
        timeout = self.settings.graceful_shutdown_seconds if drain else 0.0
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        still_running = [thread.name for thread in self._threads if thread.is_alive()]
        if still_running:
            logger.warning(
                "Worker threads still busy after %ss: %s",
                timeout,
                ", ".join(still_running),
            )
        else:
            logger.info("Worker pool stopped")
        return self.summary

    def wait_until_idle(self, *, timeout: float, poll_interval: float = 0.05) -> bool:
        """Block until no job is Waiting or Active, or ``timeout`` elapses."""

        repository = JobRepository(self.db_path, sqlite_busy_timeout_ms=self.sqlite_busy_timeout_ms)
        try:
            deadline = time.monotonic() + timeout
            while time.monotonic() < deadline:
                stats = repository.stats()
                if stats.waiting == 0 and stats.active == 0:
                    return True
                time.sleep(poll_interval)
            return False
        finally:
            repository.close()

    def __enter__(self) -> WorkerPool:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop(drain=True)

    def _worker_loop(self, worker_id: str) -> None:
        settings = self.settings
        jobs = JobRepository(self.db_path, sqlite_busy_timeout_ms=self.sqlite_busy_timeout_ms)
        files = FileRecordRepository(self.db_path, sqlite_busy_timeout_ms=self.sqlite_busy_timeout_ms)
        analyzer: Analyzer | None = None
        try:
            analyzer = self.analyzer_factory()
            worker = AnalysisWorker(
                repository=jobs,
                files=files,
                analyzer=analyzer,
                worker_id=worker_id,
                retry_policy=self.retry_policy,
                job_timeout_seconds=settings.job_timeout_seconds,
                stall_timeout_seconds=settings.stall_timeout_seconds,
                poll_interval_seconds=settings.poll_interval_seconds,
                progress_hub=self.progress_hub,
            )
            with self._workers_lock:
                self._workers.append(worker)
                if self._stop.is_set():
                    worker.request_stop(reason="pool shutdown")
            while not self._stop.is_set():
                try:
                    summary = worker.run_once()
                except Exception:
                    logger.exception("Worker %s error", worker_id)
                    self._stop.wait(timeout=settings.error_backoff_seconds)
                    continue
                with self._summary_lock:
                    self._summary.add(summary)
                if summary.processed == 0:
                    self._stop.wait(timeout=settings.poll_interval_seconds)
        finally:
            with self._workers_lock:
                self._workers = [w for w in self._workers if w.worker_id != worker_id]
            if analyzer is not None:
                close_analyzer(analyzer)
            jobs.close()
            files.close()
