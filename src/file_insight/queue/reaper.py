"""Periodic cleanup of finished jobs."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from file_insight.queue.models import ReapResult
from file_insight.queue.repository import JobRepository
from file_insight.storage.common import utc_now

logger = logging.getLogger(__name__)

DAY_SECONDS = 86_400


class Reaper:
    """Evicts Completed jobs after a short retention and Failed jobs after a long one.

    Waiting and Active jobs are never touched, whatever their age.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        completed_retention_seconds: float = DAY_SECONDS,
        failed_retention_seconds: float = 7 * DAY_SECONDS,
        interval_seconds: float = DAY_SECONDS,
    ) -> None:
        self.repository = repository
        self.completed_retention = timedelta(seconds=completed_retention_seconds)
        self.failed_retention = timedelta(seconds=failed_retention_seconds)
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self, *, now: datetime | None = None) -> ReapResult | None:
        """One cleanup pass; errors are logged and reported as ``None``."""

        moment = now or utc_now()
        try:
            result = self.repository.purge_finished_jobs(
                completed_before=moment - self.completed_retention,
                failed_before=moment - self.failed_retention,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Failed to clean analysis queue")
            return None
        logger.info(
            "Queue cleaned: removed %d completed and %d failed jobs",
            result.completed_removed,
            result.failed_removed,
        )
        return result

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="queue-reaper")
        self._thread.start()

    def stop(self, *, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            self.run_once()
