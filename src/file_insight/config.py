"""Runtime configuration for the file store and analysis queue."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_ANALYZERS = ("heuristic", "http")


@dataclass(slots=True)
class QueueSettings:
    """Job queue tunables: retry policy, priorities, stall and retention windows."""

    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0
    max_attempts: int = 3
    default_priority: int = 1
    stall_timeout_seconds: int = 300
    job_timeout_seconds: int = 120
    completed_retention_seconds: int = 86_400
    failed_retention_seconds: int = 7 * 86_400


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool settings."""

    concurrency: int = 2
    poll_interval_seconds: float = 1.0
    worker_id: str = field(default_factory=lambda: _default_worker_id())
    graceful_shutdown_seconds: int = 30
    reaper_interval_seconds: int = 86_400


@dataclass(slots=True)
class AnalyzerSettings:
    """Analysis collaborator selection."""

    kind: str = "heuristic"
    url: str = ""
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".file_insight.db")
    sqlite_busy_timeout_ms: int = 5_000
    max_file_size: int = 10_485_760
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    analyzer: AnalyzerSettings = field(default_factory=AnalyzerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("FILE_INSIGHT_DB_PATH", ".file_insight.db")),
            sqlite_busy_timeout_ms=_env_int("FILE_INSIGHT_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            max_file_size=_env_int("FILE_INSIGHT_MAX_FILE_SIZE", 10_485_760),
            queue=QueueSettings(
                base_delay_seconds=_env_float("FILE_INSIGHT_QUEUE_BASE_DELAY_SECONDS", 2.0),
                max_delay_seconds=_env_float("FILE_INSIGHT_QUEUE_MAX_DELAY_SECONDS", 300.0),
                max_attempts=_env_int("FILE_INSIGHT_QUEUE_MAX_ATTEMPTS", 3),
                default_priority=_env_int("FILE_INSIGHT_QUEUE_DEFAULT_PRIORITY", 1),
                stall_timeout_seconds=_env_int("FILE_INSIGHT_QUEUE_STALL_TIMEOUT_SECONDS", 300),
                job_timeout_seconds=_env_int("FILE_INSIGHT_QUEUE_JOB_TIMEOUT_SECONDS", 120),
                completed_retention_seconds=_env_int(
                    "FILE_INSIGHT_QUEUE_COMPLETED_RETENTION_SECONDS",
                    86_400,
                ),
                failed_retention_seconds=_env_int(
                    "FILE_INSIGHT_QUEUE_FAILED_RETENTION_SECONDS",
                    7 * 86_400,
                ),
            ),
            worker=WorkerSettings(
                concurrency=_env_int("FILE_INSIGHT_WORKER_CONCURRENCY", 2),
                poll_interval_seconds=_env_float("FILE_INSIGHT_WORKER_POLL_INTERVAL_SECONDS", 1.0),
                worker_id=os.getenv("FILE_INSIGHT_WORKER_ID", "").strip() or _default_worker_id(),
                graceful_shutdown_seconds=_env_int(
                    "FILE_INSIGHT_WORKER_GRACEFUL_SHUTDOWN_SECONDS",
                    30,
                ),
                reaper_interval_seconds=_env_int("FILE_INSIGHT_REAPER_INTERVAL_SECONDS", 86_400),
            ),
            analyzer=AnalyzerSettings(
                kind=os.getenv("FILE_INSIGHT_ANALYZER", "heuristic").strip().lower(),
                url=os.getenv("FILE_INSIGHT_ANALYZER_URL", "").strip(),
                timeout_seconds=_env_float("FILE_INSIGHT_ANALYZER_TIMEOUT_SECONDS", 60.0),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the queue cannot run with."""

        queue = self.queue
        if queue.max_attempts < 1:
            raise ValueError("FILE_INSIGHT_QUEUE_MAX_ATTEMPTS must be >= 1.")
        if queue.base_delay_seconds < 0:
            raise ValueError("FILE_INSIGHT_QUEUE_BASE_DELAY_SECONDS must be >= 0.")
        if queue.max_delay_seconds < queue.base_delay_seconds:
            raise ValueError(
                "FILE_INSIGHT_QUEUE_MAX_DELAY_SECONDS must be >= "
                "FILE_INSIGHT_QUEUE_BASE_DELAY_SECONDS.",
            )
        if queue.stall_timeout_seconds <= 0:
            raise ValueError("FILE_INSIGHT_QUEUE_STALL_TIMEOUT_SECONDS must be > 0.")
        if queue.job_timeout_seconds <= 0:
            raise ValueError("FILE_INSIGHT_QUEUE_JOB_TIMEOUT_SECONDS must be > 0.")
        if queue.stall_timeout_seconds <= queue.job_timeout_seconds:
            raise ValueError(
                "FILE_INSIGHT_QUEUE_STALL_TIMEOUT_SECONDS must be > "
                "FILE_INSIGHT_QUEUE_JOB_TIMEOUT_SECONDS.",
            )
        if queue.completed_retention_seconds < 0:
            raise ValueError("FILE_INSIGHT_QUEUE_COMPLETED_RETENTION_SECONDS must be >= 0.")
        if queue.failed_retention_seconds < 0:
            raise ValueError("FILE_INSIGHT_QUEUE_FAILED_RETENTION_SECONDS must be >= 0.")
        if self.worker.concurrency < 1:
            raise ValueError("FILE_INSIGHT_WORKER_CONCURRENCY must be >= 1.")
        if self.worker.reaper_interval_seconds <= 0:
            raise ValueError("FILE_INSIGHT_REAPER_INTERVAL_SECONDS must be > 0.")
        if self.analyzer.kind not in SUPPORTED_ANALYZERS:
            raise ValueError(
                f"Unsupported FILE_INSIGHT_ANALYZER: {self.analyzer.kind!r}. "
                f"Expected one of: {', '.join(SUPPORTED_ANALYZERS)}.",
            )
        if self.analyzer.kind == "http":
            parsed = urlparse(self.analyzer.url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "FILE_INSIGHT_ANALYZER_URL must be an absolute http(s) URL "
                    "when FILE_INSIGHT_ANALYZER=http.",
                )


def _default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error
