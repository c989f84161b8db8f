"""Domain models for the analysis job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobState(str, Enum):
    """Durable job lifecycle states."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {JobState.COMPLETED, JobState.FAILED}


class FailureKind(str, Enum):
    """Normalized failure classes recorded on jobs."""

    ANALYSIS_ERROR = "analysis_error"
    TIMEOUT = "timeout"
    STALLED = "stalled"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True, slots=True)
class FileRef:
    """Reference to the file record a job analyzes."""

    file_id: str
    path: str
    mime_type: str


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing an analysis job."""

    file_ref: FileRef
    job_id: str | None = None
    priority: int = 1
    max_attempts: int = 3
    next_eligible_at: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for workers and CLI."""

    job_id: str
    seq: int
    file_ref: FileRef
    state: JobState
    priority: int
    attempts: int
    max_attempts: int
    next_eligible_at: datetime
    progress: int
    failure_kind: FailureKind | None
    last_error: str | None
    worker_id: str | None
    claimed_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def file_id(self) -> str:
        return self.file_ref.file_id


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    state_from: JobState | None
    state_to: JobState | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(frozen=True, slots=True)
class QueueStats:
    """Per-state job counts."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed

    def as_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Progress notification published while a job is Active or on its terminal transition."""

    job_id: str
    file_id: str
    progress: int
    state: JobState
    error: str | None = None


@dataclass(frozen=True, slots=True)
class StalledJob:
    """Active job whose claim outlived the stall timeout."""

    job_id: str
    file_id: str
    attempts: int
    max_attempts: int
    worker_id: str | None


@dataclass(frozen=True, slots=True)
class ReapResult:
    """Rows removed by one cleanup pass."""

    completed_removed: int
    failed_removed: int

    @property
    def total(self) -> int:
        return self.completed_removed + self.failed_removed
