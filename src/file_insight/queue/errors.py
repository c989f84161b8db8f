"""Failure taxonomy of the analysis job pipeline."""

from __future__ import annotations

from file_insight.queue.models import FailureKind


class QueueError(RuntimeError):
    """Base class for job pipeline errors."""


class EnqueueFailure(QueueError):
    """The job store rejected or could not persist a new job."""


class AnalysisFailure(QueueError):
    """One execution attempt failed; fed to the retry controller."""

    def __init__(self, message: str, *, kind: FailureKind = FailureKind.ANALYSIS_ERROR) -> None:
        super().__init__(message)
        self.kind = kind


class StallDetected(AnalysisFailure):
    """A claimed job outlived the stall timeout without finishing."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=FailureKind.STALLED)


class ReferenceGone(QueueError):
    """The file a job points at no longer exists; the job completes as a no-op."""

    def __init__(self, file_id: str, reason: str = "file record not found") -> None:
        super().__init__(f"{reason}: {file_id}")
        self.file_id = file_id
