"""Asynchronous analysis job pipeline.

Uploads are stored first and analysed later: the producer writes a Waiting
job to the SQLite job store and returns, worker threads claim jobs with a
conditional ``UPDATE`` (Waiting -> Active), run the analyzer under a timeout,
and record the outcome on both the file record and the job. Failed attempts
go back to Waiting with exponential backoff until ``max_attempts`` is spent,
after which the job stays Failed. Jobs whose claim outlives the stall timeout
are treated as failed attempts and re-armed by the next polling worker.
"""

from file_insight.queue.errors import (
    AnalysisFailure,
    EnqueueFailure,
    QueueError,
    ReferenceGone,
    StallDetected,
)
from file_insight.queue.models import FailureKind, FileRef, JobState, JobView, QueueStats
from file_insight.queue.pool import PoolSettings, WorkerPool
from file_insight.queue.producer import AnalysisProducer, JobHandle, UploadOutcome
from file_insight.queue.reaper import Reaper
from file_insight.queue.repository import JobRepository
from file_insight.queue.retry import RetryDecision, RetryPolicy
from file_insight.queue.stats import StatsReporter
from file_insight.queue.worker import AnalysisWorker, WorkerRunSummary

__all__ = [
    "AnalysisFailure",
    "AnalysisProducer",
    "AnalysisWorker",
    "EnqueueFailure",
    "FailureKind",
    "FileRef",
    "JobHandle",
    "JobRepository",
    "JobState",
    "JobView",
    "PoolSettings",
    "QueueError",
    "QueueStats",
    "Reaper",
    "ReferenceGone",
    "RetryDecision",
    "RetryPolicy",
    "StallDetected",
    "StatsReporter",
    "UploadOutcome",
    "WorkerPool",
    "WorkerRunSummary",
]
