"""Persistent job store for analysis jobs."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import ColumnElement, func
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from file_insight.queue.models import (
    FailureKind,
    FileRef,
    JobCreate,
    JobDetails,
    JobEventView,
    JobState,
    JobView,
    QueueStats,
    ReapResult,
    StalledJob,
)
from file_insight.storage.alembic_runner import upgrade_head
from file_insight.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from file_insight.storage.sqlmodel_models import (
    AnalysisJob,
    AnalysisJobEvent,
    AnalysisJobStateCount,
)


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every state transition is a conditional ``UPDATE`` guarded by the state the
    caller expects, committed together with the per-state counters and an audit
    event. A transition whose guard no longer matches returns ``False``.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Create a Waiting job."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            next_seq = session.exec(select(func.coalesce(func.max(AnalysisJob.seq), 0))).one() + 1
            row = AnalysisJob(
                job_id=job_id,
                seq=next_seq,
                file_id=payload.file_ref.file_id,
                file_path=payload.file_ref.path,
                mime_type=payload.file_ref.mime_type,
                state=JobState.WAITING.value,
                priority=payload.priority,
                attempts=0,
                max_attempts=payload.max_attempts,
                next_eligible_at=to_db_datetime(payload.next_eligible_at or now),
                progress=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            _shift_count(session, state_from=None, state_to=JobState.WAITING)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                state_from=None,
                state_to=JobState.WAITING,
                details={
                    "file_id": payload.file_ref.file_id,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next_ready_job(self, *, worker_id: str) -> JobView | None:
        """Atomically claim one eligible Waiting job (Waiting -> Active)."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                busy_files = select(AnalysisJob.file_id).where(
                    AnalysisJob.state == JobState.ACTIVE.value,
                )
                candidate = session.exec(
                    select(AnalysisJob)
                    .where(
                        AnalysisJob.state == JobState.WAITING.value,
                        AnalysisJob.next_eligible_at <= now,
                        col(AnalysisJob.attempts) < col(AnalysisJob.max_attempts),
                        col(AnalysisJob.file_id).not_in(busy_files),
                    )
                    .order_by(
                        col(AnalysisJob.priority).asc(),
                        col(AnalysisJob.next_eligible_at).asc(),
                        col(AnalysisJob.seq).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(AnalysisJob)
                    .where(
                        col(AnalysisJob.job_id) == candidate.job_id,
                        col(AnalysisJob.state) == JobState.WAITING.value,
                        col(AnalysisJob.attempts) == candidate.attempts,
                    )
                    .values(
                        state=JobState.ACTIVE.value,
                        attempts=candidate.attempts + 1,
                        progress=0,
                        worker_id=worker_id,
                        claimed_at=now,
                        heartbeat_at=now,
                        finished_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                _shift_count(session, state_from=JobState.WAITING, state_to=JobState.ACTIVE)
                claimed = session.exec(
                    select(AnalysisJob).where(AnalysisJob.job_id == candidate.job_id),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    state_from=JobState.WAITING,
                    state_to=JobState.ACTIVE,
                    details={"worker_id": worker_id, "attempt": claimed.attempts},
                )
                session.commit()
                return _to_job_view(claimed)

    def update_progress(self, *, job_id: str, worker_id: str, progress: int) -> bool:
        """Record progress and heartbeat for a job this worker owns."""

        if not 0 <= progress <= 100:
            raise ValueError(f"Progress must be within 0..100, got {progress}")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJob)
                .where(*_owned_by(job_id=job_id, worker_id=worker_id))
                .values(progress=progress, heartbeat_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def owns_job(self, *, job_id: str, worker_id: str) -> bool:
        """Whether the job is still Active and claimed by this worker."""

        with Session(self.engine) as session:
            row = session.exec(
                select(AnalysisJob.job_id).where(*_owned_by(job_id=job_id, worker_id=worker_id)),
            ).one_or_none()
        return row is not None

    def complete_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark an owned Active job as Completed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJob)
                .where(*_owned_by(job_id=job_id, worker_id=worker_id))
                .values(
                    state=JobState.COMPLETED.value,
                    progress=100,
                    failure_kind=None,
                    last_error=None,
                    finished_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            _shift_count(session, state_from=JobState.ACTIVE, state_to=JobState.COMPLETED)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                state_from=JobState.ACTIVE,
                state_to=JobState.COMPLETED,
                details=details or {},
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str | None,
        next_eligible_at: datetime,
        failure_kind: FailureKind,
        error: str,
        claimed_before: datetime | None = None,
    ) -> bool:
        """Re-arm an Active job as Waiting until ``next_eligible_at``."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJob)
                .where(
                    *_owned_by(job_id=job_id, worker_id=worker_id, claimed_before=claimed_before),
                    col(AnalysisJob.attempts) < col(AnalysisJob.max_attempts),
                )
                .values(
                    state=JobState.WAITING.value,
                    next_eligible_at=to_db_datetime(next_eligible_at),
                    failure_kind=failure_kind.value,
                    last_error=error,
                    worker_id=None,
                    claimed_at=None,
                    heartbeat_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            _shift_count(session, state_from=JobState.ACTIVE, state_to=JobState.WAITING)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                state_from=JobState.ACTIVE,
                state_to=JobState.WAITING,
                details={
                    "next_eligible_at": to_utc_aware(next_eligible_at).isoformat(),
                    "failure_kind": failure_kind.value,
                    "error": error,
                },
            )
            session.commit()
            return True

    def fail_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str | None,
        failure_kind: FailureKind,
        error: str,
        claimed_before: datetime | None = None,
    ) -> bool:
        """Move an Active job to the terminal Failed state, keeping the error."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisJob)
                .where(
                    *_owned_by(job_id=job_id, worker_id=worker_id, claimed_before=claimed_before),
                )
                .values(
                    state=JobState.FAILED.value,
                    failure_kind=failure_kind.value,
                    last_error=error,
                    finished_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            _shift_count(session, state_from=JobState.ACTIVE, state_to=JobState.FAILED)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                state_from=JobState.ACTIVE,
                state_to=JobState.FAILED,
                details={"failure_kind": failure_kind.value, "error": error},
            )
            session.commit()
            return True

    def list_stalled_jobs(self, *, claimed_before: datetime) -> list[StalledJob]:
        """Active jobs claimed before the cutoff."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisJob)
                .where(
                    AnalysisJob.state == JobState.ACTIVE.value,
                    col(AnalysisJob.claimed_at) <= to_db_datetime(claimed_before),
                )
                .order_by(col(AnalysisJob.claimed_at).asc()),
            ).all()
        return [
            StalledJob(
                job_id=row.job_id,
                file_id=row.file_id,
                attempts=row.attempts,
                max_attempts=row.max_attempts,
                worker_id=row.worker_id,
            )
            for row in rows
        ]

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(AnalysisJob).where(AnalysisJob.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        state: JobState | None = None,
        file_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by state or file."""

        with Session(self.engine) as session:
            statement = select(AnalysisJob).order_by(col(AnalysisJob.seq).desc()).limit(limit)
            if state is not None:
                statement = statement.where(AnalysisJob.state == state.value)
            if file_id is not None:
                statement = statement.where(AnalysisJob.file_id == file_id)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(select(AnalysisJob).where(AnalysisJob.job_id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(AnalysisJobEvent)
                .where(AnalysisJobEvent.job_id == job_id)
                .order_by(col(AnalysisJobEvent.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    state_from=JobState(row.state_from) if row.state_from is not None else None,
                    state_to=JobState(row.state_to) if row.state_to is not None else None,
                    created_at=to_utc_aware(row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=_to_job_view(job), events=events)

    def stats(self) -> QueueStats:
        """Per-state counts read from the counter rows."""

        with Session(self.engine) as session:
            rows = session.exec(select(AnalysisJobStateCount)).all()
        counts = {row.state: row.count for row in rows}
        return QueueStats(
            waiting=counts.get(JobState.WAITING.value, 0),
            active=counts.get(JobState.ACTIVE.value, 0),
            completed=counts.get(JobState.COMPLETED.value, 0),
            failed=counts.get(JobState.FAILED.value, 0),
        )

    def reconcile_counts(self) -> dict[JobState, tuple[int, int]]:
        """Recompute counters from job rows; return ``{state: (stored, actual)}`` for drifted ones."""

        corrections: dict[JobState, tuple[int, int]] = {}
        with Session(self.engine) as session:
            actual_rows = session.exec(
                select(AnalysisJob.state, func.count()).group_by(AnalysisJob.state),
            ).all()
            actual = {state: int(count) for state, count in actual_rows}
            stored = {row.state: row for row in session.exec(select(AnalysisJobStateCount)).all()}
            for state in JobState:
                expected = actual.get(state.value, 0)
                row = stored.get(state.value)
                if row is None:
                    session.add(AnalysisJobStateCount(state=state.value, count=expected))
                    corrections[state] = (0, expected)
                    continue
                if row.count != expected:
                    corrections[state] = (row.count, expected)
                    row.count = expected
                    session.add(row)
            session.commit()
        return corrections

    def purge_finished_jobs(
        self,
        *,
        completed_before: datetime,
        failed_before: datetime,
    ) -> ReapResult:
        """Delete terminal jobs finished before the per-state cutoffs."""

        removed: dict[JobState, int] = {}
        with Session(self.engine) as session:
            for state, cutoff in (
                (JobState.COMPLETED, completed_before),
                (JobState.FAILED, failed_before),
            ):
                result = session.exec(
                    sa_delete(AnalysisJob).where(
                        col(AnalysisJob.state) == state.value,
                        col(AnalysisJob.finished_at) < to_db_datetime(cutoff),
                    ),
                )
                removed[state] = result.rowcount or 0
                if removed[state]:
                    session.exec(
                        sa_update(AnalysisJobStateCount)
                        .where(col(AnalysisJobStateCount.state) == state.value)
                        .values(count=col(AnalysisJobStateCount.count) - removed[state]),
                    )
            session.commit()
        return ReapResult(
            completed_removed=removed[JobState.COMPLETED],
            failed_removed=removed[JobState.FAILED],
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        state_from: JobState | None,
        state_to: JobState | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AnalysisJobEvent(
                job_id=job_id,
                event_type=event_type,
                state_from=state_from.value if state_from is not None else None,
                state_to=state_to.value if state_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _owned_by(
    *,
    job_id: str,
    worker_id: str | None,
    claimed_before: datetime | None = None,
) -> list[ColumnElement[bool]]:
    clauses = [
        col(AnalysisJob.job_id) == job_id,
        col(AnalysisJob.state) == JobState.ACTIVE.value,
    ]
    if worker_id is not None:
        clauses.append(col(AnalysisJob.worker_id) == worker_id)
    if claimed_before is not None:
        clauses.append(col(AnalysisJob.claimed_at) <= to_db_datetime(claimed_before))
    return clauses


def _shift_count(session: Session, *, state_from: JobState | None, state_to: JobState) -> None:
    if state_from is not None:
        session.exec(
            sa_update(AnalysisJobStateCount)
            .where(col(AnalysisJobStateCount.state) == state_from.value)
            .values(count=col(AnalysisJobStateCount.count) - 1),
        )
    session.exec(
        sa_update(AnalysisJobStateCount)
        .where(col(AnalysisJobStateCount.state) == state_to.value)
        .values(count=col(AnalysisJobStateCount.count) + 1),
    )


def _to_job_view(row: AnalysisJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        seq=row.seq,
        file_ref=FileRef(file_id=row.file_id, path=row.file_path, mime_type=row.mime_type),
        state=JobState(row.state),
        priority=row.priority,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        next_eligible_at=to_utc_aware(row.next_eligible_at),
        progress=row.progress,
        failure_kind=FailureKind(row.failure_kind) if row.failure_kind is not None else None,
        last_error=row.last_error,
        worker_id=row.worker_id,
        claimed_at=to_utc_aware(row.claimed_at) if row.claimed_at is not None else None,
        heartbeat_at=to_utc_aware(row.heartbeat_at) if row.heartbeat_at is not None else None,
        finished_at=to_utc_aware(row.finished_at) if row.finished_at is not None else None,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
