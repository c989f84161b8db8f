"""Initial schema: file records, analysis jobs, job events, state counters."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

JOB_STATES = ("waiting", "active", "completed", "failed")


def upgrade() -> None:
    op.create_table(
        "files",
        sa.Column("file_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("original_name", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("upload_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("analyzed", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("ai_tags_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("summary", sa.Text(), nullable=False, server_default=""),
        sa.Column("analysis_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("analysis_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("file_id"),
    )
    op.create_index("ix_files_user_id", "files", ["user_id"])
    op.create_index("ix_files_mime_type", "files", ["mime_type"])
    op.create_index("ix_files_analyzed", "files", ["analyzed"])
    op.create_index("idx_files_user_upload", "files", ["user_id", "upload_date"])

    op.create_table(
        "analysis_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("seq", sa.BigInteger(), nullable=False),
        sa.Column("file_id", sa.String(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("next_eligible_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failure_kind", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
        sa.UniqueConstraint("seq", name="uq_analysis_jobs_seq"),
        sa.CheckConstraint("attempts <= max_attempts", name="ck_analysis_jobs_attempts"),
        sa.CheckConstraint("progress BETWEEN 0 AND 100", name="ck_analysis_jobs_progress"),
    )
    op.create_index("ix_analysis_jobs_file_id", "analysis_jobs", ["file_id"])
    op.create_index("ix_analysis_jobs_state", "analysis_jobs", ["state"])
    op.create_index("ix_analysis_jobs_failure_kind", "analysis_jobs", ["failure_kind"])
    op.create_index("ix_analysis_jobs_worker_id", "analysis_jobs", ["worker_id"])
    op.create_index(
        "idx_analysis_jobs_queue",
        "analysis_jobs",
        ["state", "priority", "next_eligible_at", "seq"],
    )
    op.create_index("idx_analysis_jobs_finished", "analysis_jobs", ["state", "finished_at"])
    op.create_index(
        "uq_analysis_jobs_active_file",
        "analysis_jobs",
        ["file_id"],
        unique=True,
        sqlite_where=sa.text("state = 'active'"),
    )

    op.create_table(
        "analysis_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("state_from", sa.String(), nullable=True),
        sa.Column("state_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["analysis_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_analysis_job_events_job_id", "analysis_job_events", ["job_id"])
    op.create_index("ix_analysis_job_events_event_type", "analysis_job_events", ["event_type"])
    op.create_index(
        "idx_analysis_job_events_job_time",
        "analysis_job_events",
        ["job_id", "created_at"],
    )

    counts = op.create_table(
        "analysis_job_state_counts",
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("state"),
    )
    op.bulk_insert(counts, [{"state": state, "count": 0} for state in JOB_STATES])


def downgrade() -> None:
    op.drop_table("analysis_job_state_counts")
    op.drop_index("idx_analysis_job_events_job_time", table_name="analysis_job_events")
    op.drop_index("ix_analysis_job_events_event_type", table_name="analysis_job_events")
    op.drop_index("ix_analysis_job_events_job_id", table_name="analysis_job_events")
    op.drop_table("analysis_job_events")
    op.drop_index("uq_analysis_jobs_active_file", table_name="analysis_jobs")
    op.drop_index("idx_analysis_jobs_finished", table_name="analysis_jobs")
    op.drop_index("idx_analysis_jobs_queue", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_worker_id", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_failure_kind", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_state", table_name="analysis_jobs")
    op.drop_index("ix_analysis_jobs_file_id", table_name="analysis_jobs")
    op.drop_table("analysis_jobs")
    op.drop_index("idx_files_user_upload", table_name="files")
    op.drop_index("ix_files_analyzed", table_name="files")
    op.drop_index("ix_files_mime_type", table_name="files")
    op.drop_index("ix_files_user_id", table_name="files")
    op.drop_table("files")
