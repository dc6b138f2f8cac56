"""Initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _run_job_user_columns() -> list[sa.Column]:
    return [
        sa.Column("run_id", sa.Integer(), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_id", sa.Integer(), sa.ForeignKey("job_postings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    ]


def _index_run_job_user(table: str) -> None:
    for column in ("run_id", "job_id", "user_id"):
        op.create_index(f"ix_{table}_{column}", table, [column], unique=False)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("apply_policy_json", sa.JSON(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "resumes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("template_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("version", sa.String(length=60), nullable=False, server_default=""),
        sa.Column("file_url", sa.String(length=1000), nullable=False, server_default=""),
        sa.Column("personal_info_json", sa.JSON(), nullable=False),
        sa.Column("education_json", sa.JSON(), nullable=False),
        sa.Column("work_experience_json", sa.JSON(), nullable=False),
        sa.Column("projects_json", sa.JSON(), nullable=False),
        sa.Column("skills_json", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_resumes_user_id", "resumes", ["user_id"], unique=False)

    op.create_table(
        "job_postings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_id", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("source", sa.String(length=60), nullable=False, server_default=""),
        sa.Column("company", sa.String(length=255), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("location", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("is_remote", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("requirements_json", sa.JSON(), nullable=False),
        sa.Column("skills_json", sa.JSON(), nullable=False),
        sa.Column("questions_json", sa.JSON(), nullable=False),
        sa.Column("employment_type", sa.String(length=60), nullable=False, server_default=""),
        sa.Column("apply_url", sa.String(length=1000), nullable=False, server_default=""),
        sa.Column("content_hash", sa.String(length=64), nullable=False, unique=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="RUNNING"),
        sa.Column("applied_count_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("kill_switch", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_checkpoint", sa.String(length=60), nullable=False, server_default=""),
        sa.Column("error", sa.Text(), nullable=False, server_default=""),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_runs_user_id", "runs", ["user_id"], unique=False)
    op.create_index("ix_runs_status", "runs", ["status"], unique=False)
    op.create_index(
        "uq_runs_user_running",
        "runs",
        ["user_id"],
        unique=True,
        sqlite_where=sa.text("status = 'RUNNING'"),
        postgresql_where=sa.text("status = 'RUNNING'"),
    )

    op.create_table(
        "job_matches",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_run_job_user_columns(),
        sa.Column("match_score", sa.Integer(), nullable=False),
        sa.Column("skill_overlap_score", sa.Integer(), nullable=False),
        sa.Column("experience_fit_score", sa.Integer(), nullable=False),
        sa.Column("constraint_fit_score", sa.Integer(), nullable=False),
        sa.Column("ranking_reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("evidence_coverage", sa.Float(), nullable=True),
        sa.Column("confidence_levels_json", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("run_id", "job_id", name="uq_job_match_run_job"),
    )
    _index_run_job_user("job_matches")

    op.create_table(
        "queue_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_run_job_user_columns(),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("skip_reason", sa.String(length=40), nullable=True),
        sa.Column("skip_detail", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("skip_reasoning", sa.Text(), nullable=True),
        sa.Column("missing_skills_json", sa.JSON(), nullable=False),
        sa.Column("missing_experience_json", sa.JSON(), nullable=False),
        sa.Column("suggestions_json", sa.JSON(), nullable=False),
        sa.Column("cooldown_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("run_id", "job_id", name="uq_queue_record_run_job"),
    )
    _index_run_job_user("queue_records")
    op.create_index("ix_queue_records_status", "queue_records", ["status"], unique=False)

    op.create_table(
        "applications",
        sa.Column("id", sa.Integer(), primary_key=True),
        *_run_job_user_columns(),
        sa.Column("company", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("resume_variant_used", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("answered_questions_json", sa.JSON(), nullable=False),
        sa.Column("validation_json", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="QUEUED"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("receipt", sa.String(length=255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("timeline_json", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("run_id", "job_id", name="uq_application_run_job"),
    )
    _index_run_job_user("applications")
    op.create_index("ix_applications_status", "applications", ["status"], unique=False)

    op.create_table(
        "log_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("run_id", sa.Integer(), nullable=True),
        sa.Column("job_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("stage", sa.String(length=20), nullable=False),
        sa.Column("level", sa.String(length=10), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    for column in ("run_id", "job_id", "user_id", "stage", "level", "created_at"):
        op.create_index(f"ix_log_events_{column}", "log_events", [column], unique=False)

    op.create_table(
        "work_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("queue_name", sa.String(length=40), nullable=False),
        sa.Column("idempotency_key", sa.String(length=120), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(length=120), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("queue_name", "idempotency_key", name="uq_work_item_queue_key"),
    )
    for column in ("queue_name", "status", "available_at"):
        op.create_index(f"ix_work_items_{column}", "work_items", [column], unique=False)


def downgrade() -> None:
    for table in (
        "work_items",
        "log_events",
        "applications",
        "queue_records",
        "job_matches",
        "runs",
        "job_postings",
        "resumes",
        "users",
    ):
        op.drop_table(table)
