from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from autoapply.db.base import Base, TimestampMixin


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    apply_policy_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)


class Resume(TimestampMixin, Base):
    __tablename__ = "resumes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    template_name: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    version: Mapped[str] = mapped_column(String(60), default="", nullable=False)
    file_url: Mapped[str] = mapped_column(String(1000), default="", nullable=False)
    personal_info_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    education_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    work_experience_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    projects_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    skills_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)


class JobPosting(TimestampMixin, Base):
    __tablename__ = "job_postings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    source: Mapped[str] = mapped_column(String(60), default="", nullable=False)
    company: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    is_remote: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    requirements_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    skills_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    questions_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    employment_type: Mapped[str] = mapped_column(String(60), default="", nullable=False)
    apply_url: Mapped[str] = mapped_column(String(1000), default="", nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Run(TimestampMixin, Base):
    __tablename__ = "runs"
    __table_args__ = (
        # At most one RUNNING run per user.
        Index(
            "uq_runs_user_running",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'RUNNING'"),
            postgresql_where=text("status = 'RUNNING'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    status: Mapped[str] = mapped_column(String(20), default="RUNNING", nullable=False, index=True)
    applied_count_today: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count_today: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    kill_switch: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_checkpoint: Mapped[str] = mapped_column(String(60), default="", nullable=False)
    error: Mapped[str] = mapped_column(Text, default="", nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class JobMatch(TimestampMixin, Base):
    __tablename__ = "job_matches"
    __table_args__ = (UniqueConstraint("run_id", "job_id", name="uq_job_match_run_job"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("runs.id", ondelete="CASCADE"), index=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("job_postings.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    match_score: Mapped[int] = mapped_column(Integer, nullable=False)
    skill_overlap_score: Mapped[int] = mapped_column(Integer, nullable=False)
    experience_fit_score: Mapped[int] = mapped_column(Integer, nullable=False)
    constraint_fit_score: Mapped[int] = mapped_column(Integer, nullable=False)
    ranking_reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    evidence_coverage: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence_levels_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)


class QueueRecord(TimestampMixin, Base):
    __tablename__ = "queue_records"
    __table_args__ = (UniqueConstraint("run_id", "job_id", name="uq_queue_record_run_job"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("runs.id", ondelete="CASCADE"), index=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("job_postings.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    skip_reason: Mapped[str | None] = mapped_column(String(40), nullable=True)
    skip_detail: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    skip_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    missing_skills_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    missing_experience_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    suggestions_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    cooldown_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Application(TimestampMixin, Base):
    __tablename__ = "applications"
    __table_args__ = (UniqueConstraint("run_id", "job_id", name="uq_application_run_job"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("runs.id", ondelete="CASCADE"), index=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("job_postings.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    company: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    resume_variant_used: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    answered_questions_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    validation_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="QUEUED", nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    receipt: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    timeline_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)


class LogEvent(Base):
    __tablename__ = "log_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    job_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    level: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class WorkItem(TimestampMixin, Base):
    __tablename__ = "work_items"
    __table_args__ = (UniqueConstraint("queue_name", "idempotency_key", name="uq_work_item_queue_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    queue_name: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(120), nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
