from __future__ import annotations

import hashlib
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from autoapply.db.models import (
    Application,
    JobMatch,
    JobPosting,
    LogEvent,
    QueueRecord,
    Resume,
    Run,
    User,
)
from autoapply.types import (
    SUCCESSFUL_APPLICATION_STATUSES,
    ApplyPolicy,
    RankedJob,
    SkipAnalysis,
)

RUN_COUNTERS = {"applied_count_today", "skipped_count_today"}


def hash_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def job_content_hash(*, company: str, title: str, location: str, description: str, apply_url: str) -> str:
    canonical = "|".join(" ".join(part.strip().lower().split()) for part in [company, title, location, description, apply_url])
    return hash_text(canonical)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def start_of_utc_day(now: datetime | None = None) -> datetime:
    current = now or datetime.now(UTC)
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


class Repository:
    def __init__(self, session: Session):
        self.session = session

    # users and resumes

    def create_user(
        self,
        *,
        name: str,
        email: str,
        apply_policy: ApplyPolicy | None = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            name=name,
            email=email,
            is_active=is_active,
            apply_policy_json=apply_policy.model_dump() if apply_policy else None,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_user(self, user_id: int) -> User | None:
        return self.session.get(User, user_id)

    def get_user_by_email(self, email: str) -> User | None:
        return self.session.scalar(select(User).where(User.email == email))

    def list_users(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.id)).all())

    def get_apply_policy(self, user_id: int) -> ApplyPolicy:
        user = self.session.get(User, user_id)
        if user is None:
            raise ValueError(f"user {user_id} not found")
        return ApplyPolicy.model_validate(user.apply_policy_json or {})

    def set_apply_policy(self, user_id: int, policy: ApplyPolicy) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            raise ValueError(f"user {user_id} not found")
        user.apply_policy_json = policy.model_dump()
        self.session.commit()
        self.session.refresh(user)
        return user

    def add_resume(self, user_id: int, values: dict[str, Any]) -> Resume:
        if self.session.get(User, user_id) is None:
            raise ValueError(f"user {user_id} not found")
        resume = Resume(user_id=user_id, **values)
        self.session.add(resume)
        self.session.commit()
        self.session.refresh(resume)
        return resume

    def get_user_resumes(self, user_id: int) -> list[Resume]:
        statement = select(Resume).where(Resume.user_id == user_id).order_by(Resume.sort_order, Resume.id)
        return list(self.session.scalars(statement).all())

    # job postings

    def create_job_posting(self, values: dict[str, Any]) -> JobPosting:
        payload = dict(values)
        content_hash = payload.pop("content_hash", None) or job_content_hash(
            company=payload.get("company", ""),
            title=payload.get("title", ""),
            location=payload.get("location", ""),
            description=payload.get("description", ""),
            apply_url=payload.get("apply_url", ""),
        )
        existing = self.session.scalar(select(JobPosting).where(JobPosting.content_hash == content_hash))
        if existing:
            return existing

        payload.setdefault("posted_at", datetime.now(UTC))
        job = JobPosting(content_hash=content_hash, **payload)
        self.session.add(job)
        self.session.commit()
        self.session.refresh(job)
        return job

    def get_job(self, job_id: int) -> JobPosting | None:
        return self.session.get(JobPosting, job_id)

    def list_recent_jobs(self, limit: int = 50) -> list[JobPosting]:
        statement = (
            select(JobPosting)
            .order_by(JobPosting.posted_at.desc(), JobPosting.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(statement).all())

    # runs

    def create_run(self, *, user_id: int, applied_count_today: int = 0) -> Run:
        run = Run(
            user_id=user_id,
            status="RUNNING",
            applied_count_today=applied_count_today,
            skipped_count_today=0,
            kill_switch=False,
            last_checkpoint="CREATED",
            started_at=datetime.now(UTC),
        )
        self.session.add(run)
        self.session.commit()
        self.session.refresh(run)
        return run

    def get_run(self, run_id: int) -> Run | None:
        run = self.session.get(Run, run_id)
        if run is not None:
            self.session.refresh(run)
        return run

    def get_active_run(self, user_id: int) -> Run | None:
        statement = (
            select(Run)
            .where(and_(Run.user_id == user_id, Run.status == "RUNNING"))
            .order_by(Run.id.desc())
        )
        return self.session.scalars(statement).first()

    def get_latest_run(self, user_id: int) -> Run | None:
        statement = select(Run).where(Run.user_id == user_id).order_by(Run.id.desc())
        return self.session.scalars(statement).first()

    def update_run(
        self,
        run_id: int,
        *,
        last_checkpoint: str | None = None,
        kill_switch: bool | None = None,
        error: str | None = None,
    ) -> Run:
        run = self.session.get(Run, run_id)
        if not run:
            raise ValueError(f"run {run_id} not found")
        if last_checkpoint is not None:
            run.last_checkpoint = last_checkpoint
        if kill_switch is not None:
            run.kill_switch = kill_switch
        if error is not None:
            run.error = error
        self.session.commit()
        self.session.refresh(run)
        return run

    def finalize_run(self, run_id: int, *, status: str, error: str | None = None, checkpoint: str | None = None) -> bool:
        """Move a RUNNING run to a terminal status. Returns False if it was already terminal."""
        values: dict[str, Any] = {"status": status, "finished_at": datetime.now(UTC)}
        if error is not None:
            values["error"] = error
        if checkpoint is not None:
            values["last_checkpoint"] = checkpoint
        result = self.session.execute(
            update(Run).where(and_(Run.id == run_id, Run.status == "RUNNING")).values(**values)
        )
        self.session.commit()
        return result.rowcount == 1

    def increment_run_counter(self, run_id: int, counter: str, amount: int = 1) -> None:
        if counter not in RUN_COUNTERS:
            raise ValueError(f"unknown run counter {counter}")
        column = getattr(Run, counter)
        self.session.execute(update(Run).where(Run.id == run_id).values({counter: column + amount}))
        self.session.commit()

    def count_successful_applications_since(self, user_id: int, since: datetime) -> int:
        statement = select(func.count(Application.id)).where(
            and_(
                Application.user_id == user_id,
                Application.status.in_(sorted(SUCCESSFUL_APPLICATION_STATUSES)),
                Application.updated_at >= since,
            )
        )
        return int(self.session.scalar(statement) or 0)

    # job matches

    def save_job_matches(self, *, run_id: int, user_id: int, ranked: list[RankedJob]) -> int:
        existing = set(self.session.scalars(select(JobMatch.job_id).where(JobMatch.run_id == run_id)).all())
        inserted = 0
        for item in ranked:
            if item.job_id in existing:
                continue
            self.session.add(
                JobMatch(
                    run_id=run_id,
                    job_id=item.job_id,
                    user_id=user_id,
                    match_score=item.match_score,
                    skill_overlap_score=item.skill_overlap_score,
                    experience_fit_score=item.experience_fit_score,
                    constraint_fit_score=item.constraint_fit_score,
                    ranking_reason=item.ranking_reason,
                )
            )
            inserted += 1
        self.session.commit()
        return inserted

    def list_job_matches(self, run_id: int) -> list[JobMatch]:
        statement = select(JobMatch).where(JobMatch.run_id == run_id).order_by(JobMatch.match_score.desc(), JobMatch.id)
        return list(self.session.scalars(statement).all())

    def annotate_job_match(
        self,
        *,
        run_id: int,
        job_id: int,
        evidence_coverage: float,
        confidence_levels: dict[str, int],
    ) -> JobMatch | None:
        match = self.session.scalar(
            select(JobMatch).where(and_(JobMatch.run_id == run_id, JobMatch.job_id == job_id))
        )
        if match is None:
            return None
        match.evidence_coverage = evidence_coverage
        match.confidence_levels_json = confidence_levels
        self.session.commit()
        self.session.refresh(match)
        return match

    # queue records

    def get_queue_record(self, run_id: int, job_id: int) -> QueueRecord | None:
        return self.session.scalar(
            select(QueueRecord).where(and_(QueueRecord.run_id == run_id, QueueRecord.job_id == job_id))
        )

    def get_queue_record_by_id(self, record_id: int) -> QueueRecord | None:
        return self.session.get(QueueRecord, record_id)

    def create_queue_record(
        self,
        *,
        run_id: int,
        job_id: int,
        user_id: int,
        status: str,
        skip_reason: str | None = None,
        skip_detail: str = "",
        cooldown_until: datetime | None = None,
    ) -> QueueRecord:
        record = QueueRecord(
            run_id=run_id,
            job_id=job_id,
            user_id=user_id,
            status=status,
            skip_reason=skip_reason,
            skip_detail=skip_detail,
            cooldown_until=cooldown_until,
            queued_at=datetime.now(UTC),
        )
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def attach_skip_analysis(self, record_id: int, analysis: SkipAnalysis) -> QueueRecord:
        record = self.session.get(QueueRecord, record_id)
        if not record:
            raise ValueError(f"queue record {record_id} not found")
        record.skip_reasoning = analysis.reasoning
        record.missing_skills_json = list(analysis.missing_skills)
        record.missing_experience_json = list(analysis.missing_experience)
        record.suggestions_json = analysis.suggestions.model_dump()
        self.session.commit()
        self.session.refresh(record)
        return record

    def list_queue_records(self, run_id: int, *, status: str | None = None) -> list[QueueRecord]:
        statement = select(QueueRecord).where(QueueRecord.run_id == run_id)
        if status:
            statement = statement.where(QueueRecord.status == status)
        return list(self.session.scalars(statement.order_by(QueueRecord.id)).all())

    def mark_queue_record_sent(self, record_id: int) -> bool:
        result = self.session.execute(
            update(QueueRecord)
            .where(and_(QueueRecord.id == record_id, QueueRecord.status == "QUEUED"))
            .values(status="SENT", sent_at=datetime.now(UTC))
        )
        self.session.commit()
        return result.rowcount == 1

    def list_skipped(self, user_id: int, *, run_id: int | None = None, limit: int = 100) -> list[QueueRecord]:
        statement = select(QueueRecord).where(and_(QueueRecord.user_id == user_id, QueueRecord.status == "SKIPPED"))
        if run_id is not None:
            statement = statement.where(QueueRecord.run_id == run_id)
        statement = statement.order_by(QueueRecord.id.desc()).limit(limit)
        return list(self.session.scalars(statement).all())

    # applications

    def get_application(self, run_id: int, job_id: int) -> Application | None:
        return self.session.scalar(
            select(Application).where(and_(Application.run_id == run_id, Application.job_id == job_id))
        )

    def get_application_by_id(self, application_id: int) -> Application | None:
        return self.session.get(Application, application_id)

    def upsert_application(
        self,
        *,
        run_id: int,
        job_id: int,
        user_id: int,
        company: str,
        resume_variant_used: str,
        answered_questions: list[dict[str, Any]],
        validation: dict[str, Any],
    ) -> tuple[Application, bool]:
        application = self.get_application(run_id, job_id)
        created = application is None
        if application is None:
            application = Application(
                run_id=run_id,
                job_id=job_id,
                user_id=user_id,
                status="QUEUED",
                attempts=0,
                timeline_json=[],
            )
            self.session.add(application)

        application.company = company
        application.resume_variant_used = resume_variant_used
        application.answered_questions_json = answered_questions
        application.validation_json = validation
        self.session.commit()
        self.session.refresh(application)
        return application, created

    def record_application_attempt(
        self,
        application_id: int,
        *,
        attempts: int,
        receipt: str | None = None,
        error: str | None = None,
    ) -> Application:
        application = self.session.get(Application, application_id)
        if not application:
            raise ValueError(f"application {application_id} not found")
        application.attempts = attempts
        if receipt is not None:
            application.receipt = receipt
            application.error = None
        if error is not None:
            application.error = error
        self.session.commit()
        self.session.refresh(application)
        return application

    def set_application_status(self, application_id: int, status: str) -> Application:
        application = self.session.get(Application, application_id)
        if not application:
            raise ValueError(f"application {application_id} not found")
        application.status = status
        self.session.commit()
        self.session.refresh(application)
        return application

    def append_application_timeline(self, application_id: int, *, stage: str, message: str = "") -> Application:
        application = self.session.get(Application, application_id)
        if not application:
            raise ValueError(f"application {application_id} not found")
        entry = {"stage": stage, "timestamp": datetime.now(UTC).isoformat(), "message": message}
        application.timeline_json = [*(application.timeline_json or []), entry]
        self.session.commit()
        self.session.refresh(application)
        return application

    def list_applications(self, user_id: int, *, run_id: int | None = None, limit: int = 100) -> list[Application]:
        statement = select(Application).where(Application.user_id == user_id)
        if run_id is not None:
            statement = statement.where(Application.run_id == run_id)
        statement = statement.order_by(Application.id.desc()).limit(limit)
        return list(self.session.scalars(statement).all())

    def list_applied_job_ids(self, user_id: int) -> set[int]:
        statement = select(Application.job_id).where(Application.user_id == user_id)
        return set(self.session.scalars(statement).all())

    def list_cooldown_companies(self, user_id: int, *, since: datetime) -> set[str]:
        statement = select(Application.company).where(
            and_(Application.user_id == user_id, Application.created_at >= since)
        )
        return {company for company in self.session.scalars(statement).all() if company}

    # audit log

    def append_log_event(
        self,
        *,
        user_id: int,
        stage: str,
        level: str,
        message: str,
        run_id: int | None = None,
        job_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LogEvent:
        event = LogEvent(
            run_id=run_id,
            job_id=job_id,
            user_id=user_id,
            stage=stage,
            level=level,
            message=message,
            metadata_json=metadata or {},
            created_at=datetime.now(UTC),
        )
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        return event

    def list_log_events(
        self,
        *,
        user_id: int,
        run_id: int | None = None,
        job_id: int | None = None,
        stage: str | None = None,
        level: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LogEvent]:
        statement = select(LogEvent).where(LogEvent.user_id == user_id)
        if run_id is not None:
            statement = statement.where(LogEvent.run_id == run_id)
        if job_id is not None:
            statement = statement.where(LogEvent.job_id == job_id)
        if stage:
            statement = statement.where(LogEvent.stage == stage)
        if level:
            statement = statement.where(LogEvent.level == level)
        statement = statement.order_by(LogEvent.created_at.desc(), LogEvent.id.desc()).offset(offset).limit(limit)
        return list(self.session.scalars(statement).all())

    def log_stats(self, *, user_id: int, run_id: int | None = None, hours: int = 24) -> dict[str, Any]:
        since = datetime.now(UTC) - timedelta(hours=hours)
        conditions = [LogEvent.user_id == user_id, LogEvent.created_at >= since]
        if run_id is not None:
            conditions.append(LogEvent.run_id == run_id)

        events = list(self.session.scalars(select(LogEvent).where(and_(*conditions))).all())
        by_stage = Counter(event.stage for event in events)
        by_level = Counter(event.level for event in events)

        timeline: Counter[str] = Counter()
        for event in events:
            created = as_utc(event.created_at)
            bucket = created.replace(minute=0, second=0, microsecond=0)
            timeline[bucket.isoformat()] += 1

        errors = sorted(
            (event for event in events if event.level == "ERROR"),
            key=lambda event: (as_utc(event.created_at), event.id),
            reverse=True,
        )[:10]
        return {
            "total": len(events),
            "hours": hours,
            "by_stage": dict(sorted(by_stage.items())),
            "by_level": dict(sorted(by_level.items())),
            "error_count": by_level.get("ERROR", 0),
            "warn_count": by_level.get("WARN", 0),
            "recent_errors": [
                {
                    "id": event.id,
                    "run_id": event.run_id,
                    "job_id": event.job_id,
                    "stage": event.stage,
                    "message": event.message,
                    "created_at": as_utc(event.created_at).isoformat(),
                }
                for event in errors
            ],
            "timeline": [{"hour": hour, "count": count} for hour, count in sorted(timeline.items())],
        }
