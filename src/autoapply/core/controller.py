from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autoapply.config import Settings, get_settings
from autoapply.core.artifacts import ArtifactLoader
from autoapply.core.audit import AuditLogger
from autoapply.core.grounding import GroundingGuard
from autoapply.core.matcher import JobMatcher
from autoapply.core.personalizer import Personalizer
from autoapply.core.policy import PolicyGate
from autoapply.core.queue_writer import QueueWriter
from autoapply.core.state import ApplyState, DiscoveryState, PipelineState
from autoapply.core.submitter import HttpSubmissionClient, SubmissionClient, Submitter
from autoapply.core.tracker import Tracker
from autoapply.core.work_queue import ClaimedItem, WorkQueue, build_apply_queue, build_discovery_queue
from autoapply.db.models import Application, LogEvent, QueueRecord, Run
from autoapply.db.repositories import Repository, as_utc, start_of_utc_day
from autoapply.errors import (
    AlreadyRunning,
    JobNotFound,
    NotRunOwner,
    RunNotActive,
    RunNotFound,
    UserInactive,
)
from autoapply.llm.router import GenerationClient, LLMGenerationClient
from autoapply.types import ApplyWorkItem, DiscoveryWorkItem

logger = logging.getLogger(__name__)

DONE = "DONE"
DISCOVERY_SEQUENCE = ["LOAD_RUN", "LOAD_ARTIFACTS", "MATCH_AND_GATE", "WRITE_QUEUE", "FINALIZE"]


def discovery_idempotency_key(run_id: int) -> str:
    return f"run:{run_id}"


def pipeline_outcome(state: PipelineState) -> str:
    if state.errors or state.run_status == "FAILED":
        return "FAILED"
    if state.stop_requested or state.run_status == "STOPPED":
        return "STOPPED"
    return "COMPLETED"


class RunController:
    """Drives the discovery and apply pipelines and exposes run control operations."""

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        generation: GenerationClient | None = None,
        submission: SubmissionClient | None = None,
        audit: AuditLogger | None = None,
        discovery_queue: WorkQueue | None = None,
        apply_queue: WorkQueue | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.repo = Repository(session)
        self.generation = generation or LLMGenerationClient(self.settings)
        self.submission = submission or HttpSubmissionClient(
            timeout_sec=self.settings.submit_timeout_sec,
            user_agent=self.settings.submit_user_agent,
        )
        self.audit = audit or AuditLogger()
        self.discovery_queue = discovery_queue or build_discovery_queue(self.settings)
        self.apply_queue = apply_queue or build_apply_queue(self.settings)

        self.artifacts = ArtifactLoader(self.repo)
        self.matcher = JobMatcher()
        self.queue_writer = QueueWriter(self.repo, self.apply_queue, generation=self.generation)
        self.personalizer = Personalizer(self.repo, self.generation)
        self.guard = GroundingGuard(self.generation, min_score=self.settings.grounding_min_score)
        self.submitter = Submitter(self.repo, self.submission, settings=self.settings, sleep=sleep)
        self.tracker = Tracker(self.repo)

    # control surface

    def start_run(self, user_id: int) -> Run:
        user = self.repo.get_user(user_id)
        if user is None:
            raise ValueError(f"user {user_id} not found")
        active = self.repo.get_active_run(user_id)
        if active is not None:
            raise AlreadyRunning(active.id)

        applied_today = self.repo.count_successful_applications_since(user_id, start_of_utc_day())
        try:
            run = self.repo.create_run(user_id=user_id, applied_count_today=applied_today)
        except IntegrityError:
            # lost a race with a concurrent start for the same user
            self.session.rollback()
            active = self.repo.get_active_run(user_id)
            if active is None:
                raise
            raise AlreadyRunning(active.id) from None
        self.discovery_queue.enqueue(
            DiscoveryWorkItem(run_id=run.id, user_id=user_id).model_dump(),
            idempotency_key=discovery_idempotency_key(run.id),
        )
        self.audit.record(
            user_id=user_id,
            run_id=run.id,
            stage="SYSTEM",
            message="Run started",
            metadata={"applied_count_today": applied_today},
        )
        return run

    def stop_run(self, run_id: int, user_id: int) -> Run:
        run = self.repo.get_run(run_id)
        if run is None:
            raise RunNotFound(f"run {run_id} not found")
        if run.user_id != user_id:
            raise NotRunOwner(f"run {run_id} does not belong to user {user_id}")
        if run.status != "RUNNING":
            raise RunNotActive(f"run {run_id} is {run.status}")

        self.repo.update_run(run_id, kill_switch=True)
        self.repo.finalize_run(run_id, status="STOPPED", checkpoint="STOP_REQUESTED")
        self.audit.record(
            user_id=user_id,
            run_id=run_id,
            stage="SYSTEM",
            level="WARN",
            message="Run stopped by user",
        )
        return self.repo.get_run(run_id)

    def get_run_status(self, user_id: int) -> Run | None:
        return self.repo.get_latest_run(user_id)

    def list_applications(self, user_id: int, *, run_id: int | None = None, limit: int = 100) -> list[Application]:
        return self.repo.list_applications(user_id, run_id=run_id, limit=limit)

    def list_skipped(self, user_id: int, *, run_id: int | None = None, limit: int = 100) -> list[QueueRecord]:
        return self.repo.list_skipped(user_id, run_id=run_id, limit=limit)

    def get_logs(self, **filters: Any) -> list[LogEvent]:
        return self.repo.list_log_events(**filters)

    def get_log_stats(self, *, user_id: int, run_id: int | None = None, hours: int = 24) -> dict[str, Any]:
        return self.repo.log_stats(user_id=user_id, run_id=run_id, hours=hours)

    def queue_metrics(self) -> dict[str, Any]:
        return {
            "discovery": self.discovery_queue.metrics(),
            "apply": self.apply_queue.metrics(),
        }

    # discovery pipeline

    def run_discovery(self, run_id: int) -> DiscoveryState:
        run = self.repo.get_run(run_id)
        if run is None:
            raise RunNotFound(f"run {run_id} not found")

        stages: dict[str, Callable[[DiscoveryState], dict[str, Any]]] = {
            "LOAD_RUN": self._load_run,
            "LOAD_ARTIFACTS": self._load_discovery_artifacts,
            "MATCH_AND_GATE": self._match_and_gate,
            "WRITE_QUEUE": self._write_queue,
            "FINALIZE": self._finalize_discovery,
        }
        state = DiscoveryState(run_id=run.id, user_id=run.user_id)
        stage = DISCOVERY_SEQUENCE[0]
        while stage != DONE:
            state = self._run_stage(stage, stages[stage], state)
            stage = self._next_discovery_stage(stage, state)
        return state

    @staticmethod
    def _next_discovery_stage(stage: str, state: DiscoveryState) -> str:
        if stage == "FINALIZE":
            return DONE
        if state.halted:
            return "FINALIZE"
        return DISCOVERY_SEQUENCE[DISCOVERY_SEQUENCE.index(stage) + 1]

    def _load_run(self, state: DiscoveryState) -> dict[str, Any]:
        run = self.repo.get_run(state.run_id)
        if run is None:
            raise RunNotFound(f"run {state.run_id} not found")
        user = self.repo.get_user(run.user_id)
        if user is None or not user.is_active:
            raise UserInactive(f"user {run.user_id} is missing or inactive")

        policy = self.repo.get_apply_policy(user.id)
        if run.status != "RUNNING":
            logger.info("Run %s is %s; discovery skipped", run.id, run.status)
            return {"run_status": run.status, "stop_requested": True, "policy": policy}

        if run.kill_switch or policy.kill_switch:
            self.audit.record(
                user_id=run.user_id,
                run_id=run.id,
                stage="SYSTEM",
                level="WARN",
                message="Kill switch active; run stopped before discovery",
                metadata={"run_kill_switch": run.kill_switch, "policy_kill_switch": policy.kill_switch},
            )
            return {"run_status": "STOPPED", "stop_requested": True, "policy": policy}

        return {
            "policy": policy,
            "applied_count_today": run.applied_count_today,
            **self._checkpoint(state, "LOAD_RUN"),
        }

    def _load_discovery_artifacts(self, state: DiscoveryState) -> dict[str, Any]:
        pack = self.artifacts.load(state.user_id)
        return {
            "artifact_pack": pack,
            **self._checkpoint(
                state,
                "ARTIFACT",
                metadata={
                    "skills": len(pack.student_profile.skills),
                    "bullets": len(pack.bullet_bank),
                    "variants": [variant.name for variant in pack.resume_variants],
                },
            ),
        }

    def _match_and_gate(self, state: DiscoveryState) -> dict[str, Any]:
        policy = state.policy
        pack = state.artifact_pack
        jobs = self.repo.list_recent_jobs(self.settings.job_window_size)
        applied_job_ids = self.repo.list_applied_job_ids(state.user_id)
        ranked = self.matcher.rank(
            profile=pack.student_profile,
            jobs=jobs,
            policy=policy,
            applied_job_ids=applied_job_ids,
        )
        self.repo.save_job_matches(run_id=state.run_id, user_id=state.user_id, ranked=ranked)
        self.audit.record(
            user_id=state.user_id,
            run_id=state.run_id,
            stage="SEARCH",
            message=f"Search completed: {len(jobs)} postings, {len(ranked)} ranked",
            metadata={
                "postings": len(jobs),
                "deduplicated": len(jobs) - len(ranked),
                "top": [
                    {"job_id": item.job_id, "company": item.company, "score": item.match_score}
                    for item in ranked[:5]
                ],
            },
        )
        discovery_update = self._checkpoint(state, "JOB_DISCOVERY")

        cooldown_since = datetime.now(UTC) - timedelta(days=policy.company_cooldown_days)
        gate = PolicyGate(
            policy=policy,
            applied_count_today=state.applied_count_today,
            cooldown_companies=self.repo.list_cooldown_companies(state.user_id, since=cooldown_since),
        )
        decision = gate.evaluate(ranked)
        reasons = Counter(item.reason for item in decision.skipped)
        self.audit.record(
            user_id=state.user_id,
            run_id=state.run_id,
            stage="POLICY",
            message=f"Policy decision: {len(decision.allowed_job_ids)} allowed, {len(decision.skipped)} skipped",
            metadata={"allowed": decision.allowed_job_ids, "skip_reasons": dict(reasons)},
        )
        return {
            "ranked_jobs": ranked,
            "policy_decision": decision,
            **discovery_update,
            **self._checkpoint(state, "POLICY"),
        }

    def _write_queue(self, state: DiscoveryState) -> dict[str, Any]:
        if self._kill_switch_active(state):
            return {"run_status": "STOPPED", "stop_requested": True}

        summary = self.queue_writer.write(
            run_id=state.run_id,
            user_id=state.user_id,
            decision=state.policy_decision,
            ranked=state.ranked_jobs,
            pack=state.artifact_pack,
            policy=state.policy,
        )
        return {
            "queue_summary": summary,
            **self._checkpoint(state, "QUEUE_READY", metadata=summary.model_dump()),
        }

    def _finalize_discovery(self, state: DiscoveryState) -> dict[str, Any]:
        status = pipeline_outcome(state)
        error = "; ".join(state.errors) if state.errors else None
        changed = self.repo.finalize_run(state.run_id, status=status, error=error, checkpoint="FINALIZED")
        run = self.repo.get_run(state.run_id)
        final_status = run.status if run is not None else status
        self.audit.record(
            user_id=state.user_id,
            run_id=state.run_id,
            stage="SYSTEM",
            level="ERROR" if final_status == "FAILED" else "INFO",
            message=f"Run finalized as {final_status}",
            metadata={"checkpoint": "FINALIZED", "status_changed": changed, "errors": list(state.errors)},
        )
        return {"run_status": final_status, "checkpoint": "FINALIZED"}

    # apply pipeline

    def run_apply(self, work: ApplyWorkItem) -> ApplyState:
        stages: dict[str, Callable[[ApplyState], dict[str, Any]]] = {
            "LOAD_ARTIFACTS": self._load_apply_artifacts,
            "PERSONALIZE": self._personalize,
            "GROUNDING_GUARD": self._grounding_guard,
            "SUBMIT": self._submit,
            "TRACK": self._track,
            "LOG": self._log_apply,
            "FINALIZE": self._finalize_apply,
        }
        state = ApplyState(
            run_id=work.run_id,
            user_id=work.user_id,
            job_id=work.job_id,
            queue_record_id=work.queue_record_id,
            artifact_pack=work.artifact_pack,
        )
        stage = "PERSONALIZE" if state.artifact_pack is not None else "LOAD_ARTIFACTS"
        while stage != DONE:
            state = self._run_stage(stage, stages[stage], state)
            stage = self._next_apply_stage(stage, state)
        return state

    @staticmethod
    def _next_apply_stage(stage: str, state: ApplyState) -> str:
        if stage == "FINALIZE":
            return DONE
        if stage == "LOG":
            return "FINALIZE"
        if stage == "SUBMIT":
            return "TRACK" if state.submission is not None else "LOG"
        if stage == "TRACK" or state.halted:
            return "LOG"
        if stage == "GROUNDING_GUARD":
            return "SUBMIT" if state.validation is not None and state.validation.validation_passed else "LOG"
        return {"LOAD_ARTIFACTS": "PERSONALIZE", "PERSONALIZE": "GROUNDING_GUARD"}[stage]

    def _load_apply_artifacts(self, state: ApplyState) -> dict[str, Any]:
        pack = self.artifacts.load(state.user_id)
        return {"artifact_pack": pack, **self._checkpoint(state, "ARTIFACT")}

    def _personalize(self, state: ApplyState) -> dict[str, Any]:
        if self._kill_switch_active(state):
            return {"stop_requested": True}

        result = self.personalizer.personalize(state.artifact_pack, state.job_id)
        total = result.confidence_levels.total
        covered = sum(1 for item in result.requirement_evidence if item.evidence.strip())
        self.repo.annotate_job_match(
            run_id=state.run_id,
            job_id=result.job_id,
            evidence_coverage=round(100 * covered / total, 1) if total else 0.0,
            confidence_levels=result.confidence_levels.model_dump(),
        )
        return {
            "personalization": result,
            **self._checkpoint(
                state,
                "PERSONALIZED",
                metadata={
                    "resume_variant": result.resume_variant_used,
                    "confidence_levels": result.confidence_levels.model_dump(),
                    "answers": len(result.answered_questions),
                },
            ),
        }

    def _grounding_guard(self, state: ApplyState) -> dict[str, Any]:
        validation = self.guard.validate(state.personalization, state.artifact_pack)
        if not validation.validation_passed:
            return {
                "validation": validation,
                "stop_requested": True,
                **self._checkpoint(state, "VALIDATION_FAILED"),
            }
        return {"validation": validation, **self._checkpoint(state, "VALIDATION_PASSED")}

    def _submit(self, state: ApplyState) -> dict[str, Any]:
        if self._kill_switch_active(state):
            return {"stop_requested": True}

        job = self.repo.get_job(state.job_id)
        if job is None:
            raise JobNotFound(f"job {state.job_id} not found")
        result = self.submitter.submit(
            run_id=state.run_id,
            user_id=state.user_id,
            job=job,
            personalization=state.personalization,
            validation=state.validation,
        )
        update: dict[str, Any] = {
            "submission": result,
            **self._checkpoint(state, "APPLIED", metadata={"status": result.status, "attempts": result.attempts}),
        }
        if result.status == "FAILED":
            update["errors"] = [f"SUBMIT: {result.error or 'submission failed'}"]
        return update

    def _track(self, state: ApplyState) -> dict[str, Any]:
        self.tracker.track(run_id=state.run_id, result=state.submission)
        return self._checkpoint(state, "TRACKED")

    def _log_apply(self, state: ApplyState) -> dict[str, Any]:
        if state.validation is not None:
            validation = state.validation
            self.audit.record(
                user_id=state.user_id,
                run_id=state.run_id,
                job_id=state.job_id,
                stage="VALIDATION",
                level="INFO" if validation.validation_passed else "WARN",
                message=(
                    f"Validation passed (score {validation.confidence_score})"
                    if validation.validation_passed
                    else f"Validation failed (score {validation.confidence_score}); submission blocked"
                ),
                metadata=validation.model_dump(),
            )
        if state.submission is not None:
            submission = state.submission
            self.audit.record(
                user_id=state.user_id,
                run_id=state.run_id,
                job_id=state.job_id,
                stage="APPLY",
                level="ERROR" if submission.status == "FAILED" else "INFO",
                message=f"Submission {submission.status} after {submission.attempts} attempt(s)",
                metadata=submission.model_dump(),
            )
        for error in state.errors:
            self.audit.error(user_id=state.user_id, run_id=state.run_id, job_id=state.job_id, message=error)
        return {}

    def _finalize_apply(self, state: ApplyState) -> dict[str, Any]:
        outcome = pipeline_outcome(state)
        self.repo.update_run(state.run_id, last_checkpoint=f"APPLY_{outcome}")
        self.audit.record(
            user_id=state.user_id,
            run_id=state.run_id,
            job_id=state.job_id,
            stage="SYSTEM",
            message=f"Apply finished as {outcome}",
            metadata={"checkpoint": "FINALIZED", "outcome": outcome},
        )
        return {"outcome": outcome, "checkpoint": "FINALIZED"}

    # worker entry points

    def process_discovery_item(self, item: ClaimedItem) -> DiscoveryState:
        work = DiscoveryWorkItem.model_validate(item.payload)
        return self.run_discovery(work.run_id)

    def process_apply_item(self, item: ClaimedItem) -> ApplyState | None:
        work = ApplyWorkItem.model_validate(item.payload)
        record = self.repo.get_queue_record_by_id(work.queue_record_id)
        if record is None:
            logger.warning("Queue record %s missing; dropping work item %s", work.queue_record_id, item.id)
            return None
        if record.status == "SENT":
            logger.info("Queue record %s already sent; skipping redelivery", record.id)
            return None

        state = self.run_apply(work)
        self.repo.mark_queue_record_sent(record.id)
        return state

    def discovery_dead_lettered(self, item: ClaimedItem, exc: Exception) -> None:
        work = DiscoveryWorkItem.model_validate(item.payload)
        self.repo.finalize_run(work.run_id, status="FAILED", error=str(exc), checkpoint="FINALIZED")
        self.audit.error(user_id=work.user_id, run_id=work.run_id, message=f"Discovery failed: {exc}")

    def apply_dead_lettered(self, item: ClaimedItem, exc: Exception) -> None:
        work = ApplyWorkItem.model_validate(item.payload)
        self.repo.mark_queue_record_sent(work.queue_record_id)
        self.audit.error(
            user_id=work.user_id,
            run_id=work.run_id,
            job_id=work.job_id,
            stage="APPLY",
            message=f"Apply dead-lettered after {item.attempt} attempts: {exc}",
        )

    # helpers

    def _run_stage(self, stage: str, handler: Callable[[Any], dict[str, Any]], state: Any) -> Any:
        try:
            update = handler(state)
        except Exception as exc:
            logger.exception("Stage %s failed run_id=%s", stage, state.run_id)
            self.session.rollback()
            update = {"errors": [f"{stage}: {exc}"], "run_status": "FAILED"}
        return state.merge(update)

    def _checkpoint(self, state: PipelineState, checkpoint: str, *, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        self.repo.update_run(state.run_id, last_checkpoint=checkpoint)
        self.audit.checkpoint(
            user_id=state.user_id,
            run_id=state.run_id,
            checkpoint=checkpoint,
            job_id=getattr(state, "job_id", None),
            metadata=metadata,
        )
        return {"checkpoint": checkpoint}

    def _kill_switch_active(self, state: PipelineState) -> bool:
        run = self.repo.get_run(state.run_id)
        if run is None or not run.kill_switch:
            return False
        self.audit.record(
            user_id=state.user_id,
            run_id=state.run_id,
            job_id=getattr(state, "job_id", None),
            stage="SYSTEM",
            level="WARN",
            message="Kill switch active; stopping pipeline",
        )
        return True


def _iso(value: datetime | None) -> str | None:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized else None


def serialize_run(run: Run) -> dict[str, Any]:
    return {
        "id": run.id,
        "user_id": run.user_id,
        "status": run.status,
        "applied_count_today": run.applied_count_today,
        "skipped_count_today": run.skipped_count_today,
        "kill_switch": run.kill_switch,
        "last_checkpoint": run.last_checkpoint,
        "error": run.error or None,
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
    }


def serialize_application(application: Application) -> dict[str, Any]:
    return {
        "id": application.id,
        "run_id": application.run_id,
        "job_id": application.job_id,
        "user_id": application.user_id,
        "company": application.company,
        "resume_variant_used": application.resume_variant_used,
        "answered_questions": application.answered_questions_json or [],
        "validation": application.validation_json or {},
        "status": application.status,
        "attempts": application.attempts,
        "receipt": application.receipt,
        "error": application.error,
        "timeline": application.timeline_json or [],
        "created_at": _iso(application.created_at),
    }


def serialize_queue_record(record: QueueRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "run_id": record.run_id,
        "job_id": record.job_id,
        "status": record.status,
        "skip_reason": record.skip_reason,
        "skip_detail": record.skip_detail,
        "skip_reasoning": record.skip_reasoning,
        "has_analysis": bool(record.skip_reasoning),
        "missing_skills": record.missing_skills_json or [],
        "missing_experience": record.missing_experience_json or [],
        "suggestions": record.suggestions_json or {},
        "cooldown_until": _iso(record.cooldown_until),
        "queued_at": _iso(record.queued_at),
        "sent_at": _iso(record.sent_at),
    }


def serialize_log_event(event: LogEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "run_id": event.run_id,
        "job_id": event.job_id,
        "user_id": event.user_id,
        "stage": event.stage,
        "level": event.level,
        "message": event.message,
        "metadata": event.metadata_json or {},
        "created_at": _iso(event.created_at),
    }
