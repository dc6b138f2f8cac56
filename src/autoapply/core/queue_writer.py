from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from autoapply.core.work_queue import WorkQueue
from autoapply.db.repositories import Repository
from autoapply.llm.router import GenerationClient
from autoapply.types import (
    ApplyPolicy,
    ApplyWorkItem,
    ArtifactPack,
    PolicyDecision,
    QueueSummary,
    RankedJob,
    SkipAnalysis,
    SkippedJob,
)

logger = logging.getLogger(__name__)


def apply_idempotency_key(queue_record_id: int) -> str:
    return f"queue-record:{queue_record_id}"


class QueueWriter:
    def __init__(
        self,
        repo: Repository,
        queue: WorkQueue,
        *,
        generation: GenerationClient | None = None,
    ):
        self.repo = repo
        self.queue = queue
        self.generation = generation

    def write(
        self,
        *,
        run_id: int,
        user_id: int,
        decision: PolicyDecision,
        ranked: list[RankedJob],
        pack: ArtifactPack,
        policy: ApplyPolicy,
    ) -> QueueSummary:
        summary = QueueSummary()
        scores = {item.job_id: item.match_score for item in ranked}

        for job_id in decision.allowed_job_ids:
            if self.repo.get_queue_record(run_id, job_id) is not None:
                summary.existing += 1
                continue
            self.repo.create_queue_record(run_id=run_id, job_id=job_id, user_id=user_id, status="QUEUED")
            summary.queued += 1

        for skipped in decision.skipped:
            if self.repo.get_queue_record(run_id, skipped.job_id) is not None:
                summary.existing += 1
                continue
            cooldown_until = None
            if skipped.reason == "COMPANY_COOLDOWN":
                cooldown_until = datetime.now(UTC) + timedelta(days=policy.company_cooldown_days)
            record = self.repo.create_queue_record(
                run_id=run_id,
                job_id=skipped.job_id,
                user_id=user_id,
                status="SKIPPED",
                skip_reason=skipped.reason,
                skip_detail=skipped.detail,
                cooldown_until=cooldown_until,
            )
            summary.skipped += 1
            self._explain_skip(record.id, skipped, pack, match_score=scores.get(skipped.job_id))

        for record in self.repo.list_queue_records(run_id, status="QUEUED"):
            work = ApplyWorkItem(
                run_id=run_id,
                user_id=user_id,
                job_id=record.job_id,
                queue_record_id=record.id,
                artifact_pack=pack,
            )
            _, created = self.queue.enqueue(
                work.model_dump(mode="json"),
                idempotency_key=apply_idempotency_key(record.id),
            )
            if created:
                summary.enqueued += 1

        logger.info(
            "Queue written run_id=%s queued=%s skipped=%s existing=%s enqueued=%s",
            run_id,
            summary.queued,
            summary.skipped,
            summary.existing,
            summary.enqueued,
        )
        return summary

    def _explain_skip(
        self,
        record_id: int,
        skipped: SkippedJob,
        pack: ArtifactPack,
        *,
        match_score: int | None,
    ) -> None:
        if self.generation is None:
            return
        job = self.repo.get_job(skipped.job_id)
        if job is None:
            return

        profile = pack.student_profile
        try:
            analysis = self.generation.generate(
                "skip_explanation",
                SkipAnalysis,
                {
                    "title": job.title,
                    "company": job.company,
                    "location": job.location or "unspecified",
                    "job_skills": ", ".join(job.skills_json or []) or "(none)",
                    "requirements": "; ".join(job.requirements_json or []) or "(none)",
                    "skip_reason": skipped.detail or skipped.reason,
                    "match_score": f"{match_score}%" if match_score is not None else "n/a",
                    "skills": ", ".join(profile.skills) or "(none)",
                    "experience": profile.experience,
                    "projects": profile.projects,
                },
            )
            self.repo.attach_skip_analysis(record_id, analysis)
        except Exception as exc:
            self.repo.session.rollback()
            logger.warning("Skip explanation unavailable job_id=%s error=%s", skipped.job_id, exc)
