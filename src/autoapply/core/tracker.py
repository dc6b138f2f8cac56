from __future__ import annotations

import logging

from autoapply.db.models import Application
from autoapply.db.repositories import Repository
from autoapply.types import SUCCESSFUL_APPLICATION_STATUSES, SubmissionResult

logger = logging.getLogger(__name__)


def _has_stage(application: Application, stage: str) -> bool:
    return any(entry.get("stage") == stage for entry in application.timeline_json or [])


class Tracker:
    def __init__(self, repo: Repository):
        self.repo = repo

    def track(self, *, run_id: int, result: SubmissionResult) -> Application:
        application = self.repo.get_application_by_id(result.application_id)
        if application is None:
            raise ValueError(f"application {result.application_id} not found")

        succeeded = result.status in SUCCESSFUL_APPLICATION_STATUSES
        outcome_stage = "APPLIED" if succeeded else "FAILED"
        if _has_stage(application, outcome_stage):
            logger.info("Application %s already tracked as %s", application.id, outcome_stage)
            return application

        self.repo.set_application_status(application.id, result.status)
        if succeeded:
            suffix = f" after {result.attempts} attempts" if result.attempts > 1 else ""
            self.repo.append_application_timeline(
                application.id,
                stage="SUBMITTED",
                message=f"Receipt {result.receipt}{suffix}",
            )
            application = self.repo.append_application_timeline(
                application.id,
                stage="APPLIED",
                message="Application submitted",
            )
            self.repo.increment_run_counter(run_id, "applied_count_today")
        else:
            application = self.repo.append_application_timeline(
                application.id,
                stage="FAILED",
                message=result.error or "Submission failed",
            )
            self.repo.increment_run_counter(run_id, "skipped_count_today")

        logger.info(
            "Tracked application_id=%s run_id=%s status=%s",
            application.id,
            run_id,
            result.status,
        )
        return application
