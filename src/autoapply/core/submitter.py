from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from typing import Any, Protocol

import requests

from autoapply.config import Settings, get_settings
from autoapply.db.models import JobPosting
from autoapply.db.repositories import Repository
from autoapply.errors import NoResumeFile, SubmissionError
from autoapply.types import (
    SUCCESSFUL_APPLICATION_STATUSES,
    PersonalizationResult,
    SubmissionResult,
    ValidationResult,
)

logger = logging.getLogger(__name__)


class SubmissionClient(Protocol):
    def submit(self, apply_url: str, payload: dict[str, Any]) -> str: ...


class HttpSubmissionClient:
    def __init__(self, *, timeout_sec: int = 30, user_agent: str = "AutoApply/0.1"):
        self.timeout_sec = timeout_sec
        self.user_agent = user_agent

    def submit(self, apply_url: str, payload: dict[str, Any]) -> str:
        try:
            response = requests.post(
                apply_url,
                json=payload,
                timeout=self.timeout_sec,
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise SubmissionError(f"submission to {apply_url} failed: {exc}", status_code=status_code) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        receipt = body.get("receipt") or body.get("confirmation_id") or body.get("confirmationId") or body.get("id")
        if not receipt:
            raise SubmissionError(f"submission to {apply_url} returned no receipt", status_code=response.status_code)
        return str(receipt)


def is_sandbox_posting(job: JobPosting, settings: Settings) -> bool:
    if (job.source or "").strip().lower() in settings.sandbox_source_set:
        return True
    marker = settings.sandbox_url_marker.strip().lower()
    return bool(marker) and marker in (job.apply_url or "").lower()


def sandbox_receipt() -> str:
    return f"SANDBOX-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


def build_payload(job: JobPosting, personalization: PersonalizationResult) -> dict[str, Any]:
    return {
        "job_id": job.external_id or str(job.id),
        "resume_url": personalization.resume_url,
        "answers": {item.question: item.answer for item in personalization.answered_questions},
    }


class Submitter:
    """Submits one application with a bounded, per-run attempt budget."""

    def __init__(
        self,
        repo: Repository,
        client: SubmissionClient,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repo = repo
        self.client = client
        self.settings = settings or get_settings()
        self.sleep = sleep

    def submit(
        self,
        *,
        run_id: int,
        user_id: int,
        job: JobPosting,
        personalization: PersonalizationResult,
        validation: ValidationResult,
    ) -> SubmissionResult:
        application, created = self.repo.upsert_application(
            run_id=run_id,
            job_id=job.id,
            user_id=user_id,
            company=job.company,
            resume_variant_used=personalization.resume_variant_used,
            answered_questions=[item.model_dump() for item in personalization.answered_questions],
            validation=validation.model_dump(include={"confidence_score", "is_grounded", "hallucination_risks"}),
        )
        if created:
            self.repo.append_application_timeline(
                application.id,
                stage="PERSONALIZED",
                message=f"Personalized with resume variant '{personalization.resume_variant_used}'",
            )

        sandbox = is_sandbox_posting(job, self.settings)
        # A stored receipt means the employer accepted it, even if tracking never ran.
        if application.status in SUCCESSFUL_APPLICATION_STATUSES or application.receipt:
            status = application.status
            if status not in SUCCESSFUL_APPLICATION_STATUSES:
                status = "SUBMITTED" if application.attempts <= 1 else "RETRIED"
            logger.info("Application already submitted run_id=%s job_id=%s status=%s", run_id, job.id, status)
            return self._result(application, status=status, sandbox=sandbox)

        if not personalization.resume_url:
            raise NoResumeFile(f"no resume file url for job {job.id}")
        if not sandbox and not job.apply_url:
            raise SubmissionError(f"job {job.id} has no apply url")

        max_attempts = self.settings.max_submit_attempts
        attempts = application.attempts
        payload = build_payload(job, personalization)
        while attempts < max_attempts:
            attempts += 1
            try:
                receipt = sandbox_receipt() if sandbox else self.client.submit(job.apply_url, payload)
            except SubmissionError as exc:
                application = self.repo.record_application_attempt(application.id, attempts=attempts, error=str(exc))
                logger.warning(
                    "Submission attempt %s/%s failed run_id=%s job_id=%s error=%s",
                    attempts,
                    max_attempts,
                    run_id,
                    job.id,
                    exc,
                )
                if attempts < max_attempts:
                    self.sleep(self.settings.submit_backoff_base_sec * (2 ** (attempts - 1)))
                continue

            application = self.repo.record_application_attempt(application.id, attempts=attempts, receipt=receipt)
            status = "SUBMITTED" if attempts == 1 else "RETRIED"
            logger.info("Submitted run_id=%s job_id=%s attempts=%s receipt=%s", run_id, job.id, attempts, receipt)
            return self._result(application, status=status, sandbox=sandbox)

        if application.error is None:
            application = self.repo.record_application_attempt(
                application.id,
                attempts=attempts,
                error="submission attempt budget exhausted",
            )
        return self._result(application, status="FAILED", sandbox=sandbox)

    @staticmethod
    def _result(application: Any, *, status: str, sandbox: bool) -> SubmissionResult:
        return SubmissionResult(
            application_id=application.id,
            status=status,
            attempts=application.attempts,
            receipt=application.receipt,
            error=None if status in SUCCESSFUL_APPLICATION_STATUSES else application.error,
            sandbox=sandbox,
        )
