from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from autoapply.db.repositories import Repository
from autoapply.db.session import SessionLocal

logger = logging.getLogger(__name__)

CHECKPOINT_STAGES: dict[str, str] = {
    "LOAD_RUN": "SYSTEM",
    "ARTIFACT": "ARTIFACT",
    "JOB_DISCOVERY": "RANK",
    "POLICY": "POLICY",
    "QUEUE_READY": "QUEUE",
    "PERSONALIZED": "PERSONALIZE",
    "VALIDATION_PASSED": "VALIDATION",
    "VALIDATION_FAILED": "VALIDATION",
    "APPLIED": "APPLY",
    "TRACKED": "APPLY",
    "FINALIZED": "SYSTEM",
}

_PY_LEVELS = {"INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}


def stage_for_checkpoint(checkpoint: str) -> str:
    if checkpoint in CHECKPOINT_STAGES:
        return CHECKPOINT_STAGES[checkpoint]
    for prefix, stage in (("VALIDATION", "VALIDATION"), ("PERSONALIZ", "PERSONALIZE"), ("APPL", "APPLY")):
        if checkpoint.startswith(prefix):
            return stage
    return "SYSTEM"


def _json_safe(metadata: dict[str, Any] | None) -> dict[str, Any]:
    if not metadata:
        return {}
    return json.loads(json.dumps(metadata, default=str))


class AuditLogger:
    """Best-effort audit trail. Writes never raise into the workflow."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def record(
        self,
        *,
        user_id: int,
        stage: str,
        message: str,
        level: str = "INFO",
        run_id: int | None = None,
        job_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        logger.log(
            _PY_LEVELS.get(level, logging.INFO),
            "[%s] %s run_id=%s job_id=%s",
            stage,
            message,
            run_id,
            job_id,
        )
        try:
            with self.session_factory() as session:
                Repository(session).append_log_event(
                    user_id=user_id,
                    run_id=run_id,
                    job_id=job_id,
                    stage=stage,
                    level=level,
                    message=message,
                    metadata=_json_safe(metadata),
                )
        except Exception as exc:
            logger.warning("Audit log write failed stage=%s run_id=%s error=%s", stage, run_id, exc)

    def checkpoint(
        self,
        *,
        user_id: int,
        run_id: int,
        checkpoint: str,
        job_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.record(
            user_id=user_id,
            run_id=run_id,
            job_id=job_id,
            stage=stage_for_checkpoint(checkpoint),
            message=f"Checkpoint {checkpoint}",
            metadata={"checkpoint": checkpoint, **(metadata or {})},
        )

    def error(
        self,
        *,
        user_id: int,
        message: str,
        run_id: int | None = None,
        job_id: int | None = None,
        stage: str = "SYSTEM",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.record(
            user_id=user_id,
            run_id=run_id,
            job_id=job_id,
            stage=stage,
            level="ERROR",
            message=message,
            metadata=metadata,
        )
