from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from autoapply.types import (
    ApplyPolicy,
    ArtifactPack,
    PersonalizationResult,
    PolicyDecision,
    QueueSummary,
    RankedJob,
    SubmissionResult,
    ValidationResult,
)


class PipelineState(BaseModel):
    """Immutable state threaded through a pipeline.

    Stages return partial updates that are folded in with ``merge``. Fields named in
    ``APPEND_FIELDS`` accumulate; every other field is last-write-wins, and an update of ``None``
    leaves the current value in place.
    """

    model_config = ConfigDict(frozen=True)

    APPEND_FIELDS: ClassVar[frozenset[str]] = frozenset({"errors"})

    run_id: int
    user_id: int
    run_status: str = "RUNNING"
    stop_requested: bool = False
    checkpoint: str = ""
    errors: tuple[str, ...] = ()

    def merge(self, update: dict[str, Any] | None) -> PipelineState:
        if not update:
            return self
        changes: dict[str, Any] = {}
        for key, value in update.items():
            if key not in type(self).model_fields:
                raise KeyError(f"{type(self).__name__} has no field {key!r}")
            if key in self.APPEND_FIELDS:
                if value:
                    changes[key] = (*getattr(self, key), *value)
            elif value is not None:
                changes[key] = value
        return self.model_copy(update=changes) if changes else self

    @property
    def halted(self) -> bool:
        return self.stop_requested or self.run_status in {"FAILED", "STOPPED"} or bool(self.errors)


class DiscoveryState(PipelineState):
    policy: ApplyPolicy | None = None
    applied_count_today: int = 0
    artifact_pack: ArtifactPack | None = None
    ranked_jobs: list[RankedJob] = Field(default_factory=list)
    policy_decision: PolicyDecision | None = None
    queue_summary: QueueSummary | None = None


class ApplyState(PipelineState):
    job_id: int | None = None
    queue_record_id: int | None = None
    artifact_pack: ArtifactPack | None = None
    personalization: PersonalizationResult | None = None
    validation: ValidationResult | None = None
    submission: SubmissionResult | None = None
    outcome: str | None = None
