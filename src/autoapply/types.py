from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

RunStatus = Literal["RUNNING", "STOPPED", "COMPLETED", "FAILED"]
QueueStatus = Literal["QUEUED", "SKIPPED", "SENT"]
SkipReason = Literal[
    "POLICY_BLOCK",
    "LOW_MATCH_SCORE",
    "MISSING_EVIDENCE",
    "COMPANY_COOLDOWN",
    "DUPLICATE",
    "KILL_SWITCH",
]
ApplicationStatus = Literal["QUEUED", "SUBMITTED", "FAILED", "RETRIED"]
TimelineStage = Literal[
    "SEARCHED",
    "RANKED",
    "POLICY_ALLOWED",
    "PERSONALIZED",
    "APPLIED",
    "SUBMITTED",
    "FAILED",
]
LogStage = Literal[
    "ARTIFACT",
    "SEARCH",
    "RANK",
    "POLICY",
    "QUEUE",
    "PERSONALIZE",
    "APPLY",
    "VALIDATION",
    "SYSTEM",
]
LogLevel = Literal["INFO", "WARN", "ERROR"]
ConfidenceTag = Literal["strong", "medium", "weak"]
GenerationKind = Literal["evidence_mapping", "screening_answers", "grounding_check", "skip_explanation"]
LLMProvider = Literal["openai", "local"]

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"STOPPED", "COMPLETED", "FAILED"})
SUCCESSFUL_APPLICATION_STATUSES: frozenset[str] = frozenset({"SUBMITTED", "RETRIED"})


class ApplyPolicy(BaseModel):
    max_applications_per_day: int = 10
    min_match_score: int = 60
    allowed_locations: list[str] = Field(default_factory=list)
    remote_only: bool = False
    visa_required: bool = False
    blocked_companies: list[str] = Field(default_factory=list)
    blocked_roles: list[str] = Field(default_factory=list)
    company_cooldown_days: int = 30
    kill_switch: bool = False

    @field_validator("min_match_score")
    @classmethod
    def validate_min_match_score(cls, value: int) -> int:
        if value < 0 or value > 100:
            raise ValueError("min_match_score must be between 0 and 100")
        return value

    @field_validator("max_applications_per_day", "company_cooldown_days")
    @classmethod
    def validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be non-negative")
        return value


class StudentProfile(BaseModel):
    education: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    projects: list[str] = Field(default_factory=list)
    experience: list[str] = Field(default_factory=list)
    links: list[str] = Field(default_factory=list)


class ResumeVariant(BaseModel):
    name: str
    url: str


class ArtifactPack(BaseModel):
    student_profile: StudentProfile
    bullet_bank: list[str] = Field(default_factory=list)
    proof_links: list[str] = Field(default_factory=list)
    resume_variants: list[ResumeVariant] = Field(default_factory=list)
    base_resume_url: str = ""


class RankedJob(BaseModel):
    job_id: int
    company: str
    title: str
    posted_at: datetime | None = None
    match_score: int
    skill_overlap_score: int
    experience_fit_score: int
    constraint_fit_score: int
    ranking_reason: str = ""


class SkippedJob(BaseModel):
    job_id: int
    reason: SkipReason
    detail: str = ""


class PolicyDecision(BaseModel):
    allowed_job_ids: list[int] = Field(default_factory=list)
    skipped: list[SkippedJob] = Field(default_factory=list)
    policies_checked: list[str] = Field(default_factory=list)


class QueueSummary(BaseModel):
    queued: int = 0
    skipped: int = 0
    existing: int = 0
    enqueued: int = 0


class RequirementEvidence(BaseModel):
    requirement: str
    evidence: str = ""
    confidence: ConfidenceTag = "weak"

    @field_validator("confidence", mode="before")
    @classmethod
    def normalize_confidence(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class EvidenceMapping(BaseModel):
    requirements: list[RequirementEvidence] = Field(default_factory=list)


class ScreeningAnswer(BaseModel):
    question: str
    answer: str


class ScreeningAnswers(BaseModel):
    answers: list[ScreeningAnswer] = Field(default_factory=list)


class ConfidenceLevels(BaseModel):
    strong: int = 0
    medium: int = 0
    weak: int = 0

    @property
    def total(self) -> int:
        return self.strong + self.medium + self.weak


class PersonalizationResult(BaseModel):
    job_id: int
    resume_variant_used: str
    resume_url: str = ""
    requirement_evidence: list[RequirementEvidence] = Field(default_factory=list)
    confidence_levels: ConfidenceLevels = Field(default_factory=ConfidenceLevels)
    answered_questions: list[ScreeningAnswer] = Field(default_factory=list)

    @property
    def requirement_evidence_map(self) -> dict[str, str]:
        return {item.requirement: item.evidence for item in self.requirement_evidence}


class GroundingVerdict(BaseModel):
    is_grounded: bool
    hallucination_risks: list[str] = Field(default_factory=list)
    confidence_score: float
    reasoning: str = ""

    @field_validator("confidence_score")
    @classmethod
    def validate_confidence_score(cls, value: float) -> float:
        if value < 0 or value > 100:
            raise ValueError("confidence_score must be between 0 and 100")
        return value


class ValidationResult(BaseModel):
    is_grounded: bool
    hallucination_risks: list[str] = Field(default_factory=list)
    confidence_score: int
    deterministic_score: int
    validation_passed: bool
    reasoning: str = ""


class SkipSuggestions(BaseModel):
    skills_to_learn: list[str] = Field(default_factory=list)
    projects_to_add: list[str] = Field(default_factory=list)
    resume_improvements: list[str] = Field(default_factory=list)


class SkipAnalysis(BaseModel):
    reasoning: str
    missing_skills: list[str] = Field(default_factory=list)
    missing_experience: list[str] = Field(default_factory=list)
    suggestions: SkipSuggestions = Field(default_factory=SkipSuggestions)


class SubmissionResult(BaseModel):
    application_id: int
    status: ApplicationStatus
    attempts: int
    receipt: str | None = None
    error: str | None = None
    sandbox: bool = False


class DiscoveryWorkItem(BaseModel):
    run_id: int
    user_id: int


class ApplyWorkItem(BaseModel):
    run_id: int
    user_id: int
    job_id: int
    queue_record_id: int
    artifact_pack: ArtifactPack | None = None


class ModelResponse(BaseModel):
    content: str
    raw: dict[str, Any] = Field(default_factory=dict)
