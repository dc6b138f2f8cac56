from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from autoapply.types import ApplyPolicy


class RunStartRequest(BaseModel):
    user_id: int


class RunStopRequest(BaseModel):
    user_id: int


class RunResponse(BaseModel):
    id: int
    user_id: int
    status: str
    applied_count_today: int
    skipped_count_today: int
    kill_switch: bool
    last_checkpoint: str
    error: str | None = None
    started_at: str | None = None
    finished_at: str | None = None


class TimelineEntry(BaseModel):
    stage: str
    message: str = ""
    timestamp: str | None = None


class ApplicationResponse(BaseModel):
    id: int
    run_id: int
    job_id: int
    user_id: int
    company: str
    resume_variant_used: str
    answered_questions: list[dict[str, Any]] = Field(default_factory=list)
    validation: dict[str, Any] = Field(default_factory=dict)
    status: str
    attempts: int
    receipt: str | None = None
    error: str | None = None
    timeline: list[TimelineEntry] = Field(default_factory=list)
    created_at: str | None = None


class SkippedJobResponse(BaseModel):
    id: int
    run_id: int
    job_id: int
    status: str
    skip_reason: str | None = None
    skip_detail: str = ""
    skip_reasoning: str | None = None
    has_analysis: bool = False
    missing_skills: list[str] = Field(default_factory=list)
    missing_experience: list[str] = Field(default_factory=list)
    suggestions: dict[str, Any] = Field(default_factory=dict)
    cooldown_until: str | None = None
    queued_at: str | None = None
    sent_at: str | None = None


class LogEventResponse(BaseModel):
    id: int
    run_id: int | None = None
    job_id: int | None = None
    user_id: int
    stage: str
    level: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = None


class LogStatsResponse(BaseModel):
    total: int
    hours: int
    by_stage: dict[str, int]
    by_level: dict[str, int]
    error_count: int
    warn_count: int
    recent_errors: list[dict[str, Any]]
    timeline: list[dict[str, Any]]


class PolicyResponse(BaseModel):
    user_id: int
    policy: ApplyPolicy
