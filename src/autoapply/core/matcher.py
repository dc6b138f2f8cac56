from __future__ import annotations

import math
from collections.abc import Iterable

from autoapply.db.models import JobPosting
from autoapply.db.repositories import as_utc
from autoapply.types import ApplyPolicy, RankedJob, StudentProfile

# Weights in tenths: 0.5 skill, 0.3 experience, 0.2 constraints.
SKILL_WEIGHT = 5
EXPERIENCE_WEIGHT = 3
CONSTRAINT_WEIGHT = 2
NEUTRAL_SKILL_SCORE = 50


def round_half_up(value: float) -> int:
    """Round halves up, so 74.5 scores 75."""
    return int(math.floor(value + 0.5))


def fuzzy_contains(needle: str, haystack: Iterable[str]) -> bool:
    target = needle.strip().lower()
    if not target:
        return False
    for candidate in haystack:
        value = candidate.strip().lower()
        if value and (value in target or target in value):
            return True
    return False


def skill_overlap_score(required_skills: list[str], profile_skills: list[str]) -> tuple[int, list[str]]:
    required = [skill for skill in required_skills if skill and skill.strip()]
    if not required:
        return NEUTRAL_SKILL_SCORE, []
    matched = [skill for skill in required if fuzzy_contains(skill, profile_skills)]
    return round_half_up(100 * len(matched) / len(required)), matched


def experience_fit_score(profile: StudentProfile) -> int:
    education_points = min(40, 15 * len(profile.education))
    experience_points = min(60, 20 * len(profile.experience))
    return min(100, education_points + experience_points)


def constraint_fit_score(job: JobPosting, policy: ApplyPolicy) -> tuple[int, list[str]]:
    score = 100
    notes: list[str] = []
    if policy.remote_only and not job.is_remote:
        score -= 50
        notes.append("not remote")
    if policy.allowed_locations and not job.is_remote:
        location = (job.location or "").lower()
        if not any(allowed.strip().lower() in location for allowed in policy.allowed_locations if allowed.strip()):
            score -= 30
            notes.append("location outside allow-list")
    if job.is_remote:
        notes.append("remote")
    return max(0, score), notes


def combine_scores(skill: int, experience: int, constraint: int) -> int:
    raw = (SKILL_WEIGHT * skill + EXPERIENCE_WEIGHT * experience + CONSTRAINT_WEIGHT * constraint) / 10
    return max(0, min(100, round_half_up(raw)))


class JobMatcher:
    """Scores and ranks postings against a profile. Pure and deterministic."""

    def rank(
        self,
        *,
        profile: StudentProfile,
        jobs: list[JobPosting],
        policy: ApplyPolicy,
        applied_job_ids: set[int] | None = None,
    ) -> list[RankedJob]:
        already_applied = applied_job_ids or set()
        ranked: list[RankedJob] = []
        posted: dict[int, float] = {}
        for job in jobs:
            if job.id in already_applied:
                continue
            ranked.append(self.score(profile=profile, job=job, policy=policy))
            posted_at = as_utc(job.posted_at or job.created_at)
            posted[job.id] = posted_at.timestamp() if posted_at else 0.0

        ranked.sort(key=lambda item: (-item.match_score, -posted[item.job_id], -item.job_id))
        return ranked

    def score(self, *, profile: StudentProfile, job: JobPosting, policy: ApplyPolicy) -> RankedJob:
        skill, matched = skill_overlap_score(list(job.skills_json or []), profile.skills)
        experience = experience_fit_score(profile)
        constraint, notes = constraint_fit_score(job, policy)
        match_score = combine_scores(skill, experience, constraint)

        if matched:
            notes.insert(0, f"matched {len(matched)}/{len(job.skills_json or [])} skills: {', '.join(matched)}")
        reason = f"Skills: {skill}%, Experience: {experience}%, Constraints: {constraint}%"
        if notes:
            reason = f"{reason} ({'; '.join(notes)})"

        return RankedJob(
            job_id=job.id,
            company=job.company,
            title=job.title,
            posted_at=job.posted_at,
            match_score=match_score,
            skill_overlap_score=skill,
            experience_fit_score=experience,
            constraint_fit_score=constraint,
            ranking_reason=reason,
        )
