from __future__ import annotations

from dataclasses import dataclass, field

from autoapply.types import ApplyPolicy, PolicyDecision, RankedJob, SkippedJob

POLICIES_CHECKED = [
    "min_match_score",
    "blocked_companies",
    "blocked_roles",
    "company_cooldown",
    "max_applications_per_day",
]


def _first_substring(value: str, needles: list[str]) -> str | None:
    lowered = value.lower()
    for needle in needles:
        candidate = needle.strip()
        if candidate and candidate.lower() in lowered:
            return candidate
    return None


@dataclass(slots=True)
class PolicyGate:
    policy: ApplyPolicy
    applied_count_today: int = 0
    cooldown_companies: set[str] = field(default_factory=set)

    def evaluate(self, ranked_jobs: list[RankedJob]) -> PolicyDecision:
        cooldown = {company.strip().lower() for company in self.cooldown_companies if company.strip()}
        allowed: list[int] = []
        skipped: list[SkippedJob] = []

        for job in ranked_jobs:
            skip = self._check(job, cooldown=cooldown, allowed_so_far=len(allowed))
            if skip is None:
                allowed.append(job.job_id)
            else:
                skipped.append(skip)

        return PolicyDecision(allowed_job_ids=allowed, skipped=skipped, policies_checked=list(POLICIES_CHECKED))

    def _check(self, job: RankedJob, *, cooldown: set[str], allowed_so_far: int) -> SkippedJob | None:
        policy = self.policy
        if job.match_score < policy.min_match_score:
            return SkippedJob(
                job_id=job.job_id,
                reason="LOW_MATCH_SCORE",
                detail=f"LOW_MATCH_SCORE ({job.match_score}% < {policy.min_match_score}%)",
            )

        blocked_company = _first_substring(job.company, policy.blocked_companies)
        if blocked_company:
            return SkippedJob(job_id=job.job_id, reason="POLICY_BLOCK", detail=f"BLOCKED_COMPANY ({blocked_company})")

        blocked_role = _first_substring(job.title, policy.blocked_roles)
        if blocked_role:
            return SkippedJob(job_id=job.job_id, reason="POLICY_BLOCK", detail=f"BLOCKED_ROLE ({blocked_role})")

        if job.company.strip().lower() in cooldown:
            return SkippedJob(job_id=job.job_id, reason="COMPANY_COOLDOWN", detail=f"COMPANY_COOLDOWN ({job.company})")

        if self.applied_count_today + allowed_so_far >= policy.max_applications_per_day:
            return SkippedJob(
                job_id=job.job_id,
                reason="POLICY_BLOCK",
                detail=f"MAX_APPLICATIONS_REACHED ({policy.max_applications_per_day}/day): max applications reached",
            )
        return None
