from __future__ import annotations

from datetime import UTC, datetime

from autoapply.core.matcher import JobMatcher, combine_scores, constraint_fit_score, skill_overlap_score
from autoapply.core.policy import PolicyGate
from autoapply.db.models import JobPosting
from autoapply.types import ApplyPolicy, StudentProfile


def _job(job_id: int, *, skills: list[str], remote: bool = True, location: str = "Remote", day: int = 1) -> JobPosting:
    return JobPosting(
        id=job_id,
        company=f"Company {job_id}",
        title="Engineer",
        location=location,
        is_remote=remote,
        skills_json=skills,
        posted_at=datetime(2026, 1, day, tzinfo=UTC),
    )


def test_full_skill_match_without_experience_scores_seventy() -> None:
    profile = StudentProfile(skills=["Python", "SQL"])
    ranked = JobMatcher().rank(
        profile=profile,
        jobs=[_job(1, skills=["Python", "SQL"])],
        policy=ApplyPolicy(min_match_score=40),
    )
    assert len(ranked) == 1
    item = ranked[0]
    assert item.skill_overlap_score == 100
    assert item.experience_fit_score == 0
    assert item.constraint_fit_score == 100
    assert item.match_score == 70
    assert item.ranking_reason.startswith("Skills: 100%, Experience: 0%, Constraints: 100%")


def test_job_without_skills_is_neutral() -> None:
    score, matched = skill_overlap_score([], ["Python"])
    assert score == 50
    assert matched == []


def test_skill_overlap_is_case_insensitive_substring() -> None:
    score, matched = skill_overlap_score(["python", "React", "Go"], ["Python 3", "React Native"])
    assert matched == ["python", "React"]
    assert score == 67


def test_constraint_penalties() -> None:
    onsite = _job(1, skills=[], remote=False, location="Austin, TX")
    assert constraint_fit_score(onsite, ApplyPolicy(remote_only=True))[0] == 50
    assert constraint_fit_score(onsite, ApplyPolicy(allowed_locations=["Boston"]))[0] == 70
    assert constraint_fit_score(onsite, ApplyPolicy(remote_only=True, allowed_locations=["Boston"]))[0] == 20
    assert constraint_fit_score(onsite, ApplyPolicy(allowed_locations=["austin"]))[0] == 100


def test_combined_score_is_clamped() -> None:
    assert combine_scores(100, 100, 100) == 100
    assert combine_scores(0, 0, 0) == 0


def test_rank_is_deterministic_and_breaks_ties_by_recency() -> None:
    profile = StudentProfile(skills=["Python"], education=["BS"], experience=["Intern"])
    jobs = [
        _job(1, skills=["Python"], day=1),
        _job(2, skills=["Python"], day=5),
        _job(3, skills=["Rust"], day=9),
    ]
    matcher = JobMatcher()
    first = matcher.rank(profile=profile, jobs=jobs, policy=ApplyPolicy())
    second = matcher.rank(profile=profile, jobs=list(reversed(jobs)), policy=ApplyPolicy())

    assert [item.job_id for item in first] == [2, 1, 3]
    assert [item.model_dump() for item in first] == [item.model_dump() for item in second]
    assert all(0 <= item.match_score <= 100 for item in first)


def test_rank_excludes_already_applied_jobs() -> None:
    profile = StudentProfile(skills=["Python"])
    ranked = JobMatcher().rank(
        profile=profile,
        jobs=[_job(1, skills=["Python"]), _job(2, skills=["Python"])],
        policy=ApplyPolicy(),
        applied_job_ids={1},
    )
    assert [item.job_id for item in ranked] == [2]


def test_half_scores_round_up() -> None:
    # one education entry: 0.3 * 15 = 4.5 lands every combined score on a half
    assert combine_scores(100, 15, 100) == 75
    assert combine_scores(100, 35, 100) == 81
    score, _ = skill_overlap_score(["Python", "A", "B", "C", "D", "E", "F", "G"], ["Python"])
    assert score == 13


def test_rounded_up_score_clears_the_policy_floor() -> None:
    profile = StudentProfile(skills=["Python", "SQL"], education=["BS Computer Science"])
    ranked = JobMatcher().rank(
        profile=profile,
        jobs=[_job(1, skills=["Python", "SQL"])],
        policy=ApplyPolicy(min_match_score=75),
    )
    assert ranked[0].match_score == 75

    decision = PolicyGate(policy=ApplyPolicy(min_match_score=75)).evaluate(ranked)
    assert decision.allowed_job_ids == [1]
    assert decision.skipped == []
