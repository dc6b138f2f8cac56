from __future__ import annotations

import pytest

from autoapply.core.personalizer import Personalizer, count_confidence, select_resume_variant
from autoapply.db.models import JobPosting
from autoapply.errors import GenerationUnavailable, JobNotFound, NoJobTarget
from autoapply.types import ArtifactPack, RequirementEvidence, ResumeVariant, StudentProfile


class FakeJobStore:
    def __init__(self, *jobs: JobPosting):
        self.jobs = {job.id: job for job in jobs}

    def get_job(self, job_id: int) -> JobPosting | None:
        return self.jobs.get(job_id)


def _job(**overrides) -> JobPosting:
    values = {
        "id": 10,
        "company": "Globex",
        "title": "Data Engineer",
        "skills_json": ["Python", "Spark"],
        "requirements_json": ["Pipeline development", "SQL"],
        "questions_json": ["Why Globex?"],
    }
    values.update(overrides)
    return JobPosting(**values)


def _pack(variants: list[ResumeVariant] | None = None) -> ArtifactPack:
    variants = variants if variants is not None else [ResumeVariant(name="general", url="https://r/general.pdf")]
    return ArtifactPack(
        student_profile=StudentProfile(skills=["Python"]),
        bullet_bank=["Built a Python ETL job"],
        resume_variants=variants,
        base_resume_url=variants[0].url if variants else "",
    )


def test_personalize_maps_requirements_and_answers(make_generation) -> None:
    generation = make_generation(confidence="Medium")
    result = Personalizer(FakeJobStore(_job()), generation).personalize(_pack(), 10)

    assert result.job_id == 10
    assert result.resume_variant_used == "general"
    assert [item.requirement for item in result.requirement_evidence] == ["Pipeline development", "SQL"]
    assert result.confidence_levels.medium == 2
    assert result.requirement_evidence_map["SQL"] == "Built a Python ETL job"
    assert result.answered_questions[0].question == "Why Globex?"
    assert generation.kinds() == ["evidence_mapping", "screening_answers"]


def test_no_requirements_or_questions_skips_generation(make_generation) -> None:
    generation = make_generation()
    job = _job(requirements_json=[], questions_json=[" "])
    result = Personalizer(FakeJobStore(job), generation).personalize(_pack(), 10)

    assert result.requirement_evidence == []
    assert result.answered_questions == []
    assert result.confidence_levels.total == 0
    assert generation.calls == []


def test_missing_job_id_and_unknown_job(make_generation) -> None:
    personalizer = Personalizer(FakeJobStore(), make_generation())
    with pytest.raises(NoJobTarget):
        personalizer.personalize(_pack(), None)
    with pytest.raises(JobNotFound):
        personalizer.personalize(_pack(), 99)


def test_generation_failure_propagates(make_generation) -> None:
    personalizer = Personalizer(FakeJobStore(_job()), make_generation(fail_kinds=("evidence_mapping",)))
    with pytest.raises(GenerationUnavailable):
        personalizer.personalize(_pack(), 10)


def test_no_variants_falls_back_to_base(make_generation) -> None:
    result = Personalizer(FakeJobStore(_job(requirements_json=[], questions_json=[])), make_generation()).personalize(
        _pack([]), 10
    )
    assert result.resume_variant_used == "base"


def test_variant_selection_prefers_title_or_skill_match() -> None:
    variants = [
        ResumeVariant(name="frontend", url="https://r/fe.pdf"),
        ResumeVariant(name="data engineer", url="https://r/data.pdf"),
        ResumeVariant(name="spark-heavy", url="https://r/spark.pdf"),
    ]
    assert select_resume_variant(_job(), variants).name == "data engineer"
    assert select_resume_variant(_job(title="Analyst"), variants).name == "spark-heavy"
    assert select_resume_variant(_job(title="Analyst", skills_json=[]), variants).name == "frontend"
    assert select_resume_variant(_job(), []) is None


def test_count_confidence() -> None:
    levels = count_confidence(
        [
            RequirementEvidence(requirement="a", confidence="strong"),
            RequirementEvidence(requirement="b", confidence="WEAK"),
            RequirementEvidence(requirement="c", confidence="weak"),
        ]
    )
    assert (levels.strong, levels.medium, levels.weak) == (1, 0, 2)
