from __future__ import annotations

import logging
from typing import Protocol

from autoapply.db.models import JobPosting
from autoapply.errors import JobNotFound, NoJobTarget
from autoapply.llm.router import GenerationClient
from autoapply.types import (
    ArtifactPack,
    ConfidenceLevels,
    EvidenceMapping,
    PersonalizationResult,
    RequirementEvidence,
    ResumeVariant,
    ScreeningAnswer,
    ScreeningAnswers,
)

logger = logging.getLogger(__name__)

BASE_VARIANT = "base"


class JobStore(Protocol):
    def get_job(self, job_id: int) -> JobPosting | None: ...


def select_resume_variant(job: JobPosting, variants: list[ResumeVariant]) -> ResumeVariant | None:
    if not variants:
        return None
    if len(variants) == 1:
        return variants[0]

    title = (job.title or "").lower()
    skills = [skill.lower() for skill in job.skills_json or [] if skill]
    for variant in variants:
        name = variant.name.lower()
        if name in title or any(skill in name for skill in skills):
            return variant
    return variants[0]


def count_confidence(items: list[RequirementEvidence]) -> ConfidenceLevels:
    levels = ConfidenceLevels()
    for item in items:
        setattr(levels, item.confidence, getattr(levels, item.confidence) + 1)
    return levels


class Personalizer:
    def __init__(self, jobs: JobStore, generation: GenerationClient):
        self.jobs = jobs
        self.generation = generation

    def personalize(self, pack: ArtifactPack, job_id: int | None) -> PersonalizationResult:
        if job_id is None:
            raise NoJobTarget("no job id in pipeline context")
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFound(f"job {job_id} not found")

        variant = select_resume_variant(job, pack.resume_variants)
        evidence = self._map_requirements(job, pack)
        answers = self._answer_questions(job, pack)

        result = PersonalizationResult(
            job_id=job.id,
            resume_variant_used=variant.name if variant else BASE_VARIANT,
            resume_url=variant.url if variant else pack.base_resume_url,
            requirement_evidence=evidence,
            confidence_levels=count_confidence(evidence),
            answered_questions=answers,
        )
        logger.info(
            "Personalized job_id=%s variant=%s requirements=%d answers=%d",
            job.id,
            result.resume_variant_used,
            len(evidence),
            len(answers),
        )
        return result

    def _map_requirements(self, job: JobPosting, pack: ArtifactPack) -> list[RequirementEvidence]:
        requirements = [item for item in job.requirements_json or [] if item and item.strip()]
        if not requirements:
            return []

        profile = pack.student_profile
        mapping = self.generation.generate(
            "evidence_mapping",
            EvidenceMapping,
            {
                "title": job.title,
                "company": job.company,
                "requirements": requirements,
                "skills": ", ".join(profile.skills) or "(none)",
                "experience": profile.experience,
                "projects": profile.projects,
                "bullet_bank": pack.bullet_bank,
            },
        )
        return mapping.requirements

    def _answer_questions(self, job: JobPosting, pack: ArtifactPack) -> list[ScreeningAnswer]:
        questions = [item for item in job.questions_json or [] if item and item.strip()]
        if not questions:
            return []

        profile = pack.student_profile
        result = self.generation.generate(
            "screening_answers",
            ScreeningAnswers,
            {
                "title": job.title,
                "company": job.company,
                "questions": questions,
                "skills": ", ".join(profile.skills) or "(none)",
                "education": profile.education,
                "experience": profile.experience,
                "projects": profile.projects,
            },
        )
        return result.answers
