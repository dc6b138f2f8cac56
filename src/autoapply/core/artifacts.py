from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol

from autoapply.db.models import Resume
from autoapply.errors import NoResumeFile, ProfileIncomplete
from autoapply.types import ArtifactPack, ResumeVariant, StudentProfile

logger = logging.getLogger(__name__)

PERSONAL_LINK_KEYS = ("linkedin", "github", "portfolio", "website")


class ArtifactStore(Protocol):
    def get_user_resumes(self, user_id: int) -> list[Resume]: ...


def dedupe(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        value = (item or "").strip()
        key = value.lower()
        if not value or key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


def format_education(entry: dict[str, Any]) -> str:
    degree = (entry.get("degree") or "").strip()
    major = (entry.get("major") or "").strip()
    institution = (entry.get("institution") or "").strip()

    text = degree or "Studies"
    if major:
        text = f"{text} in {major}"
    if institution:
        text = f"{text} at {institution}"
    gpa = entry.get("gpa")
    if gpa not in (None, ""):
        text = f"{text} (GPA: {gpa})"
    return text


def format_experience(entry: dict[str, Any]) -> str:
    position = (entry.get("position") or "").strip()
    company = (entry.get("company") or "").strip()
    description = (entry.get("description") or "").strip()
    text = f"{position} at {company}" if position and company else position or company
    return f"{text}: {description}" if description else text


def format_project(entry: dict[str, Any]) -> str:
    name = (entry.get("name") or "").strip()
    description = (entry.get("description") or "").strip()
    return f"{name}: {description}" if description else name


class ArtifactLoader:
    """Builds the artifact pack for a user from stored resume records. Read-only."""

    def __init__(self, store: ArtifactStore):
        self.store = store

    def load(self, user_id: int) -> ArtifactPack:
        resumes = self.store.get_user_resumes(user_id)
        if not resumes:
            raise ProfileIncomplete(f"user {user_id} has no resume on file")

        primary = resumes[0]
        profile = build_student_profile(primary)
        if not (profile.skills or profile.education or profile.experience):
            raise ProfileIncomplete(
                f"resume {primary.id} for user {user_id} has no skills, education, or experience"
            )

        variants = resume_variants(resumes)
        if not variants:
            raise NoResumeFile(f"no resume file found for user {user_id}")

        project_links: list[str] = []
        for project in primary.projects_json or []:
            project_links.extend([project.get("url") or "", project.get("github") or ""])

        pack = ArtifactPack(
            student_profile=profile,
            bullet_bank=build_bullet_bank(primary),
            proof_links=dedupe([*profile.links, *project_links]),
            resume_variants=variants,
            base_resume_url=variants[0].url,
        )
        logger.info(
            "Loaded artifacts user_id=%s skills=%d bullets=%d variants=%d",
            user_id,
            len(profile.skills),
            len(pack.bullet_bank),
            len(variants),
        )
        return pack


def build_student_profile(resume: Resume) -> StudentProfile:
    skills: list[str] = []
    for group in resume.skills_json or []:
        skills.extend(group.get("skills") or [])

    personal = resume.personal_info_json or {}
    links = [personal.get(key) or "" for key in PERSONAL_LINK_KEYS]
    links.extend(item.get("url") or "" for item in personal.get("social_links") or [])

    return StudentProfile(
        education=dedupe(format_education(entry) for entry in resume.education_json or []),
        skills=dedupe(skills),
        projects=dedupe(format_project(entry) for entry in resume.projects_json or []),
        experience=dedupe(format_experience(entry) for entry in resume.work_experience_json or []),
        links=dedupe(links),
    )


def build_bullet_bank(resume: Resume) -> list[str]:
    bullets: list[str] = []
    for entry in resume.work_experience_json or []:
        bullets.extend(entry.get("achievements") or [])
        bullets.extend(entry.get("responsibilities") or [])
    for entry in resume.projects_json or []:
        bullets.extend(entry.get("achievements") or [])
        bullets.extend(entry.get("highlights") or [])
    return dedupe(bullets)


def resume_variants(resumes: list[Resume]) -> list[ResumeVariant]:
    variants: list[ResumeVariant] = []
    for index, resume in enumerate(resumes):
        url = (resume.file_url or "").strip()
        if not url:
            continue
        name = (resume.template_name or "").strip() or (resume.version or "").strip() or f"variant-{index + 1}"
        variants.append(ResumeVariant(name=name, url=url))
    return variants
