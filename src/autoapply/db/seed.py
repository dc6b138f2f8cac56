from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from autoapply.db.models import JobPosting
from autoapply.db.repositories import Repository, job_content_hash
from autoapply.types import ApplyPolicy

SANDBOX_APPLY_URL = "https://sandbox.autojob.com/apply"

SANDBOX_JOBS: list[dict[str, Any]] = [
    {
        "external_id": "sbx-backend-001",
        "company": "Lumen Labs",
        "title": "Backend Engineer Intern",
        "location": "Remote",
        "is_remote": True,
        "description": "Build internal APIs and data services.",
        "requirements": ["Experience building REST APIs", "Comfort with SQL databases"],
        "skills": ["Python", "SQL", "FastAPI"],
        "questions": ["Why are you interested in this role?"],
        "employment_type": "internship",
    },
    {
        "external_id": "sbx-frontend-002",
        "company": "Harbor Analytics",
        "title": "Frontend Developer",
        "location": "Boston, MA",
        "is_remote": False,
        "description": "Own dashboard features end to end.",
        "requirements": ["Production React experience", "Strong TypeScript"],
        "skills": ["React", "TypeScript", "CSS"],
        "questions": [],
        "employment_type": "full_time",
    },
    {
        "external_id": "sbx-data-003",
        "company": "Northwind Health",
        "title": "Data Engineer",
        "location": "New York, NY",
        "is_remote": False,
        "description": "Maintain batch pipelines for clinical data.",
        "requirements": ["Pipeline development in Python", "Experience with Spark"],
        "skills": ["Python", "Spark", "Airflow"],
        "questions": ["Describe a data pipeline you built."],
        "employment_type": "full_time",
    },
    {
        "external_id": "sbx-platform-004",
        "company": "Acme Corp",
        "title": "Platform Engineer",
        "location": "Remote",
        "is_remote": True,
        "description": "Operate container infrastructure.",
        "requirements": ["Kubernetes operations"],
        "skills": ["Kubernetes", "Docker", "Go"],
        "questions": [],
        "employment_type": "full_time",
    },
]

DEMO_RESUME: dict[str, Any] = {
    "template_name": "backend",
    "version": "v1",
    "file_url": "https://files.example.com/resumes/demo-backend.pdf",
    "personal_info_json": {
        "linkedin": "https://linkedin.com/in/demo-student",
        "github": "https://github.com/demo-student",
        "social_links": [],
    },
    "education_json": [
        {"institution": "State University", "degree": "BS", "major": "Computer Science", "gpa": 3.7},
    ],
    "work_experience_json": [
        {
            "company": "Campus IT",
            "position": "Software Engineering Intern",
            "description": "Maintained student-facing services",
            "responsibilities": ["Built REST APIs in Python with FastAPI"],
            "achievements": ["Cut report generation time by 40% by rewriting SQL queries"],
        }
    ],
    "projects_json": [
        {
            "name": "Course Planner",
            "description": "Schedule builder for students",
            "github": "https://github.com/demo-student/course-planner",
            "highlights": ["Designed a PostgreSQL schema for 20k course sections"],
        }
    ],
    "skills_json": [
        {"category": "Languages", "skills": ["Python", "SQL"]},
        {"category": "Frameworks", "skills": ["FastAPI"]},
    ],
}


def seed_sandbox_jobs(session: Session) -> int:
    repo = Repository(session)
    inserted = 0
    for job in SANDBOX_JOBS:
        apply_url = f"{SANDBOX_APPLY_URL}/{job['external_id']}"
        content_hash = job_content_hash(
            company=str(job["company"]),
            title=str(job["title"]),
            location=str(job["location"]),
            description=str(job["description"]),
            apply_url=apply_url,
        )
        existing = session.scalar(select(JobPosting).where(JobPosting.content_hash == content_hash))
        if existing:
            continue
        repo.create_job_posting(
            {
                "external_id": job["external_id"],
                "source": "sandbox",
                "company": job["company"],
                "title": job["title"],
                "location": job["location"],
                "is_remote": job["is_remote"],
                "description": job["description"],
                "requirements_json": list(job["requirements"]),
                "skills_json": list(job["skills"]),
                "questions_json": list(job["questions"]),
                "employment_type": job["employment_type"],
                "apply_url": apply_url,
                "content_hash": content_hash,
            }
        )
        inserted += 1
    return inserted


def seed_demo_user(session: Session, *, email: str = "demo@autoapply.local") -> int:
    repo = Repository(session)
    existing = repo.get_user_by_email(email)
    if existing:
        return existing.id

    user = repo.create_user(
        name="Demo Student",
        email=email,
        apply_policy=ApplyPolicy(min_match_score=50, blocked_companies=["Acme"]),
    )
    repo.add_resume(user.id, dict(DEMO_RESUME))
    return user.id
