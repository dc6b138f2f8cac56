from __future__ import annotations

import os
import tempfile
from pathlib import Path

_TEST_DIR = Path(tempfile.mkdtemp(prefix="autoapply-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR / 'test.db'}"
os.environ["DATA_DIR"] = str(_TEST_DIR)
os.environ["APP_ENV"] = "test"
os.environ["OPENAI_API_KEY"] = ""
os.environ["LOCAL_LLM_ENABLED"] = "false"

from typing import Any  # noqa: E402

import pytest  # noqa: E402

from autoapply.db.base import Base  # noqa: E402
from autoapply.db.repositories import Repository  # noqa: E402
from autoapply.db.session import SessionLocal, engine  # noqa: E402
from autoapply.errors import GenerationUnavailable, SubmissionError  # noqa: E402
from autoapply.types import (  # noqa: E402
    ApplyPolicy,
    EvidenceMapping,
    GroundingVerdict,
    RequirementEvidence,
    ScreeningAnswer,
    ScreeningAnswers,
    SkipAnalysis,
)

SAFE_ANSWER = "I am excited to contribute to the team and keep learning."

DEFAULT_RESUME: dict[str, Any] = {
    "template_name": "backend",
    "version": "v1",
    "file_url": "https://files.example.com/resume-backend.pdf",
    "personal_info_json": {"github": "https://github.com/student", "linkedin": "https://linkedin.com/in/student"},
    "education_json": [{"institution": "State University", "degree": "BS", "major": "Computer Science"}],
    "work_experience_json": [
        {
            "company": "Campus IT",
            "position": "Intern",
            "description": "Supported student services",
            "achievements": ["Cut report generation time by 40% by rewriting SQL queries"],
            "responsibilities": ["Built REST endpoints in Python"],
        }
    ],
    "projects_json": [
        {"name": "Planner", "description": "Course planner", "url": "https://planner.example.com", "highlights": []}
    ],
    "skills_json": [{"category": "Languages", "skills": ["Python", "SQL"]}],
}


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


class FakeGenerationClient:
    """Canned structured outputs per generation kind."""

    def __init__(
        self,
        *,
        grounded: bool = True,
        confidence_score: float = 90.0,
        risks: list[str] | None = None,
        evidence: str | None = None,
        confidence: str = "strong",
        answer: str = SAFE_ANSWER,
        fail_kinds: tuple[str, ...] = (),
    ):
        self.grounded = grounded
        self.confidence_score = confidence_score
        self.risks = risks or []
        self.evidence = evidence
        self.confidence = confidence
        self.answer = answer
        self.fail_kinds = set(fail_kinds)
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.calls]

    def generate(self, kind, schema, context):
        self.calls.append((kind, context))
        if kind in self.fail_kinds:
            raise GenerationUnavailable(kind, "fake outage")

        if kind == "evidence_mapping":
            bullets = list(context.get("bullet_bank") or [])
            evidence = self.evidence if self.evidence is not None else (bullets[0] if bullets else "")
            result = EvidenceMapping(
                requirements=[
                    RequirementEvidence(requirement=item, evidence=evidence, confidence=self.confidence)
                    for item in context["requirements"]
                ]
            )
        elif kind == "screening_answers":
            result = ScreeningAnswers(
                answers=[ScreeningAnswer(question=item, answer=self.answer) for item in context["questions"]]
            )
        elif kind == "grounding_check":
            result = GroundingVerdict(
                is_grounded=self.grounded,
                hallucination_risks=list(self.risks),
                confidence_score=self.confidence_score,
                reasoning="Checked against profile",
            )
        elif kind == "skip_explanation":
            result = SkipAnalysis(
                reasoning=f"Skipped because {context['skip_reason']}",
                missing_skills=["Kubernetes"],
                missing_experience=[],
            )
        else:
            raise GenerationUnavailable(kind, "unknown kind")
        assert isinstance(result, schema)
        return result


class FakeSubmissionClient:
    def __init__(self, *, failures: int = 0, receipt: str = "RCPT-1"):
        self.failures = failures
        self.receipt = receipt
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def submit(self, apply_url: str, payload: dict[str, Any]) -> str:
        self.calls.append((apply_url, payload))
        if len(self.calls) <= self.failures:
            raise SubmissionError(f"upstream rejected attempt {len(self.calls)}", status_code=503)
        return self.receipt


@pytest.fixture
def fake_generation() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture
def fake_submission() -> FakeSubmissionClient:
    return FakeSubmissionClient()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def sleeper(sleeps: list[float]):
    return sleeps.append


@pytest.fixture
def make_user():
    def _make_user(
        *,
        email: str = "student@example.com",
        policy: ApplyPolicy | None = None,
        resumes: list[dict[str, Any]] | None = None,
        is_active: bool = True,
    ) -> int:
        with SessionLocal() as session:
            repo = Repository(session)
            user = repo.create_user(
                name="Test Student",
                email=email,
                apply_policy=policy or ApplyPolicy(min_match_score=40),
                is_active=is_active,
            )
            for position, resume in enumerate(resumes if resumes is not None else [DEFAULT_RESUME]):
                repo.add_resume(user.id, {"sort_order": position, **resume})
            return user.id

    return _make_user


@pytest.fixture
def make_job():
    counter = {"n": 0}

    def _make_job(**overrides: Any) -> int:
        counter["n"] += 1
        values: dict[str, Any] = {
            "external_id": f"ext-{counter['n']}",
            "source": "board",
            "company": f"Company {counter['n']}",
            "title": "Software Engineer",
            "location": "Remote",
            "is_remote": True,
            "description": f"Posting {counter['n']}",
            "requirements_json": [],
            "skills_json": ["Python", "SQL"],
            "questions_json": [],
            "apply_url": f"https://jobs.example.com/apply/{counter['n']}",
        }
        values.update(overrides)
        with SessionLocal() as session:
            return Repository(session).create_job_posting(values).id

    return _make_job


@pytest.fixture
def make_generation():
    return FakeGenerationClient


@pytest.fixture
def make_submission():
    return FakeSubmissionClient
