from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from autoapply.core.artifacts import dedupe
from autoapply.core.matcher import fuzzy_contains, round_half_up
from autoapply.llm.router import GenerationClient
from autoapply.types import ArtifactPack, GroundingVerdict, PersonalizationResult, ValidationResult

logger = logging.getLogger(__name__)

TECH_KEYWORDS: tuple[str, ...] = (
    "react",
    "angular",
    "vue",
    "node",
    "python",
    "java",
    "javascript",
    "typescript",
    "golang",
    "rust",
    "c++",
    "c#",
    "aws",
    "azure",
    "gcp",
    "docker",
    "kubernetes",
    "terraform",
    "mongodb",
    "postgresql",
    "mysql",
    "redis",
    "kafka",
    "spark",
    "sql",
    "graphql",
    "django",
    "flask",
    "fastapi",
    "tensorflow",
    "pytorch",
    "machine learning",
    "ai",
    "api",
    "frontend",
    "backend",
    "fullstack",
)

UNVERIFIED_SKILL_PENALTY = 10
UNGROUNDED_EVIDENCE_PENALTY = 5
WEAK_MAJORITY_PENALTY = 15
WEAK_SHARE_LIMIT = 0.5

_KEYWORD_PATTERNS = {
    keyword: re.compile(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])") for keyword in TECH_KEYWORDS
}


def extract_keywords(texts: list[str]) -> list[str]:
    corpus = "\n".join(texts).lower()
    return [keyword for keyword, pattern in _KEYWORD_PATTERNS.items() if pattern.search(corpus)]


@dataclass(slots=True)
class DeterministicReport:
    score: int = 100
    risks: list[str] = field(default_factory=list)
    unverified_skills: list[str] = field(default_factory=list)
    ungrounded_evidence: list[str] = field(default_factory=list)
    weak_share: float = 0.0


def deterministic_check(personalization: PersonalizationResult, pack: ArtifactPack) -> DeterministicReport:
    report = DeterministicReport()
    evidence_texts = [item.evidence for item in personalization.requirement_evidence if item.evidence.strip()]
    answer_texts = [item.answer for item in personalization.answered_questions]

    for keyword in extract_keywords([*evidence_texts, *answer_texts]):
        if not fuzzy_contains(keyword, pack.student_profile.skills):
            report.unverified_skills.append(keyword)
            report.risks.append(f"Unverified skill claim: '{keyword}' is not in the profile skills")
            report.score -= UNVERIFIED_SKILL_PENALTY

    for evidence in evidence_texts:
        if not fuzzy_contains(evidence, pack.bullet_bank):
            report.ungrounded_evidence.append(evidence)
            report.risks.append(f"Ungrounded evidence: '{evidence[:120]}' is not in the bullet bank")
            report.score -= UNGROUNDED_EVIDENCE_PENALTY

    levels = personalization.confidence_levels
    if levels.total:
        report.weak_share = levels.weak / levels.total
        if report.weak_share > WEAK_SHARE_LIMIT:
            report.risks.append(f"Weak evidence for {levels.weak} of {levels.total} requirements")
            report.score -= WEAK_MAJORITY_PENALTY

    report.score = max(0, report.score)
    return report


class GroundingGuard:
    """Gate between personalization and submission.

    Content passes only when the semantic judge says it is grounded, the deterministic score
    clears ``min_score``, and neither layer reported a risk.
    """

    def __init__(self, generation: GenerationClient, *, min_score: int = 60):
        self.generation = generation
        self.min_score = min_score

    def validate(self, personalization: PersonalizationResult, pack: ArtifactPack) -> ValidationResult:
        report = deterministic_check(personalization, pack)
        verdict = self.generation.generate(
            "grounding_check",
            GroundingVerdict,
            {
                "profile_json": pack.student_profile,
                "bullet_bank": pack.bullet_bank,
                "evidence_json": [item.model_dump() for item in personalization.requirement_evidence],
                "answers_json": [item.model_dump() for item in personalization.answered_questions],
            },
        )

        risks = dedupe([*report.risks, *verdict.hallucination_risks])
        final_score = min(report.score, round_half_up(verdict.confidence_score))
        passed = verdict.is_grounded and report.score >= self.min_score and not risks
        reasoning = verdict.reasoning or ""
        if report.risks:
            reasoning = f"{reasoning} Deterministic checks flagged {len(report.risks)} issue(s).".strip()

        logger.info(
            "Grounding job_id=%s passed=%s deterministic=%s semantic=%s risks=%d",
            personalization.job_id,
            passed,
            report.score,
            verdict.confidence_score,
            len(risks),
        )
        return ValidationResult(
            is_grounded=verdict.is_grounded and not report.risks,
            hallucination_risks=risks,
            confidence_score=final_score,
            deterministic_score=report.score,
            validation_passed=passed,
            reasoning=reasoning,
        )
