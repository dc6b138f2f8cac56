from __future__ import annotations

import pytest

from autoapply.config import Settings
from autoapply.errors import GenerationUnavailable
from autoapply.llm.prompts import EVIDENCE_MAPPING_PROMPT
from autoapply.llm.router import LLMGenerationClient, render_value
from autoapply.types import GroundingVerdict, SkipAnalysis, StudentProfile


class StubProvider:
    def __init__(self, name: str, *, payload: dict | None = None, error: Exception | None = None):
        self.name = name
        self.payload = payload
        self.error = error
        self.calls: list[dict] = []

    def complete_json(self, *, model: str, prompt: str, instructions: str = "") -> dict:
        self.calls.append({"model": model, "prompt": prompt, "instructions": instructions})
        if self.error is not None:
            raise self.error
        return dict(self.payload or {})


class StubPool:
    def __init__(self, **providers: StubProvider):
        self.providers = providers

    def get(self, name: str) -> StubProvider | None:
        return self.providers.get(name)


GROUNDING_CONTEXT = {
    "profile_json": StudentProfile(skills=["Python"]),
    "bullet_bank": ["Built an API"],
    "evidence_json": [],
    "answers_json": [],
}


def test_primary_provider_result_is_validated() -> None:
    primary = StubProvider("openai", payload={"is_grounded": True, "confidence_score": 81, "hallucination_risks": []})
    client = LLMGenerationClient(Settings(llm_router_grounding_provider="openai"), pool=StubPool(openai=primary))

    verdict = client.generate("grounding_check", GroundingVerdict, GROUNDING_CONTEXT)

    assert verdict.is_grounded is True
    assert verdict.confidence_score == 81
    assert '"Python"' in primary.calls[0]["prompt"]
    assert "- Built an API" in primary.calls[0]["prompt"]
    assert primary.calls[0]["model"] == Settings().openai_model_grounding


def test_falls_back_when_primary_returns_off_schema_payload() -> None:
    primary = StubProvider("openai", payload={"is_grounded": "maybe"})
    fallback = StubProvider("local", payload={"is_grounded": False, "confidence_score": 20})
    client = LLMGenerationClient(Settings(), pool=StubPool(openai=primary, local=fallback))

    verdict = client.generate("grounding_check", GroundingVerdict, GROUNDING_CONTEXT)

    assert verdict.is_grounded is False
    assert len(primary.calls) == 1
    assert fallback.calls[0]["model"] == Settings().local_llm_model


def test_all_providers_failing_raises_generation_unavailable() -> None:
    client = LLMGenerationClient(
        Settings(llm_router_explain_provider="local"),
        pool=StubPool(local=StubProvider("local", error=ConnectionError("refused"))),
    )
    context = {
        "title": "Engineer",
        "company": "Globex",
        "location": "Remote",
        "job_skills": "Go",
        "requirements": "(none)",
        "skip_reason": "LOW_MATCH_SCORE",
        "match_score": "30%",
        "skills": "Python",
        "experience": [],
        "projects": [],
    }
    with pytest.raises(GenerationUnavailable) as excinfo:
        client.generate("skip_explanation", SkipAnalysis, context)
    assert excinfo.value.kind == "skip_explanation"
    assert "refused" in str(excinfo.value)


def test_no_enabled_provider_raises() -> None:
    client = LLMGenerationClient(Settings(), pool=StubPool())
    with pytest.raises(GenerationUnavailable, match="no LLM provider"):
        client.generate("grounding_check", GroundingVerdict, GROUNDING_CONTEXT)


def test_unknown_kind_raises() -> None:
    client = LLMGenerationClient(Settings(), pool=StubPool())
    with pytest.raises(GenerationUnavailable):
        client.generate("cover_letter", GroundingVerdict, {})


def test_render_value() -> None:
    assert render_value(["a", " ", "b"]) == "- a\n- b"
    assert render_value([]) == "(none)"
    assert render_value(None) == "(none)"
    assert render_value({"k": 1}) == '{\n  "k": 1\n}'
    assert render_value(3) == "3"


def test_render_value_emits_json_for_lists_of_records() -> None:
    rendered = render_value([{"requirement": "SQL", "evidence": "Wrote SQL reports", "confidence": "strong"}])
    assert rendered.startswith("[")
    assert '"requirement": "SQL"' in rendered
    assert "{'requirement'" not in rendered


def test_grounding_prompt_receives_evidence_as_json() -> None:
    primary = StubProvider("openai", payload={"is_grounded": True, "confidence_score": 90, "hallucination_risks": []})
    client = LLMGenerationClient(Settings(), pool=StubPool(openai=primary))
    client.generate(
        "grounding_check",
        GroundingVerdict,
        {
            "profile_json": StudentProfile(skills=["SQL"]),
            "bullet_bank": ["Wrote SQL reports"],
            "evidence_json": [{"requirement": "SQL", "evidence": "Wrote SQL reports", "confidence": "strong"}],
            "answers_json": [],
        },
    )
    prompt = primary.calls[0]["prompt"]
    assert '"evidence": "Wrote SQL reports"' in prompt
    assert "{'requirement'" not in prompt


def test_evidence_prompt_requires_verbatim_bullet_quotes() -> None:
    assert "copied verbatim from the candidate bullet bank" in EVIDENCE_MAPPING_PROMPT
    assert "profile entry" not in EVIDENCE_MAPPING_PROMPT
