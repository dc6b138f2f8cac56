from __future__ import annotations

import json
import logging
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from autoapply.config import Settings, get_settings
from autoapply.errors import GenerationUnavailable
from autoapply.llm.prompts import GROUNDED_ONLY_INSTRUCTIONS, PROMPTS_BY_KIND
from autoapply.llm.providers import LLMProvider, ProviderPool

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class GenerationClient(Protocol):
    def generate(self, kind: str, schema: type[SchemaT], context: dict[str, Any]) -> SchemaT: ...


class LLMGenerationClient:
    """Structured generation over the OpenAI-compatible provider pool.

    Every failure mode (no enabled provider, transport error, unparsable or off-schema output)
    surfaces as GenerationUnavailable once all routed providers have been tried.
    """

    def __init__(self, settings: Settings | None = None, *, pool: ProviderPool | None = None):
        self.settings = settings or get_settings()
        self.pool = pool or ProviderPool(self.settings)

    def generate(self, kind: str, schema: type[SchemaT], context: dict[str, Any]) -> SchemaT:
        template = PROMPTS_BY_KIND.get(kind)
        if template is None:
            raise GenerationUnavailable(kind, "no prompt registered")

        prompt = template.format(**{key: render_value(value) for key, value in context.items()})
        providers = self._providers_for(kind)
        if not providers:
            raise GenerationUnavailable(kind, "no LLM provider is enabled")

        last_error = "no attempt made"
        for provider in providers:
            try:
                data = provider.complete_json(
                    model=self._model_for(kind, provider),
                    prompt=prompt,
                    instructions=GROUNDED_ONLY_INSTRUCTIONS,
                )
                return schema.model_validate(data)
            except ValidationError as exc:
                last_error = f"invalid {schema.__name__} payload from {provider.name}: {exc.error_count()} errors"
                logger.warning("LLM output failed validation kind=%s provider=%s", kind, provider.name)
            except Exception as exc:
                last_error = f"{provider.name}: {exc}"
                logger.warning("LLM call failed kind=%s provider=%s error=%s", kind, provider.name, exc)
        raise GenerationUnavailable(kind, last_error)

    def _providers_for(self, kind: str) -> list[LLMProvider]:
        primary_name = {
            "evidence_mapping": self.settings.llm_router_evidence_provider,
            "screening_answers": self.settings.llm_router_answers_provider,
            "grounding_check": self.settings.llm_router_grounding_provider,
            "skip_explanation": self.settings.llm_router_explain_provider,
        }.get(kind, self.settings.llm_router_default)
        fallback_name = "openai" if primary_name == "local" else "local"

        providers = []
        for name in (primary_name, fallback_name):
            provider = self.pool.get(name)
            if provider is not None:
                providers.append(provider)
        return providers

    def _model_for(self, kind: str, provider: LLMProvider) -> str:
        if provider.name == "local":
            return self.settings.local_llm_model
        return {
            "evidence_mapping": self.settings.openai_model_personalize,
            "screening_answers": self.settings.openai_model_personalize,
            "grounding_check": self.settings.openai_model_grounding,
            "skip_explanation": self.settings.openai_model_explain,
        }.get(kind, self.settings.openai_model_personalize)


def render_value(value: Any) -> str:
    if value is None:
        return "(none)"
    if isinstance(value, BaseModel):
        return value.model_dump_json(indent=2)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=True, indent=2, default=str)
    if isinstance(value, (list, tuple)) and any(isinstance(item, (dict, BaseModel)) for item in value):
        records = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in value]
        return json.dumps(records, ensure_ascii=True, indent=2, default=str)
    if isinstance(value, (list, tuple, set)):
        items = [str(item) for item in value if str(item).strip()]
        if not items:
            return "(none)"
        return "\n".join(f"- {item}" for item in items)
    return str(value)
