from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from openai import OpenAI

from autoapply.config import Settings
from autoapply.types import ModelResponse

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProviderConfig:
    name: str
    base_url: str
    api_key: str
    timeout_sec: int
    model: str = ""


class LLMProvider:
    def __init__(self, config: ProviderConfig):
        self.config = config
        self.client = OpenAI(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=float(config.timeout_sec),
        )

    @property
    def name(self) -> str:
        return self.config.name

    def complete_text(self, *, model: str, prompt: str, instructions: str = "") -> ModelResponse:
        try:
            return self._complete_via_responses(model=model, prompt=prompt, instructions=instructions)
        except Exception as exc:
            if not self._is_unsupported_responses_endpoint(exc):
                raise

            logger.warning(
                "Responses API unavailable for provider=%s base_url=%s; falling back to chat.completions (%s)",
                self.config.name,
                self.config.base_url,
                exc,
            )
            return self._complete_via_chat_completions(model=model, prompt=prompt, instructions=instructions)

    def complete_json(self, *, model: str, prompt: str, instructions: str = "") -> dict[str, Any]:
        response = self.complete_text(model=model, prompt=prompt, instructions=instructions)
        return parse_json(response.content)

    def _complete_via_responses(self, *, model: str, prompt: str, instructions: str) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "input": [{"role": "user", "content": [{"type": "input_text", "text": prompt}]}],
        }
        if instructions:
            kwargs["instructions"] = instructions
        response = self.client.responses.create(**kwargs)
        text = getattr(response, "output_text", "") or ""
        return ModelResponse(content=text, raw=_raw_payload(response, api_path="responses"))

    def _complete_via_chat_completions(self, *, model: str, prompt: str, instructions: str) -> ModelResponse:
        messages = [{"role": "user", "content": prompt}]
        if instructions:
            messages.insert(0, {"role": "system", "content": instructions})
        response = self.client.chat.completions.create(model=model, messages=messages)
        text = self._extract_chat_text(response)
        return ModelResponse(content=text, raw=_raw_payload(response, api_path="chat_completions"))

    @staticmethod
    def _extract_chat_text(response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""

        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None) if message is not None else None
        if content is None:
            return ""
        return content if isinstance(content, str) else str(content)

    @staticmethod
    def _is_unsupported_responses_endpoint(exc: Exception) -> bool:
        if getattr(exc, "status_code", None) == 404:
            return True
        message = str(exc).strip().lower()
        return bool(message) and ("not found" in message or "404" in message)


def _raw_payload(response: Any, *, api_path: str) -> dict[str, Any]:
    raw = response.model_dump() if hasattr(response, "model_dump") else {}
    if not isinstance(raw, dict):
        raw = {"raw": raw}
    raw["api_path"] = api_path
    return raw


def parse_json(content: str) -> dict[str, Any]:
    """Parse a model reply into a JSON object, tolerating ``` fences. Raises ValueError."""
    candidate = content.strip()
    if not candidate:
        raise ValueError("empty model output")

    if "```" in candidate:
        for part in candidate.split("```"):
            part = part.strip()
            if part.startswith("json"):
                part = part[4:].strip()
            if part.startswith("{") and part.endswith("}"):
                candidate = part
                break

    try:
        value = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ValueError(f"model output is not valid JSON: {exc.msg}") from exc
    if not isinstance(value, dict):
        raise ValueError("model output is not a JSON object")
    return value


class ProviderPool:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._providers: dict[str, LLMProvider] = {}

    def get(self, name: str) -> LLMProvider | None:
        if not self.is_enabled(name):
            return None
        if name not in self._providers:
            self._providers[name] = LLMProvider(self._config_for(name))
        return self._providers[name]

    def is_enabled(self, name: str) -> bool:
        if name == "openai":
            return bool(self.settings.openai_api_key)
        if name == "local":
            return self.settings.local_llm_enabled
        return False

    def _config_for(self, name: str) -> ProviderConfig:
        if name == "local":
            return ProviderConfig(
                name="local",
                base_url=self.settings.local_llm_base_url,
                api_key=self.settings.local_llm_api_key,
                timeout_sec=self.settings.local_llm_timeout_sec,
                model=self.settings.local_llm_model,
            )
        return ProviderConfig(
            name="openai",
            base_url=self.settings.openai_base_url,
            api_key=self.settings.openai_api_key,
            timeout_sec=self.settings.openai_timeout_sec,
        )
