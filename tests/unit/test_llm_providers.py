from __future__ import annotations

from types import SimpleNamespace

import pytest

from autoapply.config import Settings
from autoapply.llm.providers import LLMProvider, ProviderConfig, ProviderPool, parse_json


class NotFoundError(Exception):
    status_code = 404


class RecordingAPI:
    def __init__(self, fn):
        self.fn = fn
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return self.fn(**kwargs)


class FakeOpenAI:
    def __init__(self, *, responses_fn, chat_fn):
        self.responses = RecordingAPI(responses_fn)
        self.chat = SimpleNamespace(completions=RecordingAPI(chat_fn))


def _response(text: str):
    return SimpleNamespace(output_text=text, model_dump=lambda: {"id": "resp_1"})


def _chat(text: str):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        model_dump=lambda: {"id": "chat_1"},
    )


def _provider(client: FakeOpenAI) -> LLMProvider:
    provider = LLMProvider(ProviderConfig(name="local", base_url="http://localhost:9999/v1", api_key="x", timeout_sec=5))
    provider.client = client
    return provider


def test_responses_api_receives_instructions() -> None:
    client = FakeOpenAI(responses_fn=lambda **_: _response('{"ok": true}'), chat_fn=lambda **_: _chat("unused"))
    provider = _provider(client)

    assert provider.complete_json(model="m", prompt="ping", instructions="be grounded") == {"ok": True}
    assert client.responses.calls[0]["instructions"] == "be grounded"
    assert client.chat.completions.calls == []


def test_chat_fallback_sends_instructions_as_system_message() -> None:
    def missing(**_):
        raise NotFoundError("Not found")

    client = FakeOpenAI(responses_fn=missing, chat_fn=lambda **_: _chat("CHAT_OK"))
    result = _provider(client).complete_text(model="m", prompt="ping", instructions="sys")

    assert result.content == "CHAT_OK"
    assert result.raw["api_path"] == "chat_completions"
    messages = client.chat.completions.calls[0]["messages"]
    assert messages[0] == {"role": "system", "content": "sys"}
    assert messages[1] == {"role": "user", "content": "ping"}


def test_other_errors_are_not_swallowed_by_fallback() -> None:
    def broken(**_):
        raise RuntimeError("rate limited")

    client = FakeOpenAI(responses_fn=broken, chat_fn=lambda **_: _chat("unused"))
    with pytest.raises(RuntimeError, match="rate limited"):
        _provider(client).complete_text(model="m", prompt="ping")
    assert client.chat.completions.calls == []


def test_parse_json_accepts_fenced_output() -> None:
    assert parse_json('Here you go:\n```json\n{"a": 1}\n```') == {"a": 1}


@pytest.mark.parametrize("content", ["", "not json", "[1, 2]"])
def test_parse_json_rejects_bad_output(content: str) -> None:
    with pytest.raises(ValueError):
        parse_json(content)


def test_pool_only_returns_enabled_providers() -> None:
    pool = ProviderPool(Settings(openai_api_key="", local_llm_enabled=False))
    assert pool.get("openai") is None
    assert pool.get("local") is None

    pool = ProviderPool(Settings(openai_api_key="sk-test", local_llm_enabled=False))
    provider = pool.get("openai")
    assert provider is not None
    assert pool.get("openai") is provider
