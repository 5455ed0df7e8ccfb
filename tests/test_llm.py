from __future__ import annotations

import io
import json
from typing import Any
from urllib import error

import pytest
from pydantic import ValidationError

from role_orchestrator import llm
from role_orchestrator.config import Settings
from role_orchestrator.llm import LLMRequestError, OpenAIChatCompletionsAdapter, build_llm_adapter
from role_orchestrator.models import TaskPlan

PLAN_JSON = json.dumps(
    {
        "tasks": [{"role": "FINANCE", "priority": 1, "input": {"action": "process_refund", "bookingId": 7}}],
        "summary": "Refund booking 7",
    }
)


class FakeResponse:
    def __init__(self, body: dict[str, Any]) -> None:
        self._raw = json.dumps(body).encode("utf-8")

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def read(self) -> bytes:
        return self._raw


def _completion(content: Any) -> dict[str, Any]:
    return {"choices": [{"message": {"content": content}}], "usage": {"total_tokens": 42}}


def _http_error(code: int) -> error.HTTPError:
    return error.HTTPError("https://llm.test/chat/completions", code, "boom", {}, io.BytesIO(b'{"error":"x"}'))


def _adapter(**kwargs: Any) -> OpenAIChatCompletionsAdapter:
    return OpenAIChatCompletionsAdapter(api_key="sk-test", base_url="https://llm.test/", backoff_s=0, **kwargs)


def _generate(adapter: OpenAIChatCompletionsAdapter) -> TaskPlan:
    return adapter.generate_structured(
        system_prompt="plan",
        user_prompt="lead",
        response_model=TaskPlan,
        timeout_s=1.0,
    )


def test_structured_reply_is_parsed(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: list[Any] = []

    def fake_urlopen(req: Any, timeout: float) -> FakeResponse:
        sent.append(req)
        return FakeResponse(_completion(PLAN_JSON))

    monkeypatch.setattr(llm.request, "urlopen", fake_urlopen)

    plan = _generate(_adapter())

    assert plan.tasks[0].role == "FINANCE"
    request_body = json.loads(sent[0].data)
    assert sent[0].full_url == "https://llm.test/chat/completions"
    assert sent[0].get_header("Authorization") == "Bearer sk-test"
    assert request_body["response_format"]["json_schema"]["name"] == "taskplan"


def test_content_parts_are_joined(monkeypatch: pytest.MonkeyPatch) -> None:
    parts = [{"type": "text", "text": PLAN_JSON[:20]}, {"type": "text", "text": PLAN_JSON[20:]}]
    monkeypatch.setattr(llm.request, "urlopen", lambda req, timeout: FakeResponse(_completion(parts)))

    assert _generate(_adapter()).summary == "Refund booking 7"


def test_schema_violation_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    bad = json.dumps({"tasks": [], "summary": "nothing"})
    monkeypatch.setattr(llm.request, "urlopen", lambda req, timeout: FakeResponse(_completion(bad)))

    with pytest.raises(ValidationError):
        _generate(_adapter())


def test_empty_completion_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(llm.request, "urlopen", lambda req, timeout: FakeResponse({"choices": []}))

    with pytest.raises(ValueError, match="no choices"):
        _generate(_adapter())


def test_server_errors_are_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[int] = []

    def flaky(req: Any, timeout: float) -> FakeResponse:
        calls.append(1)
        if len(calls) == 1:
            raise _http_error(503)
        return FakeResponse(_completion(PLAN_JSON))

    monkeypatch.setattr(llm.request, "urlopen", flaky)

    assert _generate(_adapter(max_retries=1)).tasks
    assert len(calls) == 2


def test_client_errors_are_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[int] = []

    def unauthorized(req: Any, timeout: float) -> FakeResponse:
        calls.append(1)
        raise _http_error(401)

    monkeypatch.setattr(llm.request, "urlopen", unauthorized)

    with pytest.raises(LLMRequestError) as excinfo:
        _generate(_adapter(max_retries=3))
    assert excinfo.value.status == 401
    assert len(calls) == 1


def test_build_llm_adapter_requires_provider_and_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    assert build_llm_adapter(Settings(openai_api_key="")) is None
    assert build_llm_adapter(Settings(llm_provider="other", openai_api_key="sk")) is None
    adapter = build_llm_adapter(Settings(openai_api_key="sk", llm_model="gpt-test"))
    assert isinstance(adapter, OpenAIChatCompletionsAdapter)
    assert adapter.model == "gpt-test"
