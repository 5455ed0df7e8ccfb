"""Structured-output chat completions used by the advisory planner.

Only the planner talks to a model, and only to ask for a ``TaskPlan``. The
reply is parsed into the requested pydantic model here; schema violations
surface as exceptions so the caller can fall back to its rule-based plan.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel

from role_orchestrator.config import Settings

TModel = TypeVar("TModel", bound=BaseModel)
logger = logging.getLogger(__name__)

# Client errors other than rate limiting will not succeed on retry.
RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class LLMAdapter(Protocol):
    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel: ...


class LLMRequestError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status in RETRYABLE_HTTP_STATUSES


class OpenAIChatCompletionsAdapter:
    """``/chat/completions`` with a JSON-schema response format."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel:
        body = self._post(self._build_payload(system_prompt, user_prompt, response_model), timeout_s)
        usage = body.get("usage") or {}
        logger.info(
            "llm event=completion model=%s response_model=%s total_tokens=%s",
            self.model,
            response_model.__name__,
            usage.get("total_tokens", "-"),
        )
        return response_model.model_validate_json(_message_text(body))

    def _build_payload(
        self,
        system_prompt: str,
        user_prompt: str,
        response_model: type[BaseModel],
    ) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": response_model.__name__.lower(),
                    # Task inputs are free-form maps, which strict mode rejects.
                    "strict": False,
                    "schema": response_model.model_json_schema(),
                },
            },
        }

    def _post(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self._send_once(payload, timeout_s)
            except LLMRequestError as exc:
                logger.warning(
                    "llm event=request_failed attempt=%d/%d model=%s status=%s reason=%s",
                    attempt,
                    attempts,
                    self.model,
                    exc.status,
                    exc,
                )
                if not exc.retryable or attempt == attempts:
                    raise
                if self.backoff_s:
                    time.sleep(self.backoff_s * attempt)
        raise AssertionError("unreachable")

    def _send_once(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        req = request.Request(
            url=self.endpoint,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise LLMRequestError(f"HTTP {exc.code}: {detail[:300]}", status=exc.code) from exc
        except (TimeoutError, error.URLError) as exc:
            raise LLMRequestError(f"transport error: {exc}") from exc
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise LLMRequestError("response body is not JSON") from exc


def _message_text(body: dict[str, Any]) -> str:
    choices = body.get("choices") or []
    if not choices:
        raise ValueError("completion contained no choices")
    content = (choices[0].get("message") or {}).get("content")
    if isinstance(content, list):
        content = "".join(
            part["text"] for part in content if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    if not isinstance(content, str) or not content.strip():
        raise ValueError("completion message had no text content")
    return content


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    """Return an adapter only when the provider is supported and a key is set."""
    if settings.llm_provider.lower() != "openai":
        return None
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None
    return OpenAIChatCompletionsAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )
