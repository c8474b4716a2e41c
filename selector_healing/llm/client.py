from __future__ import annotations

import asyncio
import http.client
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any
from urllib import error, request

from selector_healing.core.exceptions import (
    BackendMalformedResponse,
    BackendRateLimited,
    BackendUnavailable,
    HealingConfigError,
)
from selector_healing.core.metadata import HealingRequest, HealingSuggestion
from selector_healing.llm.parser import parse_suggestion
from selector_healing.llm.prompts import SYSTEM_PROMPT, build_user_prompt

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUSES = frozenset({429, 529})


class ReasoningBackend(ABC):
    """Provider-neutral interface for locator repair.

    Adapters shape requests and classify errors. They never retry; the healer owns retry policy.
    """

    provider_name = "unknown"

    @abstractmethod
    async def suggest(self, request: HealingRequest) -> HealingSuggestion:
        raise NotImplementedError


class _HttpBackend(ReasoningBackend):
    default_model = ""

    def __init__(self, api_key: str, model: str | None = None, timeout: float = 30.0) -> None:
        self.api_key = api_key
        self.model = model or self.default_model
        self.timeout = timeout

    async def suggest(self, request: HealingRequest) -> HealingSuggestion:
        started = time.monotonic()
        response = await asyncio.to_thread(
            _post_json,
            self._url(),
            self._body(build_user_prompt(request)),
            self._headers(),
            self.timeout,
        )
        try:
            content = self._extract_text(response)
            tokens = self._extract_tokens(response)
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as exc:
            raise BackendMalformedResponse(f"{self.provider_name} response has no completion text") from exc
        locator, confidence, rationale = parse_suggestion(content)
        return HealingSuggestion(
            locator=locator,
            confidence=confidence,
            rationale=rationale,
            backend=f"{self.provider_name}:{self.model}",
            tokens=tokens,
            latency_seconds=round(time.monotonic() - started, 4),
        )

    @abstractmethod
    def _url(self) -> str: ...

    @abstractmethod
    def _headers(self) -> dict[str, str]: ...

    @abstractmethod
    def _body(self, prompt: str) -> dict[str, Any]: ...

    @abstractmethod
    def _extract_text(self, response: dict[str, Any]) -> str: ...

    @abstractmethod
    def _extract_tokens(self, response: dict[str, Any]) -> int: ...


class OpenAIBackend(_HttpBackend):
    provider_name = "openai"
    default_model = "gpt-4o-mini"
    endpoint = "https://api.openai.com/v1/chat/completions"

    def _url(self) -> str:
        return self.endpoint

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _body(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }

    def _extract_text(self, response: dict[str, Any]) -> str:
        return response["choices"][0]["message"]["content"] or ""

    def _extract_tokens(self, response: dict[str, Any]) -> int:
        return int((response.get("usage") or {}).get("total_tokens", 0))


class AnthropicBackend(_HttpBackend):
    provider_name = "anthropic"
    default_model = "claude-3-5-sonnet-latest"
    endpoint = "https://api.anthropic.com/v1/messages"

    def _url(self) -> str:
        return self.endpoint

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }

    def _body(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": 512,
            "temperature": 0,
            "system": SYSTEM_PROMPT,
            "messages": [
                {"role": "user", "content": prompt},
            ],
        }

    def _extract_text(self, response: dict[str, Any]) -> str:
        return response["content"][0]["text"]

    def _extract_tokens(self, response: dict[str, Any]) -> int:
        usage = response.get("usage") or {}
        return int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))


class GeminiBackend(_HttpBackend):
    provider_name = "gemini"
    default_model = "gemini-2.5-flash"
    endpoint_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def _url(self) -> str:
        return self.endpoint_template.format(model=self.model)

    def _headers(self) -> dict[str, str]:
        return {
            "x-goog-api-key": self.api_key,
            "x-goog-api-client": "selector-healing/0.1.0",
            "Content-Type": "application/json",
        }

    def _body(self, prompt: str) -> dict[str, Any]:
        return {
            "system_instruction": {
                "parts": [
                    {"text": SYSTEM_PROMPT},
                ]
            },
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                    ],
                }
            ],
            "generationConfig": {
                "temperature": 0,
                "responseMimeType": "application/json",
            },
        }

    def _extract_text(self, response: dict[str, Any]) -> str:
        candidates = response.get("candidates", [])
        if not candidates:
            raise BackendMalformedResponse("Gemini returned no candidates")
        parts = candidates[0].get("content", {}).get("parts", [])
        text_parts = [part.get("text", "") for part in parts if isinstance(part, dict)]
        return "".join(text_parts).strip()

    def _extract_tokens(self, response: dict[str, Any]) -> int:
        return int((response.get("usageMetadata") or {}).get("totalTokenCount", 0))


BACKENDS: dict[str, type[_HttpBackend]] = {
    "openai": OpenAIBackend,
    "anthropic": AnthropicBackend,
    "gemini": GeminiBackend,
}


def create_backend(name: str | None = None, timeout: float = 30.0) -> ReasoningBackend:
    provider = (name or os.getenv("LLM_PROVIDER", "openai")).strip().lower()
    backend_type = BACKENDS.get(provider)
    if backend_type is None:
        raise HealingConfigError(f"Unsupported LLM provider: {provider}")
    prefix = provider.upper()
    api_key = os.getenv(f"{prefix}_API_KEY")
    if not api_key:
        raise HealingConfigError(f"{prefix}_API_KEY is required when LLM_PROVIDER={provider}")
    return backend_type(api_key, model=os.getenv(f"{prefix}_MODEL"), timeout=timeout)


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout: float = 30.0) -> dict[str, Any]:
    encoded = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=encoded, headers=headers, method="POST")
    try:
        with request.urlopen(req, timeout=timeout) as response:
            body = response.read()
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")[:500]
        if exc.code in RATE_LIMIT_STATUSES:
            logger.warning("LLM backend rate limited the request (%s)", exc.code)
            raise BackendRateLimited(
                f"LLM request was rate limited with status {exc.code}: {detail}",
                retry_after=_retry_after(exc.headers.get("Retry-After") if exc.headers else None),
            ) from exc
        raise BackendUnavailable(f"LLM request failed with status {exc.code}: {detail}") from exc
    except error.URLError as exc:
        raise BackendUnavailable(f"LLM request could not be completed: {exc.reason}") from exc
    except http.client.IncompleteRead as exc:
        raise BackendMalformedResponse(f"LLM response was truncated after {len(exc.partial)} bytes") from exc
    except (OSError, http.client.HTTPException) as exc:
        raise BackendUnavailable(f"LLM request could not be completed: {exc!r}") from exc
    try:
        raw = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise BackendMalformedResponse(f"LLM response is not UTF-8 text: {exc.reason}") from exc
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise BackendMalformedResponse(f"LLM response is not JSON: {exc.msg}") from exc
    if not isinstance(decoded, dict):
        raise BackendMalformedResponse("LLM response is not a JSON object")
    return decoded


def _retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
