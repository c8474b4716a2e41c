from __future__ import annotations

import json
import re
from typing import Any

from selector_healing.core.exceptions import BackendMalformedResponse
from selector_healing.core.metadata import Locator, LocatorStrategy

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
_STRATEGY_ALIASES = {
    "css selector": "css",
    "css_selector": "css",
    "testid": "test_id",
    "data-testid": "test_id",
    "link text": "text",
}


def parse_suggestion(response: str) -> tuple[Locator, float | None, str]:
    """Parses a model answer into a locator, confidence and rationale.

    Accepts the JSON object the system prompt asks for, optionally fenced,
    or a single bare selector line as older prompts produced.
    """

    text = response.strip()
    if not text:
        raise BackendMalformedResponse("backend returned an empty response")
    fenced = _FENCE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BackendMalformedResponse(f"backend returned invalid JSON: {exc.msg}") from exc
        return _from_payload(payload)
    if "\n" in text or "\r" in text:
        raise BackendMalformedResponse("backend returned a multiline selector")
    if "```" in text:
        raise BackendMalformedResponse("backend returned markdown instead of a selector")
    return Locator.infer(text), None, ""


def _from_payload(payload: Any) -> tuple[Locator, float | None, str]:
    if not isinstance(payload, dict):
        raise BackendMalformedResponse("backend JSON is not an object")
    selector = str(payload.get("selector") or "").strip()
    if not selector:
        raise BackendMalformedResponse("backend JSON has no selector")
    raw_strategy = payload.get("strategy")
    if raw_strategy:
        name = str(raw_strategy).strip().lower()
        name = _STRATEGY_ALIASES.get(name, name)
        try:
            locator = Locator(LocatorStrategy(name), selector)
        except ValueError as exc:
            raise BackendMalformedResponse(f"unknown locator strategy: {raw_strategy}") from exc
    else:
        locator = Locator.infer(selector)
    return locator, _confidence(payload.get("confidence")), str(payload.get("rationale") or "")


def _confidence(value: Any) -> float | None:
    if value is None:
        return None
    try:
        confidence = float(value)
    except (TypeError, ValueError) as exc:
        raise BackendMalformedResponse(f"confidence is not a number: {value!r}") from exc
    if not 0.0 <= confidence <= 1.0:
        raise BackendMalformedResponse(f"confidence out of range: {confidence}")
    return confidence
