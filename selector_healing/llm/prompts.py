from __future__ import annotations

import json
from typing import Any

from selector_healing.core.metadata import HealingRequest

SYSTEM_PROMPT = """You repair broken UI test locators. Answer with one JSON object and nothing else:
{"selector": "<locator value>", "strategy": "css|xpath|id|name|text|test_id", "confidence": <0.0-1.0>, "rationale": "<one sentence>"}
Rules:
1. Use only elements present in the provided candidates.
2. Do not invent tags, attributes, text, or hierarchy.
3. Prefer a stable id, data-testid or name; fall back to CSS, then XPath.
4. The locator must match exactly one element on the page.
5. Read the feedback list: it explains why earlier suggestions were rejected. Never repeat a rejected locator.
6. No markdown, no code fence, no explanation outside the JSON object."""


def build_payload(request: HealingRequest) -> dict[str, Any]:
    return {
        "round": request.round_index,
        "original_selector": request.original_selector,
        "failure": request.error_context,
        "intent": request.intent,
        "candidates": [
            {**candidate.element.to_payload(), "heuristic_score": candidate.score}
            for candidate in request.candidates
        ],
        "feedback": list(request.feedback),
    }


def build_user_prompt(request: HealingRequest) -> str:
    """Formats a deterministic user payload for the model."""

    return json.dumps(build_payload(request), indent=2, sort_keys=True)
