from __future__ import annotations

import re
from difflib import SequenceMatcher

from selector_healing.core.metadata import ElementSnapshot, PageInventory, ScoredCandidate

SELECTOR_WEIGHT = 40.0
INTENT_WEIGHT = 40.0
INTERACTIVE_WEIGHT = 20.0

ACTION_VERBS = frozenset(
    {
        "click",
        "press",
        "tap",
        "push",
        "select",
        "choose",
        "pick",
        "check",
        "uncheck",
        "toggle",
        "fill",
        "type",
        "enter",
        "input",
        "submit",
        "open",
        "close",
        "dismiss",
        "expand",
        "collapse",
        "hover",
        "focus",
        "upload",
        "search",
        "login",
        "log",
        "sign",
    }
)
STOPWORDS = frozenset({"the", "a", "an", "on", "in", "into", "to", "of", "for", "and", "or", "with", "at", "field", "element"})
_SELECTOR_NOISE = frozenset(
    {"nth", "child", "of", "type", "first", "last", "not", "contains", "text", "normalize", "space", "and", "or"}
)
_TOKEN_ATTRIBUTES = ("id", "class", "name", "data-testid", "type", "role", "aria-label", "placeholder", "for", "href")
_TEXT_ATTRIBUTES = ("placeholder", "value", "title", "alt")
_QUOTED = re.compile(r"[\"'‘“]([^\"'’”]+)[\"'’”]")


def rank_candidates(
    inventory: PageInventory,
    original_selector: str,
    intent: str,
    max_candidates: int,
) -> list[ScoredCandidate]:
    """Scores every element and keeps the best ``max_candidates``, ties going to DOM order."""

    if max_candidates < 1:
        raise ValueError("max_candidates must be at least 1")
    selector_tokens = _selector_tokens(original_selector)
    words = re.findall(r"[a-z0-9]+", intent.lower())
    action_oriented = any(word in ACTION_VERBS for word in words)
    # the leading verb names the action, not the element; later verbs are usually labels
    if words and words[0] in ACTION_VERBS:
        words = words[1:]
    target_words = [word for word in words if word not in STOPWORDS]
    target_tokens = set(target_words)
    phrases = _QUOTED.findall(intent) or [" ".join(target_words)]

    scored: list[ScoredCandidate] = []
    for element in inventory.elements:
        score = SELECTOR_WEIGHT * _selector_overlap(selector_tokens, element)
        score += INTENT_WEIGHT * _intent_proximity(target_tokens, phrases, element)
        score += INTERACTIVE_WEIGHT * _interactivity(element, action_oriented)
        scored.append(ScoredCandidate(element=element, score=round(score, 4)))
    scored.sort(key=lambda item: (-item.score, item.element.index))
    return scored[:max_candidates]


def _tokens(value: str) -> set[str]:
    return set(re.findall(r"[a-z0-9]+", value.lower()))


def _selector_tokens(selector: str) -> set[str]:
    return {token for token in _tokens(selector) if token not in _SELECTOR_NOISE}


def element_tokens(element: ElementSnapshot) -> set[str]:
    tokens = {element.tag} if element.tag else set()
    for name in _TOKEN_ATTRIBUTES:
        tokens |= _tokens(element.attribute(name))
    tokens |= _tokens(element.selector_hint)
    return tokens


def _element_text(element: ElementSnapshot) -> str:
    parts = [element.text, element.accessible_name]
    parts.extend(element.attribute(name) for name in _TEXT_ATTRIBUTES)
    return " ".join(part for part in parts if part)


def _selector_overlap(selector_tokens: set[str], element: ElementSnapshot) -> float:
    if not selector_tokens:
        return 0.0
    return len(selector_tokens & element_tokens(element)) / len(selector_tokens)


def _intent_proximity(target_tokens: set[str], phrases: list[str], element: ElementSnapshot) -> float:
    text = _element_text(element)
    if not text:
        return 0.0
    overlap = len(target_tokens & _tokens(text)) / len(target_tokens) if target_tokens else 0.0
    ratio = max(
        max(_similarity(phrase, element.text), _similarity(phrase, element.accessible_name)) for phrase in phrases
    )
    return max(overlap, ratio)


def _interactivity(element: ElementSnapshot, action_oriented: bool) -> float:
    if not element.interactive:
        return 0.0
    return 1.0 if action_oriented else 0.5


def _similarity(left: str, right: str) -> float:
    if not left.strip() or not right.strip():
        return 0.0
    return SequenceMatcher(a=left.lower(), b=right.lower()).ratio()
