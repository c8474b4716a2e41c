from __future__ import annotations

import asyncio
from typing import Any

from selector_healing.core.metadata import HealingAttempt, HealingSuggestion, Locator, LocatorStrategy
from selector_healing.llm.client import ReasoningBackend
from selector_healing.logging.trace import SpanRecord


def descriptor(tag: str, text: str = "", label: str = "", **attributes: str) -> dict[str, Any]:
    """Raw element descriptor as the page collection script returns it.

    ``data_testid`` becomes ``data-testid`` and ``for_`` becomes ``for``.
    """

    return {
        "tag": tag,
        "text": text,
        "label": label,
        "attributes": {key.rstrip("_").replace("_", "-"): value for key, value in attributes.items()},
        "rect": {"x": 10.0, "y": 20.0, "width": 120.0, "height": 32.0},
    }


LOGIN_ELEMENTS = [
    descriptor("h1", "Sign in"),
    descriptor("label", "Email", for_="email"),
    descriptor("input", label="Email", id="email", name="email", type="email", placeholder="Email address"),
    descriptor("input", label="Password", id="password", name="password", type="password"),
    descriptor("input", id="csrf", name="csrf", type="hidden"),
    descriptor("button", "Login", id="login-button-mutated", type="submit", **{"class": "btn btn-primary"}),
    descriptor("a", "Forgot password?", href="/forgot"),
    descriptor("button", "Continue with Google", id="google-login", data_provider="google"),
]


class FakePage:
    """In-memory page: descriptors to read, and a match count (or exception) per locator value."""

    def __init__(
        self,
        elements: list[dict[str, Any]] | None = None,
        matches: dict[str, Any] | None = None,
        url: str = "http://localhost:8000/login",
    ) -> None:
        self.elements = list(LOGIN_ELEMENTS if elements is None else elements)
        self.matches = matches or {}
        self.url = url
        self.closed = False
        self.read_delay = 0.0
        self.read_count = 0
        self.resolve_calls: list[Locator] = []

    async def read_interactive_elements(self) -> list[dict[str, Any]]:
        self.read_count += 1
        if self.closed:
            raise RuntimeError("target page has been closed")
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        return [dict(item) for item in self.elements]

    async def resolve_locator(self, locator: Locator) -> list[Any]:
        self.resolve_calls.append(locator)
        outcome = self.matches.get(locator.value, 0)
        if isinstance(outcome, BaseException):
            raise outcome
        return [f"element:{locator.value}:{position}" for position in range(outcome)]


class MutatingPage(FakePage):
    """FakePage that also reports whether it changed since the last read."""

    def __init__(
        self,
        *args: Any,
        changed: bool = False,
        change_error: BaseException | None = None,
        change_delay: float = 0.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.changed = changed
        self.change_error = change_error
        self.change_delay = change_delay
        self.change_checks = 0

    async def has_changed(self) -> bool:
        self.change_checks += 1
        if self.change_delay:
            await asyncio.sleep(self.change_delay)
        if self.change_error is not None:
            raise self.change_error
        return self.changed


class ScriptedBackend(ReasoningBackend):
    """Replays suggestions or raises errors in order; the last entry repeats."""

    provider_name = "scripted"

    def __init__(self, *responses: HealingSuggestion | BaseException) -> None:
        self.responses = list(responses)
        self.requests = []

    async def suggest(self, request):
        self.requests.append(request)
        item = self.responses[min(len(self.requests), len(self.responses)) - 1]
        if isinstance(item, BaseException):
            raise item
        return item


class HangingBackend(ReasoningBackend):
    """Never answers unless cancelled."""

    provider_name = "hanging"

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def suggest(self, request):
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        raise AssertionError("unreachable")


def suggestion(value: str, strategy: LocatorStrategy = LocatorStrategy.CSS, tokens: int = 12) -> HealingSuggestion:
    return HealingSuggestion(
        locator=Locator(strategy, value),
        confidence=0.9,
        rationale="matches the intended control",
        backend="scripted:test",
        tokens=tokens,
        latency_seconds=0.01,
    )


def spans_named(spans: tuple[SpanRecord, ...] | list[SpanRecord], name: str) -> list[SpanRecord]:
    return [span for span in spans if span.name == name]


def assert_closed_trace(attempt: HealingAttempt) -> SpanRecord:
    """One root, one child per executed round, and every span's parent present in the same trace."""

    roots = [span for span in attempt.spans if span.parent_id is None]
    assert len(roots) == 1
    root = roots[0]
    children = [span for span in attempt.spans if span.parent_id == root.span_id]
    assert len(children) == attempt.round_count
    assert all(span.name == "healing_round" for span in children)
    span_ids = {span.span_id for span in attempt.spans}
    assert len(span_ids) == len(attempt.spans)
    assert all(span.parent_id in span_ids for span in attempt.spans if span.parent_id is not None)
    assert all(span.end_time >= span.start_time for span in attempt.spans)
    assert {span.trace_id for span in attempt.spans} == {root.trace_id}
    return root
