from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class LocatorStrategy(str, Enum):
    CSS = "css"
    XPATH = "xpath"
    ID = "id"
    NAME = "name"
    TEXT = "text"
    TEST_ID = "test_id"


@dataclass(frozen=True, slots=True)
class Locator:
    strategy: LocatorStrategy
    value: str

    @classmethod
    def infer(cls, value: str) -> Locator:
        stripped = value.strip()
        if stripped.startswith("/") or stripped.startswith("("):
            return cls(LocatorStrategy.XPATH, stripped)
        return cls(LocatorStrategy.CSS, stripped)

    def describe(self) -> str:
        return f"{self.strategy.value} '{self.value}'"


@dataclass(frozen=True, slots=True)
class ElementSnapshot:
    index: int
    tag: str
    element_id: str = ""
    accessible_name: str = ""
    role: str = ""
    text: str = ""
    input_type: str = ""
    rect: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    attributes: tuple[tuple[str, str], ...] = ()
    selector_hint: str = ""
    interactive: bool = False

    def attribute(self, name: str, default: str = "") -> str:
        for key, value in self.attributes:
            if key == name:
                return value
        return default

    def to_payload(self) -> dict[str, Any]:
        x, y, width, height = self.rect
        return {
            "index": self.index,
            "tag": self.tag,
            "id": self.element_id,
            "accessible_name": self.accessible_name,
            "role": self.role,
            "text": self.text,
            "type": self.input_type,
            "rect": {"x": x, "y": y, "width": width, "height": height},
            "attributes": dict(self.attributes),
            "selector_hint": self.selector_hint,
            "interactive": self.interactive,
        }


@dataclass(frozen=True, slots=True)
class PageInventory:
    elements: tuple[ElementSnapshot, ...]
    url: str = ""
    extraction_seconds: float = 0.0
    captured_at: float = 0.0

    @property
    def element_count(self) -> int:
        return len(self.elements)

    @property
    def interactive_count(self) -> int:
        return sum(1 for element in self.elements if element.interactive)


@dataclass(frozen=True, slots=True)
class ScoredCandidate:
    element: ElementSnapshot
    score: float


@dataclass(frozen=True, slots=True)
class HealingRequest:
    original_selector: str
    error_context: str
    intent: str
    candidates: tuple[ScoredCandidate, ...]
    feedback: tuple[str, ...] = ()
    round_index: int = 1

    def next_round(self, candidates: tuple[ScoredCandidate, ...], reason: str | None = None) -> HealingRequest:
        """Builds the request for the following round, carrying every earlier reason forward."""

        feedback = self.feedback + (reason,) if reason else self.feedback
        return replace(
            self,
            candidates=candidates,
            feedback=feedback,
            round_index=self.round_index + 1,
        )


@dataclass(frozen=True, slots=True)
class HealingSuggestion:
    locator: Locator
    confidence: float | None = None
    rationale: str = ""
    backend: str = "unknown"
    tokens: int = 0
    latency_seconds: float = 0.0


class VerificationStatus(str, Enum):
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class VerificationResult:
    status: VerificationStatus
    match_count: int = 0
    element: Any = None
    reason: str = ""

    @property
    def resolved(self) -> bool:
        return self.status is VerificationStatus.RESOLVED


@dataclass(frozen=True, slots=True)
class HealingRound:
    index: int
    request: HealingRequest | None = None
    suggestion: HealingSuggestion | None = None
    verification: VerificationResult | None = None
    failure: str = ""


class AttemptOutcome(str, Enum):
    HEALED = "healed"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class HealingAttempt:
    attempt_id: str
    original_selector: str
    intent: str
    error_context: str
    outcome: AttemptOutcome
    rounds: tuple[HealingRound, ...] = ()
    healed_locator: Locator | None = None
    reason: str = ""
    elapsed_seconds: float = 0.0
    total_tokens: int = 0
    spans: tuple[Any, ...] = field(default=(), repr=False)

    @property
    def healed(self) -> bool:
        return self.outcome is AttemptOutcome.HEALED

    @property
    def round_count(self) -> int:
        return len(self.rounds)

    @property
    def element(self) -> Any:
        if not self.healed or not self.rounds:
            return None
        verification = self.rounds[-1].verification
        return verification.element if verification else None

    def summary(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "original_selector": self.original_selector,
            "intent": self.intent,
            "error_context": self.error_context,
            "outcome": self.outcome.value,
            "healed_selector": self.healed_locator.value if self.healed_locator else None,
            "healed_strategy": self.healed_locator.strategy.value if self.healed_locator else None,
            "rounds": [
                {
                    "index": item.index,
                    "suggestion": item.suggestion.locator.describe() if item.suggestion else None,
                    "verification": item.verification.status.value if item.verification else None,
                    "failure": item.failure,
                }
                for item in self.rounds
            ],
            "reason": self.reason,
            "elapsed_seconds": round(self.elapsed_seconds, 4),
            "total_tokens": self.total_tokens,
        }
