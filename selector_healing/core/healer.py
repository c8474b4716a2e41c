from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, TypeVar

from selector_healing.config.loader import ConfigLoader, load_telemetry_enabled
from selector_healing.config.schema import HealingOptions
from selector_healing.core.exceptions import (
    BackendMalformedResponse,
    BackendRateLimited,
    BackendUnavailable,
    ExtractionError,
    HealingCancelled,
    HealingInvariantError,
)
from selector_healing.core.extractor import ContextExtractor
from selector_healing.core.metadata import (
    AttemptOutcome,
    HealingAttempt,
    HealingRequest,
    HealingRound,
    HealingSuggestion,
    Locator,
    PageInventory,
    ScoredCandidate,
    VerificationResult,
    VerificationStatus,
)
from selector_healing.core.verifier import Verifier
from selector_healing.llm.client import ReasoningBackend, create_backend
from selector_healing.logging.artifacts import ArtifactManager
from selector_healing.logging.audit import HealingAuditLogger
from selector_healing.logging.setup import configure_logging
from selector_healing.logging.trace import JsonlTraceSink, Span, SpanStatus, TraceRecorder, TraceSink
from selector_healing.utils.scoring import rank_candidates
from selector_healing.utils.wait import backoff_delay, with_timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HealingState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    RANKING = "ranking"
    REQUESTING = "requesting"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({HealingState.SUCCEEDED, HealingState.EXHAUSTED, HealingState.ABORTED})

TRANSITIONS: dict[HealingState, frozenset[HealingState]] = {
    HealingState.IDLE: frozenset({HealingState.EXTRACTING, HealingState.ABORTED}),
    HealingState.EXTRACTING: frozenset({HealingState.RANKING, HealingState.ABORTED}),
    HealingState.RANKING: frozenset(
        {HealingState.REQUESTING, HealingState.RETRYING, HealingState.EXHAUSTED, HealingState.ABORTED}
    ),
    HealingState.REQUESTING: frozenset(
        {HealingState.VERIFYING, HealingState.RETRYING, HealingState.EXHAUSTED, HealingState.ABORTED}
    ),
    HealingState.VERIFYING: frozenset(
        {HealingState.SUCCEEDED, HealingState.RETRYING, HealingState.EXHAUSTED, HealingState.ABORTED}
    ),
    HealingState.RETRYING: frozenset({HealingState.EXTRACTING, HealingState.RANKING, HealingState.ABORTED}),
}


@dataclass(slots=True)
class _RoundDraft:
    index: int
    request: HealingRequest | None = None
    suggestion: HealingSuggestion | None = None
    verification: VerificationResult | None = None

    def close(self, failure: str = "") -> HealingRound:
        return HealingRound(
            index=self.index,
            request=self.request,
            suggestion=self.suggestion,
            verification=self.verification,
            failure=failure,
        )


@dataclass(slots=True)
class _AttemptRun:
    """Mutable state of one attempt. Never shared between attempts."""

    page: Any
    original_selector: str
    error_context: str
    intent: str
    options: HealingOptions
    cancel: asyncio.Event
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: HealingState = HealingState.IDLE
    cancel_reason: str = "cancelled by caller"
    inventory: PageInventory | None = None
    request: HealingRequest | None = None
    pending_feedback: str = ""
    rounds: list[HealingRound] = field(default_factory=list)
    total_tokens: int = 0
    rate_limit_hits: int = 0
    started: float = field(default_factory=time.monotonic)


class Healer:
    """Coordinates extraction, candidate ranking, backend repair and verification.

    ``heal`` always returns a closed ``HealingAttempt`` for expected failures
    (unreadable page, unreachable or misbehaving backend, unverifiable
    suggestions, cancellation). Anything else is a defect and propagates after
    the trace collected so far has been exported.
    """

    def __init__(
        self,
        backend: ReasoningBackend | None = None,
        options: HealingOptions | None = None,
        recorder: TraceRecorder | None = None,
        extractor: ContextExtractor | None = None,
        verifier: Verifier | None = None,
        audit_logger: HealingAuditLogger | None = None,
        artifact_manager: ArtifactManager | None = None,
    ) -> None:
        self.backend = backend
        self.options = options or HealingOptions()
        self.recorder = recorder or TraceRecorder()
        self.extractor = extractor
        self.verifier = verifier
        self.audit_logger = audit_logger
        self.artifact_manager = artifact_manager

    async def heal(
        self,
        page,
        original_selector: str,
        error_context: str | BaseException,
        intent: str,
        options: HealingOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> HealingAttempt:
        options = options or self.options
        if isinstance(error_context, BaseException):
            error_context = f"{type(error_context).__name__}: {error_context}"
        run = _AttemptRun(
            page=page,
            original_selector=original_selector,
            error_context=error_context,
            intent=intent,
            options=options,
            cancel=cancel or asyncio.Event(),
        )
        backend = self.backend or create_backend(options.backend, timeout=options.per_step_timeout)
        timer = self._arm_attempt_timeout(run)
        root = self.recorder.start_trace(
            "healing_attempt",
            attempt_id=run.attempt_id,
            original_selector=original_selector,
            intent=intent,
            error_context=error_context,
            backend=backend.provider_name,
            max_rounds=options.max_rounds,
        )
        logger.info("healing %r (%s) with %s", original_selector, intent, backend.provider_name)
        try:
            outcome, locator, reason = await self._run(run, root, backend)
        except HealingCancelled as exc:
            self._force_state(run, HealingState.ABORTED)
            outcome, locator, reason = AttemptOutcome.ABORTED, None, f"cancelled: {exc}"
        except BaseException as exc:
            root.set_attributes(error=f"{type(exc).__name__}: {exc}", rounds=len(run.rounds))
            root.end(SpanStatus.ABORTED if isinstance(exc, asyncio.CancelledError) else SpanStatus.ERROR)
            raise
        finally:
            if timer is not None:
                timer.cancel()

        return self._close(run, root, outcome, locator, reason)

    async def _run(
        self,
        run: _AttemptRun,
        root: Span,
        backend: ReasoningBackend,
    ) -> tuple[AttemptOutcome, Locator | None, str]:
        options = run.options
        extractor = self.extractor or ContextExtractor(
            timeout=options.extraction_timeout,
            max_elements=options.max_elements,
            artifact_manager=self.artifact_manager,
        )
        verifier = self.verifier or Verifier(timeout=options.per_step_timeout)
        extract = True

        for index in range(1, options.max_rounds + 1):
            self._transition(run, HealingState.EXTRACTING if extract else HealingState.RANKING)
            draft = _RoundDraft(index=index)
            with root.child("healing_round", round=index) as round_span:
                try:
                    decision, failure = await self._round(
                        run, draft, round_span, extract, backend, extractor, verifier
                    )
                except HealingCancelled as exc:
                    run.rounds.append(draft.close(f"cancelled: {exc}"))
                    raise
                run.rounds.append(draft.close(failure))
                round_span.set_attributes(decision=decision, failure=failure)
                round_span.end(SpanStatus.OK if decision is HealingState.SUCCEEDED else SpanStatus.ERROR)

            if decision is HealingState.SUCCEEDED:
                self._transition(run, HealingState.SUCCEEDED)
                return AttemptOutcome.HEALED, draft.suggestion.locator, ""
            if decision is HealingState.ABORTED:
                self._transition(run, HealingState.ABORTED)
                return AttemptOutcome.ABORTED, None, failure
            if index == options.max_rounds:
                self._transition(run, HealingState.EXHAUSTED)
                return AttemptOutcome.EXHAUSTED, None, f"no verified locator after {index} rounds: {failure}"
            self._transition(run, HealingState.RETRYING)
            extract = await self._needs_reextraction(run)

        raise HealingInvariantError("round loop ended without a terminal state")

    async def _round(
        self,
        run: _AttemptRun,
        draft: _RoundDraft,
        span: Span,
        extract: bool,
        backend: ReasoningBackend,
        extractor: ContextExtractor,
        verifier: Verifier,
    ) -> tuple[HealingState, str]:
        options = run.options
        if extract:
            try:
                with span.child("extract", timeout=extractor.timeout) as extract_span:
                    run.inventory = await self._guard(run, extractor.extract(run.page, extract_span))
            except ExtractionError as exc:
                logger.warning("extraction failed for %r: %s", run.original_selector, exc)
                return HealingState.ABORTED, f"extraction failed: {exc}"
            self._transition(run, HealingState.RANKING)

        with span.child("rank", max_candidates=options.max_candidates) as rank_span:
            candidates = tuple(
                rank_candidates(run.inventory, run.original_selector, run.intent, options.max_candidates)
            )
            rank_span.set_attributes(
                inventory_size=run.inventory.element_count,
                candidate_count=len(candidates),
                top_score=candidates[0].score if candidates else None,
            )
        draft.request = self._next_request(run, candidates)
        if not candidates:
            draft.verification = VerificationResult(
                status=VerificationStatus.NOT_FOUND,
                reason="page inventory has no candidate elements",
            )
            run.pending_feedback = "no candidate elements were found on the page"
            return HealingState.RETRYING, draft.verification.reason

        self._transition(run, HealingState.REQUESTING)
        try:
            with span.child(
                "backend_request",
                backend=backend.provider_name,
                feedback_count=len(draft.request.feedback),
            ) as request_span:
                draft.suggestion = await self._guard(
                    run,
                    with_timeout(
                        backend.suggest(draft.request),
                        options.per_step_timeout,
                        BackendUnavailable,
                        "backend request",
                    ),
                )
                request_span.set_attributes(
                    selector=draft.suggestion.locator.value,
                    strategy=draft.suggestion.locator.strategy,
                    confidence=draft.suggestion.confidence,
                    tokens=draft.suggestion.tokens,
                    latency_seconds=draft.suggestion.latency_seconds,
                    backend_identity=draft.suggestion.backend,
                )
        except BackendUnavailable as exc:
            logger.warning("backend %s unavailable: %s", backend.provider_name, exc)
            return HealingState.ABORTED, f"backend unavailable: {exc}"
        except BackendMalformedResponse as exc:
            logger.warning("backend %s returned an unusable answer: %s", backend.provider_name, exc)
            run.pending_feedback = f"previous response could not be parsed: {exc}"
            return HealingState.RETRYING, f"malformed response: {exc}"
        except BackendRateLimited as exc:
            if draft.index < options.max_rounds:
                delay = backoff_delay(run.rate_limit_hits, options.backoff_base, options.backoff_max, exc.retry_after)
                run.rate_limit_hits += 1
                with span.child("backoff", delay_seconds=delay):
                    await self._guard(run, asyncio.sleep(delay))
            return HealingState.RETRYING, f"rate limited: {exc}"
        run.total_tokens += draft.suggestion.tokens

        self._transition(run, HealingState.VERIFYING)
        with span.child(
            "verify",
            selector=draft.suggestion.locator.value,
            strategy=draft.suggestion.locator.strategy,
        ) as verify_span:
            draft.verification = await self._guard(run, verifier.verify(run.page, draft.suggestion))
            verify_span.set_attributes(
                status=draft.verification.status,
                match_count=draft.verification.match_count,
                reason=draft.verification.reason,
            )
            if draft.verification.status is VerificationStatus.ERROR:
                verify_span.end(SpanStatus.ERROR)

        if draft.verification.resolved:
            return HealingState.SUCCEEDED, ""
        run.pending_feedback = _verification_feedback(draft.suggestion, draft.verification)
        return HealingState.RETRYING, draft.verification.reason

    def _next_request(self, run: _AttemptRun, candidates: tuple[ScoredCandidate, ...]) -> HealingRequest:
        if run.request is None:
            run.request = HealingRequest(
                original_selector=run.original_selector,
                error_context=run.error_context,
                intent=run.intent,
                candidates=candidates,
            )
        else:
            run.request = run.request.next_round(candidates, run.pending_feedback or None)
        run.pending_feedback = ""
        return run.request

    async def _needs_reextraction(self, run: _AttemptRun) -> bool:
        if run.options.reextract == "always":
            return True
        probe = getattr(run.page, "has_changed", None)
        if probe is None:
            return False
        try:
            changed = await self._guard(
                run,
                with_timeout(probe(), run.options.per_step_timeout, TimeoutError, "page change probe"),
            )
        except HealingCancelled:
            raise
        except Exception as exc:  # noqa: BLE001 - an unreadable page is caught by the next extraction.
            logger.warning("page change probe failed, re-extracting: %s", exc)
            return True
        return bool(changed)

    async def _guard(self, run: _AttemptRun, awaitable: Awaitable[T]) -> T:
        """Races a suspending step against the cancel signal; the loser is cancelled."""

        if run.cancel.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise HealingCancelled(run.cancel_reason)
        step = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(run.cancel.wait())
        try:
            done, _ = await asyncio.wait({step, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not step.done():
                step.cancel()
        if step in done:
            return step.result()
        await asyncio.gather(step, return_exceptions=True)
        raise HealingCancelled(run.cancel_reason)

    def _transition(self, run: _AttemptRun, target: HealingState) -> None:
        if target not in TERMINAL_STATES and run.cancel.is_set():
            raise HealingCancelled(run.cancel_reason)
        allowed = TRANSITIONS.get(run.state, frozenset())
        if target not in allowed:
            raise HealingInvariantError(f"illegal healing transition {run.state.value} -> {target.value}")
        logger.debug("attempt %s: %s -> %s", run.attempt_id, run.state.value, target.value)
        run.state = target

    @staticmethod
    def _force_state(run: _AttemptRun, target: HealingState) -> None:
        logger.debug("attempt %s: %s -> %s (forced)", run.attempt_id, run.state.value, target.value)
        run.state = target

    @staticmethod
    def _arm_attempt_timeout(run: _AttemptRun) -> asyncio.TimerHandle | None:
        timeout = run.options.attempt_timeout
        if timeout is None:
            return None

        def expire() -> None:
            run.cancel_reason = f"attempt timeout of {timeout}s exceeded"
            run.cancel.set()

        return asyncio.get_running_loop().call_later(timeout, expire)

    def _close(
        self,
        run: _AttemptRun,
        root: Span,
        outcome: AttemptOutcome,
        locator: Locator | None,
        reason: str,
    ) -> HealingAttempt:
        if len(run.rounds) > run.options.max_rounds:
            message = f"{len(run.rounds)} rounds exceed the budget of {run.options.max_rounds}"
            root.set_attributes(rounds=len(run.rounds), error=f"HealingInvariantError: {message}")
            root.end(SpanStatus.ERROR)
            raise HealingInvariantError(message)
        elapsed = time.monotonic() - run.started
        root.set_attributes(
            outcome=outcome,
            rounds=len(run.rounds),
            total_tokens=run.total_tokens,
            healed_selector=locator.value if locator else None,
            reason=reason,
            elapsed_seconds=round(elapsed, 4),
        )
        if outcome is AttemptOutcome.HEALED:
            root.end(SpanStatus.OK)
        elif outcome is AttemptOutcome.ABORTED and reason.startswith("cancelled"):
            root.end(SpanStatus.ABORTED)
        else:
            root.end(SpanStatus.ERROR)

        attempt = HealingAttempt(
            attempt_id=run.attempt_id,
            original_selector=run.original_selector,
            intent=run.intent,
            error_context=run.error_context,
            outcome=outcome,
            rounds=tuple(run.rounds),
            healed_locator=locator,
            reason=reason,
            elapsed_seconds=elapsed,
            total_tokens=run.total_tokens,
            spans=root.records,
        )
        logger.info(
            "healing %r finished %s after %d round(s)%s",
            run.original_selector,
            outcome.value,
            attempt.round_count,
            f": {reason}" if reason else "",
        )
        if self.audit_logger is not None:
            self.audit_logger.write(attempt)
        return attempt


def _verification_feedback(suggestion: HealingSuggestion, verification: VerificationResult) -> str:
    described = suggestion.locator.describe()
    if verification.status is VerificationStatus.NOT_FOUND:
        return f"previous suggestion {described} matched 0 elements"
    if verification.status is VerificationStatus.AMBIGUOUS:
        return f"previous suggestion {described} matched {verification.match_count} elements; it must match exactly one"
    return f"previous suggestion {described} could not be evaluated: {verification.reason}"


def create_healer(
    base: HealingOptions | None = None,
    backend: ReasoningBackend | None = None,
    sink: TraceSink | None = None,
) -> Healer:
    """Builds a healer from environment overrides, wiring artifacts and traces under ``artifacts_dir``."""

    configure_logging()
    options = ConfigLoader.options_from_env(base)
    audit_logger = artifact_manager = None
    if options.artifacts_dir:
        root = Path(options.artifacts_dir)
        audit_logger = HealingAuditLogger(root)
        artifact_manager = ArtifactManager(root)
        if sink is None:
            sink = JsonlTraceSink(root / "traces.jsonl")
    return Healer(
        backend=backend,
        options=options,
        recorder=TraceRecorder(sink, enabled=load_telemetry_enabled()),
        audit_logger=audit_logger,
        artifact_manager=artifact_manager,
    )
