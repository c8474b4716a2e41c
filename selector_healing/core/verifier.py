from __future__ import annotations

import logging

from selector_healing.core.metadata import HealingSuggestion, VerificationResult, VerificationStatus
from selector_healing.utils.wait import with_timeout

logger = logging.getLogger(__name__)


class Verifier:
    """Read-only probe of a suggested locator against the live page."""

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout

    async def verify(self, page, suggestion: HealingSuggestion) -> VerificationResult:
        locator = suggestion.locator
        try:
            matches = await with_timeout(
                page.resolve_locator(locator),
                self.timeout,
                TimeoutError,
                f"resolving {locator.describe()}",
            )
        except Exception as exc:  # noqa: BLE001 - probe failures are classified, not raised.
            logger.debug("probe of %s failed: %s", locator.describe(), exc)
            return VerificationResult(
                status=VerificationStatus.ERROR,
                reason=f"{type(exc).__name__}: {exc}",
            )

        matches = list(matches or [])
        if not matches:
            return VerificationResult(
                status=VerificationStatus.NOT_FOUND,
                reason=f"{locator.describe()} matched 0 elements",
            )
        if len(matches) > 1:
            return VerificationResult(
                status=VerificationStatus.AMBIGUOUS,
                match_count=len(matches),
                reason=f"{locator.describe()} matched {len(matches)} elements",
            )
        return VerificationResult(
            status=VerificationStatus.RESOLVED,
            match_count=1,
            element=matches[0],
        )
