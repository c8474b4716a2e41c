from __future__ import annotations

from typing import Any


class HealingError(RuntimeError):
    """Raised when selector healing fails."""

    def __init__(self, message: str, attempt: Any = None) -> None:
        super().__init__(message)
        self.attempt = attempt


class HealingConfigError(HealingError):
    """Raised when healing options or backend credentials are unusable."""


class ExtractionError(HealingError):
    """Raised when the page cannot be read or extraction exceeds its budget."""


class BackendError(HealingError):
    """Base class for reasoning backend failures."""


class BackendUnavailable(BackendError):
    """Network, auth or endpoint failure. Not retriable within an attempt."""


class BackendRateLimited(BackendError):
    """The backend asked us to slow down."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class BackendMalformedResponse(BackendError):
    """The backend answered but the answer is not a usable suggestion."""


class HealingCancelled(HealingError):
    """The caller cancelled the attempt."""


class HealingInvariantError(HealingError):
    """An internal invariant of the healing loop was violated."""
