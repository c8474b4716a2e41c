from __future__ import annotations

import logging
import time

from selector_healing.core.exceptions import ExtractionError
from selector_healing.core.metadata import PageInventory
from selector_healing.logging.artifacts import ArtifactManager
from selector_healing.logging.trace import Span
from selector_healing.utils.dom_extract import build_inventory
from selector_healing.utils.wait import with_timeout

logger = logging.getLogger(__name__)


class ContextExtractor:
    """Reads the live page into an ordered, immutable inventory of candidate elements.

    Extraction is time-boxed on its own: a hung page must not consume the whole attempt.
    """

    def __init__(
        self,
        timeout: float = 15.0,
        max_elements: int = 300,
        artifact_manager: ArtifactManager | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_elements = max_elements
        self.artifact_manager = artifact_manager

    async def extract(self, page, span: Span | None = None) -> PageInventory:
        started = time.monotonic()
        try:
            raw_elements = await with_timeout(
                page.read_interactive_elements(),
                self.timeout,
                ExtractionError,
                "page extraction",
            )
        except ExtractionError:
            raise
        except Exception as exc:  # noqa: BLE001 - any page failure means the page is unusable.
            raise ExtractionError(f"page could not be read: {type(exc).__name__}: {exc}") from exc

        if not isinstance(raw_elements, list):
            raise ExtractionError(f"page returned {type(raw_elements).__name__} instead of an element list")

        try:
            inventory = build_inventory(
                raw_elements,
                url=str(getattr(page, "url", "") or ""),
                extraction_seconds=round(time.monotonic() - started, 4),
                captured_at=time.time(),
                max_elements=self.max_elements,
            )
        except (AttributeError, TypeError, ValueError) as exc:
            raise ExtractionError(f"page returned an unreadable element descriptor: {exc}") from exc
        logger.debug(
            "extracted %d elements (%d interactive) in %.3fs",
            inventory.element_count,
            inventory.interactive_count,
            inventory.extraction_seconds,
        )
        if span is not None:
            span.set_attributes(
                element_count=inventory.element_count,
                interactive_count=inventory.interactive_count,
                extraction_seconds=inventory.extraction_seconds,
                url=inventory.url,
            )
        if self.artifact_manager is not None:
            path = self.artifact_manager.write_inventory_snapshot(inventory.url or "page", inventory)
            if span is not None:
                span.set_attribute("snapshot_path", str(path))
        return inventory
