from __future__ import annotations

import asyncio
import logging

from selenium.common.exceptions import (
    InvalidSelectorException,
    NoSuchElementException,
    StaleElementReferenceException,
    TimeoutException,
)
from selenium.webdriver.support.ui import WebDriverWait

from selector_healing.config.schema import ElementDefinition, SuiteConfig
from selector_healing.core.dom_monitor import DomMonitor
from selector_healing.core.exceptions import HealingError
from selector_healing.core.healer import Healer
from selector_healing.core.metadata import Locator, LocatorStrategy
from selector_healing.core.page import SeleniumPage, selenium_locator
from selector_healing.logging.audit import HealingAuditLogger

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.2


class SafeFinder:
    """Element lookup by suite key that falls back to healing when every known selector fails."""

    def __init__(
        self,
        driver,
        suite_config: SuiteConfig,
        healer: Healer,
        audit_logger: HealingAuditLogger | None = None,
        dom_monitor: DomMonitor | None = None,
    ) -> None:
        self.driver = driver
        self.suite_config = suite_config
        self.healer = healer
        self.dom_monitor = dom_monitor
        self.selector_overrides = audit_logger.read_overrides() if audit_logger else {}

    def find(self, element_key: str, timeout: float | None = None):
        definition = self.suite_config.get_element(element_key)
        wait_seconds = timeout or self.suite_config.environment.default_timeout_seconds
        try:
            return self._wait_for_any(self._candidate_locators(definition), wait_seconds)
        except (NoSuchElementException, TimeoutException, StaleElementReferenceException) as exc:
            logger.info("'%s' not found with known selectors, healing", definition.key)
            return self._heal(definition, exc)

    def _heal(self, definition: ElementDefinition, failure: Exception):
        page = SeleniumPage(self.driver, dom_monitor=self.dom_monitor, max_elements=self.healer.options.max_elements)
        attempt = asyncio.run(self.healer.heal(page, definition.selector, failure, definition.intent))
        if not attempt.healed:
            raise HealingError(
                f"Could not heal '{definition.key}': {attempt.outcome.value} ({attempt.reason})",
                attempt=attempt,
            ) from failure
        logger.info("'%s' healed to %s", definition.key, attempt.healed_locator.describe())
        self.selector_overrides[definition.selector] = attempt.healed_locator
        return attempt.element

    def _candidate_locators(self, definition: ElementDefinition) -> list[Locator]:
        """Remembered override first, then the configured selector, then its fallbacks."""

        primary = Locator(LocatorStrategy(definition.selector_type), definition.selector)
        fallbacks = [Locator.infer(value) for value in definition.fallback_selectors]
        override = self.selector_overrides.get(definition.selector)
        return ([override] if override else []) + [primary] + fallbacks

    def _wait_for_any(self, locators: list[Locator], timeout: float):
        rejected: list[InvalidSelectorException] = []

        def first_match(driver):
            for locator in locators:
                try:
                    found = driver.find_elements(*selenium_locator(locator))
                except InvalidSelectorException as exc:
                    rejected.append(exc)
                    continue
                if found:
                    return found[0]
            return False

        try:
            return WebDriverWait(self.driver, timeout, poll_frequency=POLL_SECONDS).until(first_match)
        except TimeoutException:
            if rejected:
                raise NoSuchElementException(str(rejected[-1])) from rejected[-1]
            raise
