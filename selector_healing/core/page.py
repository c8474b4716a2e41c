from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

from selenium.webdriver.common.by import By

from selector_healing.core.dom_monitor import DomMonitor
from selector_healing.core.metadata import Locator, LocatorStrategy
from selector_healing.utils.dom_extract import COLLECT_ELEMENTS_SCRIPT


@runtime_checkable
class PageHandle(Protocol):
    """What the healing engine needs from a live page. It never clicks, types or navigates."""

    async def read_interactive_elements(self) -> list[dict[str, Any]]: ...

    async def resolve_locator(self, locator: Locator) -> list[Any]: ...


class SeleniumPage:
    """Adapts a Selenium WebDriver to ``PageHandle``; driver calls run in worker threads."""

    def __init__(self, driver, dom_monitor: DomMonitor | None = None, max_elements: int = 300) -> None:
        self.driver = driver
        self.dom_monitor = dom_monitor
        self.max_elements = max_elements
        self.url = ""

    async def read_interactive_elements(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._read_elements)

    async def resolve_locator(self, locator: Locator) -> list[Any]:
        by, value = selenium_locator(locator)
        return list(await asyncio.to_thread(self.driver.find_elements, by, value))

    async def has_changed(self) -> bool:
        """Reports navigation or structural DOM mutation since the previous read."""

        if self.dom_monitor is None:
            current = await asyncio.to_thread(lambda: self.driver.current_url)
            return current != self.url
        report = await asyncio.to_thread(self.dom_monitor.flush, self.driver)
        return report.changed

    def _read_elements(self) -> list[dict[str, Any]]:
        if self.dom_monitor is not None:
            self.url = self.dom_monitor.flush(self.driver).url
        else:
            self.url = self.driver.current_url
        return self.driver.execute_script(COLLECT_ELEMENTS_SCRIPT, self.max_elements) or []


def selenium_locator(locator: Locator) -> tuple[str, str]:
    value = locator.value
    if locator.strategy is LocatorStrategy.XPATH:
        return By.XPATH, value
    if locator.strategy is LocatorStrategy.ID:
        return By.ID, value
    if locator.strategy is LocatorStrategy.NAME:
        return By.NAME, value
    if locator.strategy is LocatorStrategy.TEST_ID:
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return By.CSS_SELECTOR, f'[data-testid="{escaped}"]'
    if locator.strategy is LocatorStrategy.TEXT:
        literal = xpath_literal(" ".join(value.split()))
        # innermost element whose normalized text matches, not its ancestors
        return By.XPATH, f"//*[normalize-space(.)={literal}][not(.//*[normalize-space(.)={literal}])]"
    return By.CSS_SELECTOR, value


def xpath_literal(value: str) -> str:
    if "'" not in value:
        return f"'{value}'"
    if '"' not in value:
        return f'"{value}"'
    parts = value.split("'")
    return "concat(" + ", \"'\", ".join(f"'{part}'" for part in parts) + ")"
