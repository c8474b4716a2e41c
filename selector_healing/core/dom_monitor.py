from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

LOCATOR_ATTRIBUTES = ("id", "class", "name", "role", "data-testid", "aria-label", "hidden", "disabled")
MAX_BUFFERED_EVENTS = 200

INSTALL_MONITOR_SCRIPT = r"""
const watched = arguments[0];
const capacity = arguments[1];
const state = window.__selectorHealingMonitor || (window.__selectorHealingMonitor = {buffer: [], roots: new WeakSet()});

const record = (mutation, scope) => {
  state.buffer.push({
    type: mutation.type,
    scope: scope,
    tag: mutation.target && mutation.target.nodeType === 1 ? mutation.target.localName : "",
    attributeName: mutation.attributeName || "",
    addedCount: mutation.addedNodes ? mutation.addedNodes.length : 0,
    removedCount: mutation.removedNodes ? mutation.removedNodes.length : 0,
  });
  if (state.buffer.length > capacity) state.buffer.splice(0, state.buffer.length - capacity);
};

const watch = (root, scope) => {
  if (state.roots.has(root)) return;
  state.roots.add(root);
  const observer = new MutationObserver((batch) => {
    batch.forEach((mutation) => {
      record(mutation, scope);
      (mutation.addedNodes || []).forEach((node) => {
        if (node.nodeType === 1 && node.shadowRoot) watch(node.shadowRoot, node.localName);
      });
    });
  });
  observer.observe(root, {childList: true, subtree: true, attributes: true, attributeFilter: watched});
};

watch(document, "document");
document.querySelectorAll("*").forEach((node) => {
  if (node.shadowRoot) watch(node.shadowRoot, node.localName);
});
"""

FLUSH_EVENTS_SCRIPT = """
const state = window.__selectorHealingMonitor;
if (!state) return {installed: false, url: location.href, events: []};
const events = state.buffer;
state.buffer = [];
return {installed: true, url: location.href, events: events};
"""


@dataclass(slots=True)
class MutationReport:
    url: str
    navigated: bool
    events: list[dict[str, Any]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.navigated or structural_change(self.events)


def structural_change(events: list[dict[str, Any]]) -> bool:
    """True when any event adds/removes nodes or rewrites a locator-bearing attribute."""

    return any(_is_structural(event) for event in events)


def _is_structural(event: dict[str, Any]) -> bool:
    kind = event.get("type")
    if kind == "childList":
        return bool(event.get("addedCount") or event.get("removedCount"))
    return kind == "attributes" and event.get("attributeName") in LOCATOR_ATTRIBUTES


class DomMonitor:
    """Keeps a browser-side buffer of DOM mutations between page reads.

    The buffer lives on ``window``, so losing it means the document was replaced.
    """

    def __init__(self) -> None:
        self._last_url: str | None = None

    def install(self, driver) -> None:
        driver.execute_script(INSTALL_MONITOR_SCRIPT, list(LOCATOR_ATTRIBUTES), MAX_BUFFERED_EVENTS)

    def flush(self, driver) -> MutationReport:
        payload = driver.execute_script(FLUSH_EVENTS_SCRIPT) or {}
        installed = bool(payload.get("installed"))
        url = str(payload.get("url", ""))
        previous, self._last_url = self._last_url, url
        if not installed:
            self.install(driver)
        return MutationReport(
            url=url,
            navigated=not installed or (previous is not None and url != previous),
            events=list(payload.get("events") or []),
        )
