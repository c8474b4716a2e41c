from __future__ import annotations

import json
from typing import Any, Iterable

from selector_healing.core.metadata import ElementSnapshot, PageInventory

COLLECT_ELEMENTS_SCRIPT = r"""
const limit = arguments[0] || 300;
const CONTROL_TAGS = new Set(["a", "button", "input", "select", "textarea", "label", "summary", "option"]);
const MARKER_ATTRIBUTES = ["role", "data-testid", "aria-label", "tabindex"];

const isCandidate = (el) =>
  CONTROL_TAGS.has(el.localName) ||
  MARKER_ATTRIBUTES.some((name) => el.hasAttribute(name)) ||
  el.isContentEditable ||
  typeof el.onclick === "function";

const hintFor = (el) => {
  const tag = el.localName;
  const testId = el.getAttribute("data-testid");
  const name = el.getAttribute("name");
  if (el.id) return "#" + CSS.escape(el.id);
  if (testId) return `[data-testid="${testId}"]`;
  if (name) return `${tag}[name="${name}"]`;
  const classes = [...el.classList].slice(0, 3).map((value) => "." + CSS.escape(value)).join("");
  return tag + classes;
};

const labelFor = (el) => {
  let source = el.labels && el.labels.length ? el.labels[0] : null;
  const labelledBy = el.getAttribute("aria-labelledby");
  if (!source && labelledBy) source = document.getElementById(labelledBy);
  return source ? (source.innerText || source.textContent || "").trim().slice(0, 200) : "";
};

const describe = (el) => {
  const box = el.getBoundingClientRect();
  const attributes = {};
  for (const attr of el.attributes) attributes[attr.name] = attr.value;
  return {
    tag: el.localName,
    text: (el.innerText || el.textContent || "").trim().slice(0, 200),
    label: labelFor(el),
    attributes: attributes,
    parent_tag: el.parentElement ? el.parentElement.localName : "",
    has_click_handler: typeof el.onclick === "function",
    content_editable: el.isContentEditable,
    rect: {x: box.x, y: box.y, width: box.width, height: box.height},
    selector_hint: hintFor(el),
  };
};

const found = [];
const walk = (root) => {
  const walker = document.createTreeWalker(root, NodeFilter.SHOW_ELEMENT);
  for (let el = walker.nextNode(); el && found.length < limit; el = walker.nextNode()) {
    if (isCandidate(el)) found.push(describe(el));
    if (el.shadowRoot) walk(el.shadowRoot);
  }
};
walk(document);
return found;
"""

INTERACTIVE_TAGS = frozenset({"a", "button", "input", "select", "textarea", "summary", "option"})
INTERACTIVE_ROLES = frozenset(
    {
        "button",
        "link",
        "checkbox",
        "radio",
        "switch",
        "tab",
        "menuitem",
        "menuitemcheckbox",
        "menuitemradio",
        "option",
        "combobox",
        "textbox",
        "searchbox",
        "slider",
        "spinbutton",
    }
)
_NAME_SOURCES = ("aria-label", "label", "title", "placeholder", "alt")


def normalize_descriptor(index: int, raw: dict[str, Any]) -> ElementSnapshot:
    """Turns one raw page descriptor into an immutable snapshot."""

    attributes = {str(key): str(value) for key, value in (raw.get("attributes") or {}).items()}
    tag = str(raw.get("tag", "")).lower()
    role = attributes.get("role", "")
    rect = raw.get("rect") or {}
    return ElementSnapshot(
        index=index,
        tag=tag,
        element_id=attributes.get("id", ""),
        accessible_name=_accessible_name(attributes, str(raw.get("label") or "")),
        role=role,
        text=" ".join(str(raw.get("text") or "").split())[:200],
        input_type=attributes.get("type", ""),
        rect=(
            float(rect.get("x", 0.0)),
            float(rect.get("y", 0.0)),
            float(rect.get("width", 0.0)),
            float(rect.get("height", 0.0)),
        ),
        attributes=tuple(sorted(attributes.items())),
        selector_hint=str(raw.get("selector_hint") or _fallback_hint(tag, attributes)),
        interactive=_is_interactive(tag, role, attributes, raw),
    )


def build_inventory(
    raw_elements: Iterable[dict[str, Any]],
    url: str = "",
    extraction_seconds: float = 0.0,
    captured_at: float = 0.0,
    max_elements: int | None = None,
) -> PageInventory:
    elements: list[ElementSnapshot] = []
    for raw in raw_elements:
        if max_elements is not None and len(elements) >= max_elements:
            break
        elements.append(normalize_descriptor(len(elements), raw))
    return PageInventory(
        elements=tuple(elements),
        url=url,
        extraction_seconds=extraction_seconds,
        captured_at=captured_at,
    )


def inventory_payload(inventory: PageInventory) -> str:
    summary = {
        "url": inventory.url,
        "element_count": inventory.element_count,
        "interactive_count": inventory.interactive_count,
        "extraction_seconds": inventory.extraction_seconds,
        "elements": [element.to_payload() for element in inventory.elements],
    }
    return json.dumps(summary, indent=2)


def _accessible_name(attributes: dict[str, str], label: str) -> str:
    for source in _NAME_SOURCES:
        value = label if source == "label" else attributes.get(source, "")
        if value.strip():
            return " ".join(value.split())
    return ""


def _is_interactive(tag: str, role: str, attributes: dict[str, str], raw: dict[str, Any]) -> bool:
    if tag in INTERACTIVE_TAGS:
        return not (tag == "input" and attributes.get("type", "").lower() == "hidden")
    if role.lower() in INTERACTIVE_ROLES:
        return True
    if raw.get("has_click_handler") or raw.get("content_editable") or "onclick" in attributes:
        return True
    try:
        return int(attributes.get("tabindex", "-1")) >= 0
    except ValueError:
        return False


def _fallback_hint(tag: str, attributes: dict[str, str]) -> str:
    if attributes.get("id"):
        return f"#{attributes['id']}"
    if attributes.get("data-testid"):
        return f'[data-testid="{attributes["data-testid"]}"]'
    if attributes.get("name"):
        return f'{tag}[name="{attributes["name"]}"]'
    return tag
