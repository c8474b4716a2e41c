from __future__ import annotations

import json
import threading
from pathlib import Path

from selector_healing.core.metadata import HealingAttempt, Locator, LocatorStrategy


class HealingAuditLogger:
    """Persists closed healing attempts and the latest selector overrides."""

    def __init__(self, root: str | Path = "artifacts") -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.healed_elements_path = self.root / "healed_elements.jsonl"
        self.selector_overrides_path = self.root / "selector_overrides.json"
        self._lock = threading.Lock()

    def write(self, attempt: HealingAttempt) -> None:
        line = json.dumps(attempt.summary(), sort_keys=True) + "\n"
        with self._lock:
            with self.healed_elements_path.open("a", encoding="utf-8") as handle:
                handle.write(line)

            if attempt.healed and attempt.healed_locator:
                overrides = self._read_raw_overrides()
                overrides[attempt.original_selector] = {
                    "strategy": attempt.healed_locator.strategy.value,
                    "value": attempt.healed_locator.value,
                }
                self.selector_overrides_path.write_text(
                    json.dumps(overrides, indent=2, sort_keys=True),
                    encoding="utf-8",
                )

    def read_overrides(self) -> dict[str, Locator]:
        overrides: dict[str, Locator] = {}
        for selector, entry in self._read_raw_overrides().items():
            if isinstance(entry, str):
                overrides[selector] = Locator.infer(entry)
            else:
                overrides[selector] = Locator(LocatorStrategy(entry["strategy"]), entry["value"])
        return overrides

    def read_attempts(self) -> list[dict]:
        if not self.healed_elements_path.exists():
            return []
        with self.healed_elements_path.open("r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]

    def _read_raw_overrides(self) -> dict:
        if not self.selector_overrides_path.exists():
            return {}
        return json.loads(self.selector_overrides_path.read_text(encoding="utf-8"))
