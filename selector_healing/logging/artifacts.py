from __future__ import annotations

import re
import shutil
from datetime import UTC, datetime
from pathlib import Path

from selector_healing.core.metadata import PageInventory
from selector_healing.utils.dom_extract import inventory_payload

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class ArtifactManager:
    """Owns the artifact directory: inventory snapshots plus the audit files beside them."""

    def __init__(self, root: str | Path = "artifacts") -> None:
        self.root = Path(root)
        self.inventory_root = self.root / "inventory_snapshots"
        self.inventory_root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def timestamp() -> str:
        return datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")

    def write_inventory_snapshot(self, label: str, inventory: PageInventory, timestamp: str | None = None) -> Path:
        path = self.inventory_root / f"{timestamp or self.timestamp()}_{_safe_name(label)}.json"
        path.write_text(inventory_payload(inventory), encoding="utf-8")
        return path

    def reset(self) -> Path:
        """Deletes every artifact but keeps the directory layout and ``.gitkeep`` markers."""

        for entry in list(self.root.iterdir()) + list(self.inventory_root.iterdir()):
            if entry == self.inventory_root or entry.name == ".gitkeep":
                continue
            if entry.is_dir():
                shutil.rmtree(entry)
            elif entry.exists():
                entry.unlink()
        self.inventory_root.mkdir(parents=True, exist_ok=True)
        return self.root


def _safe_name(label: str) -> str:
    return _UNSAFE.sub("_", label).strip("_")[:60] or "page"
