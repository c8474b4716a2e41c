from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import ValidationError

from selector_healing.config.schema import HealingOptions, SuiteConfig
from selector_healing.core.exceptions import HealingConfigError

_ENV_OPTIONS = {
    "HEALING_MAX_ROUNDS": "max_rounds",
    "HEALING_STEP_TIMEOUT": "per_step_timeout",
    "HEALING_EXTRACTION_TIMEOUT": "extraction_timeout",
    "HEALING_MAX_CANDIDATES": "max_candidates",
    "HEALING_REEXTRACT": "reextract",
    "HEALING_ARTIFACTS_DIR": "artifacts_dir",
    "LLM_PROVIDER": "backend",
}


class ConfigLoader:
    """Loads and validates the JSON suite configuration and env overrides."""

    @staticmethod
    def load(path: str | Path) -> SuiteConfig:
        config_path = Path(path)
        with config_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        return SuiteConfig.model_validate(payload)

    @staticmethod
    def options_from_env(base: HealingOptions | None = None) -> HealingOptions:
        payload = (base or HealingOptions()).model_dump()
        for variable, option in _ENV_OPTIONS.items():
            value = os.getenv(variable)
            if value:
                payload[option] = value
        try:
            return HealingOptions.model_validate(payload)
        except ValidationError as exc:
            raise HealingConfigError(f"Invalid healing options from environment: {exc}") from exc


def load_telemetry_enabled() -> bool:
    """Reads the process-wide telemetry switch. Call once at startup."""

    value = os.getenv("HEALING_TELEMETRY", "1").strip().lower()
    return value not in {"0", "false", "no", "off"}
