from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

SUPPORTED_BACKENDS = ("openai", "anthropic", "gemini")


class HealingOptions(BaseModel):
    """Per-attempt budget and behaviour of the healing loop."""

    max_rounds: int = Field(default=3, ge=1)
    per_step_timeout: float = Field(default=10.0, gt=0)
    extraction_timeout: float = Field(default=15.0, gt=0)
    max_candidates: int = Field(default=15, ge=1)
    max_elements: int = Field(default=300, ge=1)
    backend: str = "openai"
    reextract: Literal["on_change", "always"] = "on_change"
    backoff_base: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=8.0, ge=0)
    attempt_timeout: float | None = Field(default=None, gt=0)
    artifacts_dir: str | None = None

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SUPPORTED_BACKENDS:
            raise ValueError(f"Unsupported backend: {value}")
        return normalized


class EnvironmentConfig(BaseModel):
    base_url: str = ""
    default_timeout_seconds: int = 10


class ElementDefinition(BaseModel):
    key: str
    intent: str
    selector_type: str = "css"
    selector: str
    fallback_selectors: list[str] = Field(default_factory=list)

    @field_validator("selector_type")
    @classmethod
    def validate_selector_type(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"css", "xpath"}:
            raise ValueError("selector_type must be 'css' or 'xpath'")
        return normalized


class SuiteConfig(BaseModel):
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    healing: HealingOptions = Field(default_factory=HealingOptions)
    elements: list[ElementDefinition] = Field(default_factory=list)

    def get_element(self, key: str) -> ElementDefinition:
        for element in self.elements:
            if element.key == key:
                return element
        raise KeyError(f"Unknown element key: {key}")
