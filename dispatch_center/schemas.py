from __future__ import annotations

import re
import time

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dispatch_center.features import AIFeature

_KEY_SEPARATORS = re.compile(r"[,\n]")


def parse_api_keys(raw: str | list[str] | None) -> list[str]:
    """Split a comma/newline separated key string into a clean list."""
    if not raw:
        return []
    parts = raw if isinstance(raw, list) else _KEY_SEPARATORS.split(raw)
    return [k.strip() for k in parts if k and k.strip()]


class ModelLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    context_window: int = Field(gt=0, description="Max input context in tokens")
    max_output: int = Field(gt=0, description="Upper bound for the max_tokens parameter")


class DiscoveredLimits(BaseModel):
    """Limits learned from a provider error. Either field may be missing."""

    max_output: int | None = Field(default=None, gt=0)
    context_window: int | None = Field(default=None, gt=0)
    discovered_at: float = Field(default_factory=time.time)

    def merged_with(self, newer: DiscoveredLimits) -> DiscoveredLimits:
        return DiscoveredLimits(
            max_output=newer.max_output if newer.max_output is not None else self.max_output,
            context_window=(
                newer.context_window if newer.context_window is not None else self.context_window
            ),
            discovered_at=newer.discovered_at,
        )


class ProviderConfig(BaseModel):
    id: str = Field(min_length=1)
    platform: str = Field(min_length=1)
    name: str = ""
    base_url: str = ""
    api_keys: list[str] = Field(default_factory=list)
    models: list[str] = Field(default_factory=list)

    @field_validator("api_keys", mode="before")
    @classmethod
    def _split_keys(cls, value: str | list[str] | None) -> list[str]:
        return parse_api_keys(value)

    @property
    def display_name(self) -> str:
        return self.name or self.platform


class DispatchConfig(BaseModel):
    """Provider pool plus feature → ``platform:model`` bindings."""

    providers: list[ProviderConfig] = Field(default_factory=list)
    feature_bindings: dict[AIFeature, list[str]] = Field(default_factory=dict)

    @field_validator("feature_bindings", mode="before")
    @classmethod
    def _normalize_bindings(cls, value: dict | None) -> dict:
        if not value:
            return {}
        normalized = {}
        for feature, bindings in value.items():
            if bindings is None:
                normalized[feature] = []
            elif isinstance(bindings, str):
                normalized[feature] = [bindings]
            else:
                normalized[feature] = list(bindings)
        return normalized

    def get_feature_bindings(self, feature: AIFeature) -> list[str]:
        return self.feature_bindings.get(feature, [])
