"""Model capability registry.

Resolves a model name to its context window and max output tokens.
Lookup order, first hit wins:

1. discovered cache (limits learned from live API errors)
2. static table, exact match
3. static table, prefix match, longest prefix first
4. ``_default``

Lookup is by model name, not by URL: a relay serving ``deepseek-v3.2`` has the
same limits as the vendor endpoint. Only chat/text models are covered.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from dispatch_center.constants import DISCOVERY_CACHE_PATH
from dispatch_center.schemas import DiscoveredLimits, ModelLimits

logger = logging.getLogger(__name__)

DEFAULT_KEY = "_default"


def _limits(context_window: int, max_output: int) -> ModelLimits:
    return ModelLimits(context_window=context_window, max_output=max_output)


# Values verified against vendor documentation; entries marked "conservative"
# are guesses on the low side. Relays use the same limits as the vendor.
STATIC_REGISTRY: dict[str, ModelLimits] = {
    # DeepSeek (V3.2: 128K context)
    "deepseek-v3": _limits(128000, 8192),
    "deepseek-v3.2": _limits(128000, 8192),
    "deepseek-chat": _limits(128000, 8192),
    "deepseek-r1": _limits(128000, 16384),
    "deepseek-reasoner": _limits(128000, 16384),
    # Zhipu GLM
    "glm-4.7": _limits(200000, 128000),
    "glm-4.6v": _limits(128000, 8192),  # conservative
    "glm-4.5-flash": _limits(128000, 8192),  # conservative
    # Google Gemini
    "gemini-2.5-flash": _limits(1048576, 65536),
    "gemini-2.5-pro": _limits(1048576, 65536),
    "gemini-3-flash-preview": _limits(1048576, 65536),
    "gemini-3-pro-preview": _limits(1048576, 65536),
    "gemini-2.0-flash": _limits(1048576, 8192),
    # Others (conservative)
    "kimi-k2": _limits(128000, 8192),
    "qwen3-max": _limits(128000, 8192),
    "qwen3-max-preview": _limits(128000, 8192),
    "minimax-m2.1": _limits(128000, 8192),
    # Generic prefixes
    "deepseek-": _limits(128000, 8192),
    "gemini-": _limits(1048576, 65536),
    "glm-": _limits(128000, 8192),
    "claude-": _limits(200000, 8192),
    "gpt-": _limits(128000, 16384),
    "doubao-": _limits(32000, 4096),
    DEFAULT_KEY: _limits(32000, 4096),
}


class DiscoveryStore(Protocol):
    def get(self, model: str) -> DiscoveredLimits | None: ...

    def set(self, model: str, limits: DiscoveredLimits) -> None: ...


class InMemoryDiscoveryStore:
    def __init__(self) -> None:
        self._entries: dict[str, DiscoveredLimits] = {}
        self._lock = threading.Lock()

    def get(self, model: str) -> DiscoveredLimits | None:
        return self._entries.get(model)

    def set(self, model: str, limits: DiscoveredLimits) -> None:
        with self._lock:
            existing = self._entries.get(model)
            self._entries[model] = existing.merged_with(limits) if existing else limits


class JsonFileDiscoveryStore:
    """Discovered limits persisted as one JSON object keyed by model name."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._entries = self._load()

    def _load(self) -> dict[str, DiscoveredLimits]:
        if not self.path.is_file():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read discovery cache %s: %s", self.path, e)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Discovery cache %s is not a JSON object, ignoring", self.path)
            return {}

        entries: dict[str, DiscoveredLimits] = {}
        for model, data in raw.items():
            try:
                entries[model.lower()] = DiscoveredLimits.model_validate(data)
            except ValidationError as e:
                logger.warning("Skipping invalid discovery entry for %s: %s", model, e)
        logger.info("Loaded %d discovered model limit(s) from %s", len(entries), self.path)
        return entries

    def get(self, model: str) -> DiscoveredLimits | None:
        return self._entries.get(model)

    def set(self, model: str, limits: DiscoveredLimits) -> None:
        with self._lock:
            existing = self._entries.get(model)
            self._entries[model] = existing.merged_with(limits) if existing else limits
            payload = {k: v.model_dump(exclude_none=True) for k, v in self._entries.items()}
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


class CallableDiscoveryStore:
    """Adapter for a collaborator that owns persistence (getter/setter pair)."""

    def __init__(
        self,
        getter: Callable[[str], DiscoveredLimits | None],
        setter: Callable[[str, DiscoveredLimits], None],
    ) -> None:
        self._getter = getter
        self._setter = setter

    def get(self, model: str) -> DiscoveredLimits | None:
        return self._getter(model)

    def set(self, model: str, limits: DiscoveredLimits) -> None:
        self._setter(model, limits)


def default_discovery_store() -> DiscoveryStore:
    if DISCOVERY_CACHE_PATH:
        return JsonFileDiscoveryStore(DISCOVERY_CACHE_PATH)
    return InMemoryDiscoveryStore()


class ModelCapabilityRegistry:
    def __init__(
        self,
        store: DiscoveryStore | None = None,
        static: dict[str, ModelLimits] | None = None,
    ) -> None:
        self.store: DiscoveryStore = store if store is not None else default_discovery_store()
        self._static = {k.lower(): v for k, v in (static or STATIC_REGISTRY).items()}
        if DEFAULT_KEY not in self._static:
            self._static[DEFAULT_KEY] = STATIC_REGISTRY[DEFAULT_KEY]
        self._prefix_keys = sorted(
            (k for k in self._static if k != DEFAULT_KEY), key=len, reverse=True
        )

    def inject_discovery_cache(
        self,
        getter: Callable[[str], DiscoveredLimits | None],
        setter: Callable[[str, DiscoveredLimits], None],
    ) -> None:
        self.store = CallableDiscoveryStore(getter, setter)

    def get_model_limits(self, model: str) -> ModelLimits:
        name = (model or "").lower()
        static = self._lookup_static(name)

        try:
            discovered = self.store.get(name) if name else None
        except Exception as e:
            logger.warning("Discovery cache lookup failed for %s: %s", name, e)
            discovered = None

        if discovered is None:
            return static
        return ModelLimits(
            context_window=discovered.context_window or static.context_window,
            max_output=discovered.max_output or static.max_output,
        )

    def _lookup_static(self, name: str) -> ModelLimits:
        exact = self._static.get(name)
        if exact is not None:
            return exact
        for key in self._prefix_keys:
            if name.startswith(key):
                return self._static[key]
        return self._static[DEFAULT_KEY]

    def cache_discovered(self, model: str, limits: DiscoveredLimits) -> bool:
        name = model.lower()
        try:
            self.store.set(name, limits)
        except Exception as e:
            logger.error("Failed to persist discovered limits for %s: %s", name, e)
            return False

        learned = []
        if limits.max_output is not None:
            learned.append(f"max_output={limits.max_output}")
        if limits.context_window is not None:
            learned.append(f"context_window={limits.context_window}")
        logger.info("ModelRegistry: learned limits for %s: %s", name, ", ".join(learned))
        return True


# =============================================================================
# Error-driven discovery
# =============================================================================
#
# Best effort: vendors phrase limit errors differently and change wording
# without notice. Each matcher is independent; the first hit per group wins.
#   DeepSeek: "Invalid max_tokens value, the valid range of max_tokens is [1, 8192]"
#   OpenAI:   "maximum context length is 128000 tokens ... you requested 150000 tokens"
#   Zhipu:    "max_tokens must be less than or equal to 8192"

_RANGE_PATTERN = re.compile(r"valid\s+range.*?\[\s*\d+\s*,\s*(\d+)\s*\]", re.IGNORECASE)
_LTE_PATTERN = re.compile(
    r"max_tokens.*?(?:less than or equal to|<=|不超过|上限为?)\s*(\d{3,6})", re.IGNORECASE
)
_GENERIC_MAX_TOKENS_PATTERN = re.compile(r"max_tokens.*?\b(\d{3,6})\b", re.IGNORECASE)
_CONTEXT_LENGTH_PATTERN = re.compile(r"context.*?length.*?(\d{4,7})", re.IGNORECASE)
_MAXIMUM_TOKENS_PATTERN = re.compile(r"maximum.*?(\d{4,7})\s*tokens", re.IGNORECASE)

LimitMatcher = Callable[[str], int | None]


def _matcher(pattern: re.Pattern[str]) -> LimitMatcher:
    def match(text: str) -> int | None:
        found = pattern.search(text)
        return int(found.group(1)) if found else None

    return match


MAX_OUTPUT_MATCHERS: list[LimitMatcher] = [
    _matcher(_RANGE_PATTERN),
    _matcher(_LTE_PATTERN),
    _matcher(_GENERIC_MAX_TOKENS_PATTERN),
]

CONTEXT_WINDOW_MATCHERS: list[LimitMatcher] = [
    _matcher(_CONTEXT_LENGTH_PATTERN),
    _matcher(_MAXIMUM_TOKENS_PATTERN),
]


def _first_match(matchers: list[LimitMatcher], text: str) -> int | None:
    for matcher in matchers:
        value = matcher(text)
        if value:
            return value
    return None


def parse_limits_from_error(error_text: str) -> DiscoveredLimits | None:
    """Extract model limits from a 400 error body.

    Returns None when nothing matches; never raises.
    """
    if not isinstance(error_text, str) or not error_text:
        return None

    max_output = _first_match(MAX_OUTPUT_MATCHERS, error_text)
    context_window = _first_match(CONTEXT_WINDOW_MATCHERS, error_text)
    if max_output is None and context_window is None:
        return None
    return DiscoveredLimits(max_output=max_output, context_window=context_window)
