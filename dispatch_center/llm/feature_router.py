from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from dispatch_center.constants import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, KEY_COOLDOWN_SECONDS
from dispatch_center.errors import ConfigurationError, FeatureNotConfiguredError
from dispatch_center.features import (
    FEATURE_INFO,
    FEATURE_PLATFORM_MAP,
    AIFeature,
    get_feature_name,
)
from dispatch_center.llm.dispatcher import ChatDispatcher, ChatRequest
from dispatch_center.llm.key_manager import ApiKeyManager
from dispatch_center.llm.model_registry import ModelCapabilityRegistry
from dispatch_center.schemas import DispatchConfig, ProviderConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureBinding:
    target: str  # provider id or platform name
    model: str


def parse_binding(raw: str) -> FeatureBinding | None:
    """Parse ``"platform_or_provider_id:model"``; the model may itself contain colons."""
    target, sep, model = raw.partition(":")
    target, model = target.strip(), model.strip()
    if not sep or not target or not model:
        return None
    return FeatureBinding(target=target, model=model)


@dataclass
class FeatureConfig:
    feature: AIFeature
    feature_name: str
    provider: ProviderConfig
    platform: str
    base_url: str
    model: str
    models: list[str]
    api_key: str
    all_api_keys: list[str]
    key_manager: ApiKeyManager = field(repr=False)


@dataclass(frozen=True)
class FeatureStatus:
    feature: AIFeature
    name: str
    description: str
    configured: bool
    provider_name: str | None = None


@dataclass
class CallOptions:
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    model_override: str | None = None
    config_override: FeatureConfig | None = None
    # Structured-output callers rarely want hidden reasoning eating the token budget.
    disable_thinking: bool = True
    timeout: float | None = None


class RouterState:
    """Round-robin counters and per-provider key managers shared by router users."""

    def __init__(self, cooldown_seconds: float = KEY_COOLDOWN_SECONDS) -> None:
        self._lock = threading.Lock()
        self._cooldown_seconds = cooldown_seconds
        self._counters: dict[AIFeature, int] = {}
        self._key_managers: dict[str, ApiKeyManager] = {}

    def get_key_manager(self, provider: ProviderConfig) -> ApiKeyManager:
        with self._lock:
            manager = self._key_managers.get(provider.id)
            if manager is None:
                manager = ApiKeyManager(provider.api_keys, cooldown_seconds=self._cooldown_seconds)
                self._key_managers[provider.id] = manager
            elif manager.keys != provider.api_keys:
                logger.info("Router: key list for provider %s changed, resetting", provider.id)
                manager.reset(provider.api_keys)
            return manager

    def next_index(self, feature: AIFeature) -> int:
        with self._lock:
            index = self._counters.get(feature, 0)
            self._counters[feature] = index + 1
            return index

    def reset(self, feature: AIFeature | None = None) -> None:
        with self._lock:
            if feature is None:
                self._counters.clear()
            else:
                self._counters[feature] = 0


class FeatureRouter:
    def __init__(
        self,
        config: DispatchConfig,
        state: RouterState | None = None,
        dispatcher: ChatDispatcher | None = None,
        registry: ModelCapabilityRegistry | None = None,
    ) -> None:
        self.config = config
        self.state = state or RouterState()
        if dispatcher is None:
            dispatcher = ChatDispatcher(registry=registry)
        elif registry is not None and registry is not dispatcher.registry:
            raise ValueError("Pass registry either to FeatureRouter or to its dispatcher, not both")
        self.dispatcher = dispatcher

    @property
    def registry(self) -> ModelCapabilityRegistry:
        return self.dispatcher.registry

    def _resolve_provider(self, target: str) -> ProviderConfig | None:
        for provider in self.config.providers:
            if provider.id == target:
                return provider

        matches = [p for p in self.config.providers if p.platform == target]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            logger.warning(
                "Router: platform %r matches %d providers, binding is ambiguous; use a provider id",
                target,
                len(matches),
            )
        return None

    def _build_config(
        self, feature: AIFeature, provider: ProviderConfig, model: str, models: list[str]
    ) -> FeatureConfig:
        key_manager = self.state.get_key_manager(provider)
        return FeatureConfig(
            feature=feature,
            feature_name=get_feature_name(feature),
            provider=provider,
            platform=provider.platform,
            base_url=provider.base_url,
            model=model,
            models=models,
            api_key=key_manager.get_current_key() or provider.api_keys[0],
            all_api_keys=list(provider.api_keys),
            key_manager=key_manager,
        )

    def get_all_feature_configs(self, feature: AIFeature) -> list[FeatureConfig]:
        configs: list[FeatureConfig] = []
        for raw in self.config.get_feature_bindings(feature):
            binding = parse_binding(raw)
            if binding is None:
                logger.warning("Router: malformed binding %r for %s, skipping", raw, feature)
                continue
            provider = self._resolve_provider(binding.target)
            if provider is None:
                logger.warning("Router: no provider for binding %r (%s), skipping", raw, feature)
                continue
            if not provider.api_keys:
                continue
            configs.append(self._build_config(feature, provider, binding.model, [binding.model]))
        return configs

    def _default_config(self, feature: AIFeature) -> FeatureConfig | None:
        platform = FEATURE_PLATFORM_MAP.get(feature)
        if not platform:
            return None
        provider = next((p for p in self.config.providers if p.platform == platform), None)
        if provider is None or not provider.api_keys:
            return None
        model = provider.models[0] if provider.models else ""
        return self._build_config(feature, provider, model, list(provider.models))

    def get_candidate_configs(self, feature: AIFeature) -> list[FeatureConfig]:
        """Every config a call for ``feature`` could land on, without advancing round-robin."""
        configs = self.get_all_feature_configs(feature)
        if configs:
            return configs
        fallback = self._default_config(feature)
        return [fallback] if fallback else []

    def get_feature_config(self, feature: AIFeature) -> FeatureConfig | None:
        configs = self.get_all_feature_configs(feature)

        if not configs:
            fallback = self._default_config(feature)
            if fallback is None:
                logger.warning("Router: no provider bound for feature %s", feature)
            return fallback

        if len(configs) == 1:
            return configs[0]

        position = self.state.next_index(feature) % len(configs)
        config = configs[position]
        logger.info(
            "Router: %s → %s:%s (%d/%d)",
            feature,
            config.provider.display_name,
            config.model,
            position + 1,
            len(configs),
        )
        return config

    def reset_feature_round_robin(self, feature: AIFeature | None = None) -> None:
        self.state.reset(feature)

    def is_feature_ready(self, feature: AIFeature) -> bool:
        return bool(self.get_candidate_configs(feature))

    def feature_not_configured_message(self, feature: AIFeature) -> str:
        name = get_feature_name(feature)
        return f"No API provider is bound to feature '{name}'; add a feature_bindings entry for it"

    def get_feature_statuses(self) -> list[FeatureStatus]:
        statuses = []
        for feature, info in FEATURE_INFO.items():
            candidates = self.get_candidate_configs(feature)
            statuses.append(
                FeatureStatus(
                    feature=feature,
                    name=info.name,
                    description=info.description,
                    configured=bool(candidates),
                    provider_name=candidates[0].provider.display_name if candidates else None,
                )
            )
        return statuses

    async def call_feature_api(
        self,
        feature: AIFeature,
        system_prompt: str,
        user_prompt: str,
        options: CallOptions | None = None,
    ) -> str:
        options = options or CallOptions()
        config = options.config_override or self.get_feature_config(feature)
        if config is None:
            raise FeatureNotConfiguredError(feature, self.feature_not_configured_message(feature))

        model = options.model_override or config.model or (config.models[0] if config.models else "")
        base_url = config.base_url.rstrip("/")
        if not base_url:
            raise ConfigurationError(f"Provider {config.provider.id} has no Base URL configured")
        if not model:
            raise ConfigurationError(f"No model configured for feature {feature}")

        logger.info(
            "call_feature_api: feature=%s provider=%s (%s) model=%s",
            feature,
            config.provider.display_name,
            config.platform,
            model,
        )

        request = ChatRequest(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            base_url=base_url,
            model=model,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            disable_thinking=options.disable_thinking,
            timeout=options.timeout,
        )
        return await self.dispatcher.dispatch(request, config.key_manager)
