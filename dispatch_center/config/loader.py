import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from dispatch_center.constants import DISPATCH_CONFIG_PATH
from dispatch_center.features import AIFeature
from dispatch_center.schemas import DispatchConfig, ProviderConfig

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-(.*?))?\}")


def _substitute_env_vars(value: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val is not None:
            return env_val
        default = match.group(2)
        return default if default is not None else ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _substitute_recursive(obj: Any) -> Any:
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _substitute_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_recursive(item) for item in obj]
    return obj


def _load_providers(raw_providers: Any, config_path: str) -> list[ProviderConfig]:
    if not isinstance(raw_providers, list):
        logger.warning("Dispatch config 'providers' is not a list: %s", config_path)
        return []

    providers: list[ProviderConfig] = []
    seen_ids: set[str] = set()
    for i, entry in enumerate(raw_providers):
        try:
            provider = ProviderConfig.model_validate(_substitute_recursive(entry))
        except ValidationError as e:
            logger.warning("Skipping invalid provider entry %d in %s: %s", i, config_path, e)
            continue
        if provider.id in seen_ids:
            logger.warning("Skipping duplicate provider id %r in %s", provider.id, config_path)
            continue
        seen_ids.add(provider.id)
        providers.append(provider)
    return providers


def _load_bindings(raw_bindings: Any, config_path: str) -> dict[str, Any]:
    if raw_bindings is None:
        return {}
    if not isinstance(raw_bindings, dict):
        logger.warning("Dispatch config 'feature_bindings' is not a mapping: %s", config_path)
        return {}

    known = {f.value for f in AIFeature}
    bindings: dict[str, Any] = {}
    for feature, value in raw_bindings.items():
        if feature not in known:
            logger.warning("Skipping unknown feature %r in %s", feature, config_path)
            continue
        bindings[feature] = _substitute_recursive(value)
    return bindings


def load_dispatch_config(config_path: str | None = None) -> DispatchConfig | None:
    """Read providers and feature bindings from YAML.

    Falls back to ``DISPATCH_CONFIG_PATH``. Returns None when the file is
    missing, unreadable or yields no usable provider.
    """
    config_path = config_path or DISPATCH_CONFIG_PATH
    if not config_path:
        return None

    path = Path(config_path)
    if not path.is_file():
        logger.warning("Dispatch config file not found: %s", config_path)
        return None

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load dispatch config from %s: %s", config_path, e)
        return None

    if not isinstance(data, dict) or "providers" not in data:
        logger.warning("Dispatch config missing 'providers' key: %s", config_path)
        return None

    providers = _load_providers(data["providers"], config_path)
    if not providers:
        logger.warning("No valid providers loaded from %s", config_path)
        return None

    try:
        config = DispatchConfig(
            providers=providers,
            feature_bindings=_load_bindings(data.get("feature_bindings"), config_path),
        )
    except ValidationError as e:
        logger.warning("Invalid feature_bindings in %s: %s", config_path, e)
        return None

    logger.info(
        "Loaded %d provider(s) and %d feature binding(s) from %s",
        len(config.providers),
        len(config.feature_bindings),
        config_path,
    )
    return config
