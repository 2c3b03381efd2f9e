import json

import pytest

from dispatch_center.llm.model_registry import (
    STATIC_REGISTRY,
    InMemoryDiscoveryStore,
    JsonFileDiscoveryStore,
    ModelCapabilityRegistry,
    default_discovery_store,
    parse_limits_from_error,
)
from dispatch_center.schemas import DiscoveredLimits, ModelLimits


class TestStaticLookup:
    def test_exact_match(self, registry):
        assert registry.get_model_limits("deepseek-v3.2") == ModelLimits(context_window=128000, max_output=8192)

    def test_case_insensitive(self, registry):
        assert registry.get_model_limits("GLM-4.7") == registry.get_model_limits("glm-4.7")

    def test_prefix_match(self, registry):
        limits = registry.get_model_limits("claude-sonnet-4")
        assert limits == STATIC_REGISTRY["claude-"]

    def test_longest_prefix_wins(self, registry):
        # "gemini-2.0-flash" beats "gemini-"
        assert registry.get_model_limits("gemini-2.0-flash-lite").max_output == 8192

    def test_unknown_model_uses_default(self, registry):
        assert registry.get_model_limits("mystery-model") == ModelLimits(context_window=32000, max_output=4096)

    def test_empty_name_uses_default(self, registry):
        assert registry.get_model_limits("") == STATIC_REGISTRY["_default"]

    def test_custom_static_table_keeps_default(self):
        registry = ModelCapabilityRegistry(static={"local-": ModelLimits(context_window=8000, max_output=2000)})
        assert registry.get_model_limits("local-llama").context_window == 8000
        assert registry.get_model_limits("other").context_window == 32000


class TestDiscoveredCache:
    def test_discovered_overrides_static(self, registry):
        assert registry.cache_discovered("gpt-4o", DiscoveredLimits(max_output=8192)) is True
        limits = registry.get_model_limits("gpt-4o")
        assert limits.max_output == 8192
        assert limits.context_window == 128000

    def test_partial_updates_merge(self, registry):
        registry.cache_discovered("Kimi-K2", DiscoveredLimits(max_output=4000))
        registry.cache_discovered("kimi-k2", DiscoveredLimits(context_window=64000))
        assert registry.get_model_limits("kimi-k2") == ModelLimits(context_window=64000, max_output=4000)

    def test_store_failure_is_logged_not_raised(self):
        class BrokenStore(InMemoryDiscoveryStore):
            def set(self, model, limits):
                raise OSError("disk full")

        registry = ModelCapabilityRegistry(store=BrokenStore())
        assert registry.cache_discovered("gpt-4o", DiscoveredLimits(max_output=1000)) is False
        assert registry.get_model_limits("gpt-4o").max_output == 16384

    def test_inject_discovery_cache(self, registry):
        backing: dict[str, DiscoveredLimits] = {}
        registry.inject_discovery_cache(backing.get, backing.__setitem__)
        registry.cache_discovered("doubao-pro", DiscoveredLimits(max_output=2048))
        assert "doubao-pro" in backing
        assert registry.get_model_limits("doubao-pro").max_output == 2048

    def test_lookup_failure_falls_back_to_static(self, registry):
        def broken_get(model):
            raise RuntimeError("backend down")

        registry.inject_discovery_cache(broken_get, lambda m, lim: None)
        assert registry.get_model_limits("deepseek-chat").max_output == 8192


class TestJsonFileDiscoveryStore:
    def test_persists_and_reloads(self, tmp_path):
        path = tmp_path / "cache" / "discovered.json"
        registry = ModelCapabilityRegistry(store=JsonFileDiscoveryStore(path))
        registry.cache_discovered("gpt-4o", DiscoveredLimits(max_output=8192))

        data = json.loads(path.read_text())
        assert data["gpt-4o"]["max_output"] == 8192
        assert "context_window" not in data["gpt-4o"]

        reloaded = ModelCapabilityRegistry(store=JsonFileDiscoveryStore(path))
        assert reloaded.get_model_limits("gpt-4o").max_output == 8192

    def test_invalid_file_ignored(self, tmp_path):
        path = tmp_path / "discovered.json"
        path.write_text("not json")
        store = JsonFileDiscoveryStore(path)
        assert store.get("gpt-4o") is None

    def test_invalid_entries_skipped(self, tmp_path):
        path = tmp_path / "discovered.json"
        path.write_text(json.dumps({"good": {"max_output": 100}, "bad": {"max_output": -1}}))
        store = JsonFileDiscoveryStore(path)
        assert store.get("good").max_output == 100
        assert store.get("bad") is None


class TestParseLimitsFromError:
    def test_deepseek_valid_range(self):
        limits = parse_limits_from_error(
            "Invalid max_tokens value, the valid range of max_tokens is [1, 8192]"
        )
        assert limits.max_output == 8192
        assert limits.context_window is None

    def test_less_than_or_equal(self):
        assert parse_limits_from_error("max_tokens must be less than or equal to 4096").max_output == 4096

    def test_chinese_upper_bound(self):
        assert parse_limits_from_error("参数 max_tokens 不超过 16384").max_output == 16384

    def test_generic_max_tokens_number(self):
        assert parse_limits_from_error("max_tokens is too large: 65536").max_output == 65536

    def test_openai_context_length(self):
        limits = parse_limits_from_error(
            "This model's maximum context length is 128000 tokens. "
            "However, you requested 150000 tokens."
        )
        assert limits.context_window == 128000
        assert limits.max_output is None

    def test_maximum_tokens(self):
        assert parse_limits_from_error("input exceeds the maximum of 32768 tokens").context_window == 32768

    def test_both_limits_combined(self):
        limits = parse_limits_from_error(
            "max_tokens must be <= 8192 and the context length must be under 131072"
        )
        assert limits.max_output == 8192
        assert limits.context_window == 131072

    @pytest.mark.parametrize("text", ["", "rate limit exceeded", "invalid api key", None, 42])
    def test_nothing_found(self, text):
        assert parse_limits_from_error(text) is None


class TestDefaultDiscoveryStore:
    def test_in_memory_without_cache_path(self, monkeypatch):
        monkeypatch.setattr("dispatch_center.llm.model_registry.DISCOVERY_CACHE_PATH", "")
        assert isinstance(default_discovery_store(), InMemoryDiscoveryStore)

    def test_json_file_with_cache_path(self, monkeypatch, tmp_path):
        path = tmp_path / "discovered.json"
        monkeypatch.setattr("dispatch_center.llm.model_registry.DISCOVERY_CACHE_PATH", str(path))
        registry = ModelCapabilityRegistry()
        registry.cache_discovered("gpt-4o", DiscoveredLimits(max_output=8192))
        assert json.loads(path.read_text())["gpt-4o"]["max_output"] == 8192
