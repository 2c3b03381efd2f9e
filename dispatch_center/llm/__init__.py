"""Dispatch layer for the AI dispatch center.

Feature routing with multi-model round-robin, key rotation, model limit
discovery and token-bounded batching.
"""

from dispatch_center.llm.batch_processor import BatchResult, BatchSettings, process_batched
from dispatch_center.llm.dispatcher import ChatDispatcher, ChatRequest
from dispatch_center.llm.feature_router import CallOptions, FeatureConfig, FeatureRouter, RouterState
from dispatch_center.llm.key_manager import ApiKeyManager
from dispatch_center.llm.model_registry import ModelCapabilityRegistry, parse_limits_from_error

__all__ = [
    "ApiKeyManager",
    "BatchResult",
    "BatchSettings",
    "CallOptions",
    "ChatDispatcher",
    "ChatRequest",
    "FeatureConfig",
    "FeatureRouter",
    "ModelCapabilityRegistry",
    "RouterState",
    "parse_limits_from_error",
    "process_batched",
]
