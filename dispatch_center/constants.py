"""Configuration constants with trade-off documentation.

Each constant has a rationale explaining why this specific value was chosen.
Integer and float tunables can be overridden through environment variables;
overrides are clamped to a sane range instead of failing at import time.
"""

import os

# =============================================================================
# Environment Variable Helpers
# =============================================================================


def _parse_int_env(name: str, default: int, min_val: int, max_val: int) -> int:
    """Parse an integer environment variable with bounds clamping.

    Returns default if env var is unset or unparseable. Clamps to [min_val, max_val].
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(min_val, min(max_val, value))


def _parse_float_env(name: str, default: float, min_val: float, max_val: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(min_val, min(max_val, value))


# =============================================================================
# Token Estimation
# =============================================================================

CHARS_PER_TOKEN = 1.5
# Why 1.5: Chinese runs ~0.6-1.0 characters per token, English/JSON ~3-4.
# Dividing by 1.5 over-counts both, so batches come out smaller rather than
# hitting the real context limit. No tokenizer dependency needed.

TRUNCATION_HINT = "...[后续内容已截断]"
# Appended to truncated context so the model knows the input is incomplete.

TRUNCATION_BOUNDARY_WINDOW = 0.2
# Why 20%: A newline or sentence end inside the last 20% of the budget is worth
# cutting at. Further back and we throw away too much content.

# =============================================================================
# Dispatch Budget
# =============================================================================

DEFAULT_MAX_TOKENS = 4096
# Why 4096: Safe for every model in the static registry; callers that need
# long output (reasoning models) pass a higher value and get clamped per model.

DEFAULT_TEMPERATURE = 0.7

CONTEXT_GUARD_RATIO = 0.9
# Why 0.9: Input above 90% of the context window leaves no room for output.
# Failing before the request saves a paid round trip that cannot succeed.

SAFETY_MARGIN_RATIO = 0.1
# Why 0.1: Our estimator is approximate; 10% of the window is held back when
# computing how much room is left for output.

OUTPUT_WARNING_RATIO = 0.5
# Why 0.5: If less than half the requested output fits, truncation is likely
# enough to be worth a warning (the request still goes out).

REASONING_RATIO_THRESHOLD = 0.8
# Why 0.8: When >80% of completion tokens went to reasoning and content came
# back empty, the model ran out of budget thinking. Doubling max_tokens once
# usually lets it finish.

# =============================================================================
# Retry Policy
# =============================================================================

DISPATCH_MAX_ATTEMPTS = _parse_int_env("DISPATCH_MAX_ATTEMPTS", default=3, min_val=1, max_val=10)
# Why 3: Most 429/5xx bursts clear within two retries. Auth failures do not
# consume this budget; they are bounded by the key pool size instead.

DISPATCH_BACKOFF_MULTIPLIER = _parse_float_env(
    "DISPATCH_BACKOFF_MULTIPLIER", default=2.0, min_val=0.0, max_val=60.0
)
# Why 2.0: First retry waits up to ~2s, second up to ~4s (random exponential).

DISPATCH_BACKOFF_MAX = _parse_float_env("DISPATCH_BACKOFF_MAX", default=30.0, min_val=0.0, max_val=300.0)
# Why 30: Caps a single wait so a long outage surfaces as an error quickly.

LLM_CONNECT_TIMEOUT = 60.0
LLM_READ_TIMEOUT = _parse_float_env("LLM_READ_TIMEOUT", default=180.0, min_val=5.0, max_val=900.0)
# Why 180: Reasoning models can think for minutes on large structured prompts.

# =============================================================================
# API Key Rotation
# =============================================================================

KEY_COOLDOWN_SECONDS = _parse_float_env(
    "KEY_COOLDOWN_SECONDS", default=90.0, min_val=0.0, max_val=3600.0
)
# Why 90: Provider rate-limit windows are typically 60s. 90s lets the window
# reset before the key is handed out again. Auth-failed keys never return.

# =============================================================================
# Batch Processing
# =============================================================================

BATCH_CONTEXT_FRACTION = 0.6
# Why 0.6: Input per batch stays at 60% of the context window, leaving room
# for output and for estimation error.

BATCH_HARD_CAP_TOKENS = 60000
# Why 60K: Even 1M-context models answer slower and lose detail in the middle
# of very long prompts. No batch input exceeds this regardless of model.

BATCH_OUTPUT_FRACTION = 0.8
# Why 0.8: 20% of max output is reserved for JSON structure overhead.

BATCH_DEFAULT_ITEM_OUTPUT_TOKENS = 300
# Why 300: Typical per-item structured output (one shot or character entry).

BATCH_MAX_ITEMS = _parse_int_env("BATCH_MAX_ITEMS", default=50, min_val=1, max_val=1000)
# Why 50: Beyond ~50 items per call models start dropping entries from the
# returned JSON even when tokens fit.

BATCH_MAX_CONCURRENCY = _parse_int_env("BATCH_MAX_CONCURRENCY", default=4, min_val=1, max_val=20)
# Why 4: One in-flight batch per key up to 4. More than that triggers 429s on
# most relay providers even with several keys.

BATCH_RETRIES = _parse_int_env("BATCH_RETRIES", default=2, min_val=0, max_val=10)
# Why 2: Retries at the batch level sit on top of dispatcher retries; two more
# rounds catch malformed JSON without multiplying cost on a dead provider.

BATCH_RETRY_BASE_DELAY = _parse_float_env(
    "BATCH_RETRY_BASE_DELAY", default=3.0, min_val=0.0, max_val=120.0
)
# Why 3s: Doubles per retry (3s, 6s); enough for a key cooldown to progress.

BATCH_STAGGER_SECONDS = _parse_float_env(
    "BATCH_STAGGER_SECONDS", default=5.0, min_val=0.0, max_val=60.0
)
# Why 5s: Batch i starts no earlier than i * 5s after the first. Firing every
# batch at once bursts a small key pool into 429s before any cooldown helps.

# =============================================================================
# Configuration Sources
# =============================================================================

DISPATCH_CONFIG_PATH = os.getenv("DISPATCH_CONFIG_PATH", "")
# Path to YAML file with providers and feature bindings.
# Example: DISPATCH_CONFIG_PATH=config/dispatch.yaml

DISCOVERY_CACHE_PATH = os.getenv("DISCOVERY_CACHE_PATH", "")
# Optional JSON file where limits learned from API errors are persisted.
# Empty string keeps the cache in memory for the process lifetime.
