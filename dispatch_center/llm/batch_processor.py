"""Token-bounded batching of many items through one feature.

Items are grouped greedily so that each sub-batch fits both the input budget
(system prompt + item tokens) and the output budget (expected reply tokens).
Sub-batches start ``stagger_seconds`` apart and run concurrently up to the
usable key count. A failed sub-batch is retried, then dropped, and the caller
still gets every result that did come back.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dispatch_center.constants import (
    BATCH_CONTEXT_FRACTION,
    BATCH_DEFAULT_ITEM_OUTPUT_TOKENS,
    BATCH_HARD_CAP_TOKENS,
    BATCH_MAX_CONCURRENCY,
    BATCH_MAX_ITEMS,
    BATCH_OUTPUT_FRACTION,
    BATCH_RETRIES,
    BATCH_RETRY_BASE_DELAY,
    BATCH_STAGGER_SECONDS,
)
from dispatch_center.errors import (
    BatchAbortedError,
    ConfigurationError,
    ContentModerationError,
    KeyPoolExhaustedError,
    TokenBudgetExceededError,
)
from dispatch_center.features import AIFeature
from dispatch_center.llm.feature_router import CallOptions, FeatureRouter
from dispatch_center.llm.tokens import estimate_tokens
from dispatch_center.schemas import ModelLimits

logger = logging.getLogger(__name__)

TItem = TypeVar("TItem")
TResult = TypeVar("TResult")

PromptBuilder = Callable[[Sequence[TItem]], tuple[str, str]]
ResultParser = Callable[[str, Sequence[TItem]], dict[str, TResult]]
ProgressCallback = Callable[[int, int, str], None]

# Retrying these cannot change the outcome.
_NON_RETRYABLE = (
    TokenBudgetExceededError,
    ConfigurationError,
    ContentModerationError,
    KeyPoolExhaustedError,
)


class BatchSettings(BaseModel):
    context_fraction: float = Field(default=BATCH_CONTEXT_FRACTION, gt=0, le=1)
    hard_cap_tokens: int = Field(default=BATCH_HARD_CAP_TOKENS, gt=0)
    output_fraction: float = Field(default=BATCH_OUTPUT_FRACTION, gt=0, le=1)
    default_item_output_tokens: int = Field(default=BATCH_DEFAULT_ITEM_OUTPUT_TOKENS, gt=0)
    max_items_per_batch: int = Field(default=BATCH_MAX_ITEMS, ge=1)
    max_concurrency: int = Field(default=BATCH_MAX_CONCURRENCY, ge=1)
    batch_retries: int = Field(default=BATCH_RETRIES, ge=0)
    retry_base_delay: float = Field(default=BATCH_RETRY_BASE_DELAY, ge=0)
    stagger_seconds: float = Field(default=BATCH_STAGGER_SECONDS, ge=0)

    def input_budget(self, limits: ModelLimits) -> int:
        return min(math.floor(limits.context_window * self.context_fraction), self.hard_cap_tokens)

    def output_budget(self, limits: ModelLimits) -> int:
        return math.floor(limits.max_output * self.output_fraction)


@dataclass
class BatchResult(Generic[TResult]):
    results: dict[str, TResult] = field(default_factory=dict)
    failed_batches: int = 0
    total_batches: int = 0
    succeeded_items: int = 0
    failed_items: int = 0

    @property
    def all_succeeded(self) -> bool:
        return self.failed_batches == 0


def split_into_batches(
    items: Sequence[TItem],
    item_tokens: Callable[[TItem], int],
    item_output_tokens: Callable[[TItem], int],
    input_budget: int,
    output_budget: int,
    system_tokens: int,
    max_items: int = BATCH_MAX_ITEMS,
) -> list[list[TItem]]:
    """Greedy grouping under input, output and item-count ceilings.

    A batch closes when the next item would overflow any ceiling. An item
    too large for any budget still gets a batch of its own, so every item
    lands in exactly one batch and order is preserved.
    """
    batches: list[list[TItem]] = []
    current: list[TItem] = []
    input_used = system_tokens
    output_used = 0

    for item in items:
        item_input = item_tokens(item)
        item_output = item_output_tokens(item)

        overflow = (
            input_used + item_input > input_budget
            or output_used + item_output > output_budget
            or len(current) >= max_items
        )
        if current and overflow:
            batches.append(current)
            current = []
            input_used = system_tokens
            output_used = 0

        current.append(item)
        input_used += item_input
        output_used += item_output

    if current:
        batches.append(current)
    return batches


def _default_item_tokens(item: object) -> int:
    return estimate_tokens(json.dumps(item, ensure_ascii=False, default=str))


def _merge_later_wins(all_results: list[dict[str, TResult]]) -> dict[str, TResult]:
    merged: dict[str, TResult] = {}
    for partial in all_results:
        merged.update(partial)
    return merged


def _conservative_limits(router: FeatureRouter, feature: AIFeature) -> tuple[ModelLimits, int]:
    """Tightest limits over every model the feature may rotate onto, plus usable key count."""
    candidates = router.get_candidate_configs(feature)
    if not candidates:
        return router.registry.get_model_limits(""), 1

    all_limits = [router.registry.get_model_limits(c.model) for c in candidates]
    limits = ModelLimits(
        context_window=min(lim.context_window for lim in all_limits),
        max_output=min(lim.max_output for lim in all_limits),
    )
    managers = {id(c.key_manager): c.key_manager for c in candidates}
    available_keys = sum(m.available_key_count for m in managers.values())
    return limits, available_keys


async def process_batched(
    router: FeatureRouter,
    feature: AIFeature,
    items: Sequence[TItem],
    build_prompts: PromptBuilder,
    parse_result: ResultParser,
    estimate_item_tokens: Callable[[TItem], int] | None = None,
    estimate_item_output_tokens: Callable[[TItem], int] | None = None,
    api_options: CallOptions | None = None,
    merge_results: Callable[[list[dict[str, TResult]]], dict[str, TResult]] | None = None,
    on_progress: ProgressCallback | None = None,
    should_abort: Callable[[], bool] | None = None,
    settings: BatchSettings | None = None,
) -> BatchResult[TResult]:
    """Run ``items`` through ``feature`` in token-bounded sub-batches.

    ``build_prompts(batch)`` returns ``(system, user)``; ``parse_result(raw, batch)``
    returns a mapping keyed so results from different batches can be merged.
    A sub-batch that keeps failing is counted in ``failed_batches`` and its
    items are absent from ``results``; nothing is raised for it.
    """
    if not items:
        return BatchResult()

    settings = settings or BatchSettings()
    limits, available_keys = _conservative_limits(router, feature)
    input_budget = settings.input_budget(limits)
    output_budget = settings.output_budget(limits)

    system_prompt, _ = build_prompts([items[0]])
    system_tokens = estimate_tokens(system_prompt)

    batches = split_into_batches(
        items,
        estimate_item_tokens or _default_item_tokens,
        estimate_item_output_tokens or (lambda _item: settings.default_item_output_tokens),
        input_budget,
        output_budget,
        system_tokens,
        settings.max_items_per_batch,
    )
    total = len(batches)
    concurrency = max(1, min(available_keys, settings.max_concurrency))
    logger.info(
        "BatchProcessor %s: ctx=%d, max_output=%d, input_budget=%d, output_budget=%d, "
        "%d items → %d batches (%s), concurrency=%d",
        feature,
        limits.context_window,
        limits.max_output,
        input_budget,
        output_budget,
        len(items),
        total,
        ", ".join(str(len(b)) for b in batches),
        concurrency,
    )

    semaphore = asyncio.Semaphore(concurrency)
    completed = 0

    def report(message: str) -> None:
        if on_progress is not None:
            on_progress(completed, total, message)

    async def run_batch(index: int, batch: list[TItem]) -> dict[str, TResult]:
        nonlocal completed
        if index and settings.stagger_seconds:
            await asyncio.sleep(index * settings.stagger_seconds)
        async with semaphore:
            if should_abort is not None and should_abort():
                raise BatchAbortedError(f"Batch {index + 1}/{total} skipped: aborted")
            report(f"Processing batch {index + 1}/{total}")
            try:
                return await _execute_with_retry(
                    router, feature, batch, build_prompts, parse_result, api_options, settings
                )
            finally:
                completed += 1
                report(f"Batch {index + 1}/{total} finished")

    outcomes = await asyncio.gather(
        *(run_batch(i, b) for i, b in enumerate(batches)), return_exceptions=True
    )

    successes: list[dict[str, TResult]] = []
    failed_batches = 0
    succeeded_items = 0
    failed_items = 0
    for index, (outcome, batch) in enumerate(zip(outcomes, batches)):
        if isinstance(outcome, BaseException):
            logger.error("BatchProcessor %s: batch %d/%d failed: %s", feature, index + 1, total, outcome)
            failed_batches += 1
            failed_items += len(batch)
            continue
        successes.append(outcome)
        succeeded_items += len(batch)

    if failed_batches:
        logger.warning(
            "BatchProcessor %s: %d/%d batches failed, returning partial results",
            feature,
            failed_batches,
            total,
        )

    merged = (merge_results or _merge_later_wins)(successes)
    report("Done" if not failed_batches else f"Done ({failed_batches} batches failed)")

    return BatchResult(
        results=merged,
        failed_batches=failed_batches,
        total_batches=total,
        succeeded_items=succeeded_items,
        failed_items=failed_items,
    )


async def _execute_with_retry(
    router: FeatureRouter,
    feature: AIFeature,
    batch: list[TItem],
    build_prompts: PromptBuilder,
    parse_result: ResultParser,
    api_options: CallOptions | None,
    settings: BatchSettings,
) -> dict[str, TResult]:
    retrying = AsyncRetrying(
        stop=stop_after_attempt(settings.batch_retries + 1),
        wait=wait_exponential(multiplier=settings.retry_base_delay, min=settings.retry_base_delay),
        retry=retry_if_not_exception_type(_NON_RETRYABLE),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            system_prompt, user_prompt = build_prompts(batch)
            raw = await router.call_feature_api(feature, system_prompt, user_prompt, api_options)
            return parse_result(raw, batch)
    raise AssertionError("unreachable")
