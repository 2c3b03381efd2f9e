"""Single-request dispatch against an OpenAI-compatible chat endpoint.

Per request:
  1. clamp max_tokens to the model's registry max_output
  2. pre-flight token budget check (no request if input cannot fit)
  3. send with the key manager's current key, retrying transient failures
     with backoff and auth failures with the next key
  4. on 400, mine the error body for limits; retry once if max_output shrank
  5. on an empty reply, distinguish moderation from reasoning-token exhaustion
  6. on success rotate the key so load spreads across the pool
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any

from openai import APIConnectionError, APIStatusError, AsyncOpenAI
from pydantic import BaseModel, Field

from dispatch_center.constants import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from dispatch_center.errors import (
    AuthError,
    BadRequestError,
    ConfigurationError,
    ContentModerationError,
    EmptyResponseError,
    ProviderError,
    ProviderRequestError,
    RateLimitedError,
    TokenBudgetExceededError,
    TransientProviderError,
)
from dispatch_center.llm.key_manager import ApiKeyManager, mask_api_key
from dispatch_center.llm.model_registry import ModelCapabilityRegistry, parse_limits_from_error
from dispatch_center.llm.responses import ChatReply, parse_chat_reply
from dispatch_center.llm.retry_policy import RetryPolicy
from dispatch_center.llm.tokens import estimate_tokens
from dispatch_center.utils.json_output import extract_fenced_json
from dispatch_center.utils.llm_client import ClientFactory, build_api_base, get_or_create_client

logger = logging.getLogger(__name__)


class ChatRequest(BaseModel):
    system_prompt: str
    user_prompt: str
    base_url: str
    model: str
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, gt=0)
    disable_thinking: bool = False
    timeout: float | None = Field(default=None, gt=0)


@dataclass(frozen=True)
class TokenBudget:
    input_tokens: int
    context_window: int
    requested_max_tokens: int
    effective_max_tokens: int
    available_for_output: int


class ChatDispatcher:
    def __init__(
        self,
        registry: ModelCapabilityRegistry | None = None,
        policy: RetryPolicy | None = None,
        client_factory: ClientFactory = get_or_create_client,
    ) -> None:
        self.registry = registry or ModelCapabilityRegistry()
        self.policy = policy or RetryPolicy()
        self._client_factory = client_factory

    def check_token_budget(
        self, model: str, system_prompt: str, user_prompt: str, requested_max_tokens: int
    ) -> TokenBudget:
        """Clamp output and verify the input fits; raises TokenBudgetExceededError."""
        limits = self.registry.get_model_limits(model)
        effective = min(requested_max_tokens, limits.max_output)
        if effective < requested_max_tokens:
            logger.info(
                "Dispatch: max_tokens clamped %d -> %d (%s max_output=%d)",
                requested_max_tokens,
                effective,
                model,
                limits.max_output,
            )

        input_tokens = estimate_tokens(system_prompt + user_prompt)
        context_window = limits.context_window
        safety_margin = math.ceil(context_window * self.policy.safety_margin_ratio)
        available = context_window - input_tokens - safety_margin
        utilization = round(input_tokens / context_window * 100)
        logger.info(
            "Dispatch %s: input≈%d / ctx=%d, output=%d (headroom %d%%)",
            model,
            input_tokens,
            context_window,
            effective,
            100 - utilization,
        )

        if input_tokens > context_window * self.policy.context_guard_ratio:
            raise TokenBudgetExceededError(model, input_tokens, context_window)

        if available < requested_max_tokens * self.policy.output_warning_ratio:
            logger.warning(
                "Dispatch %s: output budget is tight, ≈%d tokens available for %d requested; "
                "the reply may be truncated",
                model,
                available,
                requested_max_tokens,
            )

        return TokenBudget(
            input_tokens=input_tokens,
            context_window=context_window,
            requested_max_tokens=requested_max_tokens,
            effective_max_tokens=effective,
            available_for_output=available,
        )

    async def dispatch(self, request: ChatRequest, key_manager: ApiKeyManager) -> str:
        if not request.base_url:
            raise ConfigurationError("Base URL is not configured")
        if not request.model:
            raise ConfigurationError("Model is not configured")
        if not key_manager.has_keys():
            raise ConfigurationError("API key is not configured")

        budget = self.check_token_budget(
            request.model, request.system_prompt, request.user_prompt, request.max_tokens
        )
        api_base = build_api_base(request.base_url)
        logger.info(
            "Dispatch %s via %s (%d/%d keys available)",
            request.model,
            api_base,
            key_manager.available_key_count,
            key_manager.total_key_count,
        )

        start_time = time.perf_counter()
        try:
            async for attempt in self.policy.retrying():
                with attempt:
                    content = await self._attempt(request, key_manager, api_base, budget)
        except Exception as e:
            elapsed = time.perf_counter() - start_time
            logger.error(
                "Dispatch %s failed after %.2fs: %s: %s", request.model, elapsed, type(e).__name__, e
            )
            raise

        logger.info("Dispatch %s completed in %.2fs", request.model, time.perf_counter() - start_time)
        return content

    async def _attempt(
        self,
        request: ChatRequest,
        key_manager: ApiKeyManager,
        api_base: str,
        budget: TokenBudget,
    ) -> str:
        key = key_manager.acquire_key()
        client = self._client_factory(api_base, key)
        max_tokens = budget.effective_max_tokens

        try:
            reply = await self._send(client, request, max_tokens, key, key_manager)
        except BadRequestError as e:
            corrected = self._learn_from_bad_request(request.model, e.body, max_tokens, budget)
            if corrected is None:
                raise
            logger.warning(
                "Dispatch %s: discovered max_output, retrying with max_tokens=%d",
                request.model,
                corrected,
            )
            max_tokens = corrected
            reply = await self._send(client, request, max_tokens, key, key_manager)

        if reply.content:
            key_manager.rotate_key()
            return reply.content

        return await self._handle_empty_reply(
            reply, client, request, max_tokens, key, key_manager
        )

    def _learn_from_bad_request(
        self, model: str, error_text: str, max_tokens: int, budget: TokenBudget
    ) -> int | None:
        """Cache limits found in a 400 body; return a corrected max_tokens if one applies."""
        discovered = parse_limits_from_error(error_text)
        if discovered is None:
            return None
        self.registry.cache_discovered(model, discovered)
        if discovered.max_output and max_tokens > discovered.max_output:
            return min(budget.requested_max_tokens, discovered.max_output)
        return None

    async def _handle_empty_reply(
        self,
        reply: ChatReply,
        client: AsyncOpenAI,
        request: ChatRequest,
        max_tokens: int,
        key: str,
        key_manager: ApiKeyManager,
    ) -> str:
        logger.error(
            "Dispatch %s: empty content (format=%s, finish_reason=%s, completion_tokens=%d, "
            "reasoning_tokens=%d, reasoning_chars=%d)",
            request.model,
            reply.format,
            reply.finish_reason,
            reply.completion_tokens,
            reply.reasoning_tokens,
            len(reply.reasoning_content or ""),
        )

        if reply.is_moderated:
            key_manager.rotate_key()
            raise ContentModerationError(reply.finish_reason or "content_filter")

        if reply.finish_reason == "length" and reply.reasoning_content:
            salvaged = extract_fenced_json(reply.reasoning_content)
            if salvaged:
                logger.info("Dispatch %s: recovered JSON from reasoning_content", request.model)
                key_manager.rotate_key()
                return salvaged

            max_output = self.registry.get_model_limits(request.model).max_output
            doubled = min(max_tokens * 2, max_output)
            if (
                reply.reasoning_tokens > 0
                and reply.reasoning_ratio > self.policy.reasoning_ratio_threshold
                and doubled > max_tokens
            ):
                logger.warning(
                    "Dispatch %s: reasoning used %d/%d completion tokens, retrying with max_tokens=%d",
                    request.model,
                    reply.reasoning_tokens,
                    reply.completion_tokens,
                    doubled,
                )
                retry_reply = await self._send(client, request, doubled, key, key_manager)
                if retry_reply.content:
                    key_manager.rotate_key()
                    return retry_reply.content
                logger.warning(
                    "Dispatch %s: retry with more tokens still returned no content (finish_reason=%s)",
                    request.model,
                    retry_reply.finish_reason,
                )

        raise EmptyResponseError(reply.finish_reason)

    async def _send(
        self,
        client: AsyncOpenAI,
        request: ChatRequest,
        max_tokens: int,
        key: str,
        key_manager: ApiKeyManager,
    ) -> ChatReply:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
            "temperature": request.temperature,
            "max_tokens": max_tokens,
        }
        if request.disable_thinking:
            kwargs["extra_body"] = {"thinking": {"type": "disabled"}}
        if request.timeout is not None:
            kwargs["timeout"] = request.timeout

        try:
            raw = await client.chat.completions.with_raw_response.create(**kwargs)
        except APIStatusError as e:
            raise self._translate_status_error(e, key, key_manager) from e
        except APIConnectionError as e:
            raise TransientProviderError(f"Network error calling {request.model}: {e}") from e

        http_response = raw.http_response
        try:
            data = http_response.json()
        except ValueError as e:
            raise ProviderRequestError(
                "Provider returned a non-JSON body",
                status_code=http_response.status_code,
                body=http_response.text[:500],
            ) from e
        return parse_chat_reply(data)

    def _translate_status_error(
        self, error: APIStatusError, key: str, key_manager: ApiKeyManager
    ) -> ProviderError:
        status = error.status_code
        body = error.response.text if error.response is not None else str(error)
        message = f"API request failed: {status} - {body[:500]}"

        if key_manager.handle_error(status, key):
            logger.warning(
                "Dispatch: HTTP %d on key %s, rotated (%d/%d available)",
                status,
                mask_api_key(key),
                key_manager.available_key_count,
                key_manager.total_key_count,
            )

        if status in (401, 403):
            return AuthError(message, status_code=status, body=body)
        if status == 429 or status == 503:
            return RateLimitedError(message, status_code=status, body=body)
        if status == 400:
            return BadRequestError(message, status_code=status, body=body)
        if status >= 500:
            return TransientProviderError(message, status_code=status, body=body)
        return ProviderRequestError(message, status_code=status, body=body)
