"""Provider reply shapes.

OpenAI-compatible replies are validated into typed models. Anything else
goes through a generic extractor that scans known content field names.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

MODERATION_FINISH_REASONS = frozenset({"sensitive", "content_filter"})

_GENERIC_CONTENT_FIELDS = ("output_text", "text", "content", "result", "response", "output")
_GENERIC_CONTAINERS = ("data", "message", "output", "result")


class ReplyFormat(StrEnum):
    OPENAI_CHAT = "openai_chat"
    GENERIC = "generic"


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="allow")


class ChatMessage(_Lenient):
    content: str | None = None
    reasoning_content: str | None = None


class ChatChoice(_Lenient):
    message: ChatMessage = Field(default_factory=ChatMessage)
    finish_reason: str | None = None


class CompletionTokensDetails(_Lenient):
    reasoning_tokens: int | None = None


class ChatUsage(_Lenient):
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    completion_tokens_details: CompletionTokensDetails | None = None


class ChatCompletionPayload(_Lenient):
    choices: list[ChatChoice] = Field(min_length=1)
    usage: ChatUsage | None = None


class ChatReply(BaseModel):
    format: ReplyFormat
    content: str | None = None
    reasoning_content: str | None = None
    finish_reason: str | None = None
    completion_tokens: int = 0
    reasoning_tokens: int = 0

    @property
    def is_moderated(self) -> bool:
        return self.finish_reason in MODERATION_FINISH_REASONS

    @property
    def reasoning_ratio(self) -> float:
        if self.completion_tokens <= 0:
            return 0.0
        return self.reasoning_tokens / self.completion_tokens


def _from_openai(payload: ChatCompletionPayload) -> ChatReply:
    choice = payload.choices[0]
    usage = payload.usage or ChatUsage()
    details = usage.completion_tokens_details or CompletionTokensDetails()
    return ChatReply(
        format=ReplyFormat.OPENAI_CHAT,
        content=choice.message.content or None,
        reasoning_content=choice.message.reasoning_content or None,
        finish_reason=choice.finish_reason,
        completion_tokens=usage.completion_tokens or 0,
        reasoning_tokens=details.reasoning_tokens or 0,
    )


def _scan_content(data: Any, depth: int = 0) -> str | None:
    if depth > 3 or not isinstance(data, dict):
        return None
    for field in _GENERIC_CONTENT_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and value.strip():
            return value
    for container in _GENERIC_CONTAINERS:
        nested = data.get(container)
        if isinstance(nested, list) and nested:
            nested = nested[0]
        found = _scan_content(nested, depth + 1)
        if found:
            return found
    return None


def parse_chat_reply(data: Any) -> ChatReply:
    try:
        return _from_openai(ChatCompletionPayload.model_validate(data))
    except ValidationError:
        logger.debug("Reply is not OpenAI chat shaped, scanning known fields")

    finish_reason = data.get("finish_reason") if isinstance(data, dict) else None
    return ChatReply(
        format=ReplyFormat.GENERIC,
        content=_scan_content(data),
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )
