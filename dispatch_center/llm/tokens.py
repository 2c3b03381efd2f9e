"""Approximate token accounting.

No tokenizer is loaded: the estimate is character based and deliberately
biased toward over-counting, so budget checks err on the side of smaller
batches instead of hitting a provider's real limit.
"""

import math

from dispatch_center.constants import (
    CHARS_PER_TOKEN,
    TRUNCATION_BOUNDARY_WINDOW,
    TRUNCATION_HINT,
)

_SENTENCE_ENDS = ("。", "！", "？", ". ")


def estimate_tokens(text: str) -> int:
    """Conservative token estimate: ceil(len / 1.5)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def safe_truncate(text: str, max_length: int, hint: str = TRUNCATION_HINT) -> str:
    """Truncate text without cutting mid-paragraph or mid-sentence when possible.

    Args:
        text: Original text
        max_length: Maximum number of characters in the result, hint included
        hint: Suffix appended when truncating, so the model knows content is missing

    Returns:
        ``text`` unchanged if it fits, otherwise a prefix ending on a newline or
        sentence boundary (if one falls in the last 20% of the budget) plus ``hint``.
    """
    if max_length <= 0:
        return ""
    if len(text) <= max_length:
        return text

    budget = max_length - len(hint)
    if budget <= 0:
        return text[:max_length]

    sliced = text[:budget]
    threshold = budget * (1 - TRUNCATION_BOUNDARY_WINDOW)

    last_newline = sliced.rfind("\n")
    if last_newline > threshold:
        return sliced[:last_newline] + hint

    last_sentence_end = max(sliced.rfind(mark) for mark in _SENTENCE_ENDS)
    if last_sentence_end > threshold:
        return sliced[: last_sentence_end + 1] + hint

    return sliced + hint
