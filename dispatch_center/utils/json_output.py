import json
import logging
import re
from typing import Any

import json_repair

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def strip_code_fences(raw: str) -> str:
    match = _FENCE_PATTERN.search(raw)
    if match:
        return match.group(1).strip()
    return raw.strip()


def extract_fenced_json(text: str) -> str | None:
    """Return the body of the first ```json fenced block, if any."""
    match = re.search(r"```json\s*([\s\S]*?)```", text, re.IGNORECASE)
    return match.group(1).strip() if match else None


def parse_json_reply(raw: str) -> Any:
    """Parse a model reply as JSON, tolerating fences and minor breakage.

    Raises:
        ValueError: the reply cannot be turned into a JSON object or array.
    """
    if not raw or not raw.strip():
        raise ValueError("LLM returned empty content, expected JSON")

    cleaned = strip_code_fences(raw)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("json.loads failed (%s), attempting json_repair...", e)
        try:
            repaired = json_repair.loads(cleaned)
        except Exception as repair_error:
            raise ValueError(f"LLM returned invalid JSON: {e}") from repair_error
        if not isinstance(repaired, (dict, list)) or not repaired:
            raise ValueError(f"LLM returned invalid JSON: {e}") from e
        logger.info("json_repair succeeded, recovered valid JSON")
        return repaired
