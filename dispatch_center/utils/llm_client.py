import logging
import re
from collections.abc import Callable

import httpx
from dotenv import load_dotenv
from openai import AsyncOpenAI

from dispatch_center.constants import LLM_CONNECT_TIMEOUT, LLM_READ_TIMEOUT

load_dotenv()

logger = logging.getLogger(__name__)

LLM_TIMEOUT = httpx.Timeout(
    connect=LLM_CONNECT_TIMEOUT, read=LLM_READ_TIMEOUT, write=60.0, pool=60.0
)

ClientFactory = Callable[[str, str], AsyncOpenAI]

_VERSION_SUFFIX = re.compile(r"/v\d+$")

_client_cache: dict[tuple[str, str], AsyncOpenAI] = {}


def build_api_base(base_url: str) -> str:
    """Normalize a provider base URL to the versioned API root.

    ``https://host`` -> ``https://host/v1``; ``https://host/v4/`` -> ``https://host/v4``.
    The client then posts to ``<root>/chat/completions``.
    """
    normalized = base_url.strip().rstrip("/")
    if _VERSION_SUFFIX.search(normalized):
        return normalized
    return f"{normalized}/v1"


def get_or_create_client(base_url: str, api_key: str) -> AsyncOpenAI:
    cache_key = (base_url, api_key)
    if cache_key not in _client_cache:
        # SDK retries are disabled: rotation-aware retries happen in the dispatcher.
        _client_cache[cache_key] = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=LLM_TIMEOUT,
            max_retries=0,
        )
    return _client_cache[cache_key]


async def close_clients() -> None:
    for client in _client_cache.values():
        await client.close()
    _client_cache.clear()
    logger.info("LLM clients closed")
