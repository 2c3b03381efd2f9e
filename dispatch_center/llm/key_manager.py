"""Per-provider API key pool with rotation and failover.

Key states:
  available -> cooling   on 429/503 (re-admitted after ``cooldown_seconds``)
  available -> disabled  on 401/403 (stays out until ``reset``)

One manager is shared by every in-flight request for a provider. All methods
are synchronous and run under a lock, so selection and rotation are atomic
even when called from worker threads.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable

from dispatch_center.constants import KEY_COOLDOWN_SECONDS
from dispatch_center.errors import KeyPoolExhaustedError
from dispatch_center.schemas import parse_api_keys

logger = logging.getLogger(__name__)

SOFT_FAILURE_STATUSES = frozenset({429, 503})
HARD_FAILURE_STATUSES = frozenset({401, 403})


def mask_api_key(key: str | None) -> str:
    if not key:
        return "<unset>"
    if len(key) <= 10:
        return f"{key[:4]}***"
    return f"{key[:8]}...{key[-4:]}"


def _random_start(count: int) -> int:
    """Initial index for a freshly loaded pool, so separate processes start on different keys."""
    return random.randrange(count)


class ApiKeyManager:
    def __init__(
        self,
        keys: str | list[str],
        cooldown_seconds: float = KEY_COOLDOWN_SECONDS,
        start_index: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._keys: list[str] = []
        self._current_index = 0
        self._disabled: set[str] = set()
        self._cooling_until: dict[str, float] = {}
        self._load(keys, start_index)

    def _load(self, keys: str | list[str], start_index: int | None = None) -> None:
        self._keys = parse_api_keys(keys)
        if not self._keys:
            self._current_index = 0
        elif start_index is None:
            self._current_index = _random_start(len(self._keys))
        else:
            self._current_index = start_index % len(self._keys)
        self._disabled.clear()
        self._cooling_until.clear()

    # ------------------------------------------------------------------
    # Internal helpers; caller must hold the lock.
    # ------------------------------------------------------------------

    def _expire_cooldowns(self) -> None:
        now = self._clock()
        for key in [k for k, until in self._cooling_until.items() if until <= now]:
            del self._cooling_until[key]
            logger.info("KeyManager: key %s re-admitted after cooldown", mask_api_key(key))

    def _is_usable(self, key: str) -> bool:
        return key not in self._disabled and key not in self._cooling_until

    def _select_from(self, start: int) -> str | None:
        self._expire_cooldowns()
        n = len(self._keys)
        for offset in range(n):
            index = (start + offset) % n
            if self._is_usable(self._keys[index]):
                self._current_index = index
                return self._keys[index]

        # Everything enabled is cooling: hand out the key that frees up first
        # rather than declaring the pool exhausted.
        cooling = [k for k in self._keys if k not in self._disabled]
        if not cooling:
            return None
        key = min(cooling, key=lambda k: self._cooling_until.get(k, 0.0))
        self._current_index = self._keys.index(key)
        return key

    def _advance_past(self, key: str) -> None:
        if self._keys and self._keys[self._current_index] == key:
            self._select_from(self._current_index + 1)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_current_key(self) -> str | None:
        with self._lock:
            if not self._keys:
                return None
            return self._select_from(self._current_index)

    def acquire_key(self) -> str:
        """Like ``get_current_key`` but raises when every key is disabled."""
        key = self.get_current_key()
        if key is None:
            raise KeyPoolExhaustedError(self.total_key_count)
        return key

    def rotate_key(self) -> str | None:
        """Advance to the next usable key (load distribution after success)."""
        with self._lock:
            if not self._keys:
                return None
            return self._select_from(self._current_index + 1)

    def mark_rate_limited(self, key: str) -> None:
        with self._lock:
            if key not in self._keys or key in self._disabled:
                return
            self._cooling_until[key] = self._clock() + self.cooldown_seconds
            self._advance_past(key)
        logger.warning(
            "KeyManager: key %s rate limited, cooling for %.0fs (%d/%d available)",
            mask_api_key(key),
            self.cooldown_seconds,
            self.available_key_count,
            self.total_key_count,
        )

    def mark_failed(self, key: str) -> None:
        with self._lock:
            if key not in self._keys:
                return
            self._disabled.add(key)
            self._cooling_until.pop(key, None)
            self._advance_past(key)
        logger.warning(
            "KeyManager: key %s disabled after auth failure (%d/%d available)",
            mask_api_key(key),
            self.available_key_count,
            self.total_key_count,
        )

    def handle_error(self, status_code: int, key: str) -> bool:
        """Record a failed call; returns True if the key was taken out of rotation."""
        if status_code in HARD_FAILURE_STATUSES:
            self.mark_failed(key)
            return True
        if status_code in SOFT_FAILURE_STATUSES:
            self.mark_rate_limited(key)
            return True
        return False

    @property
    def available_key_count(self) -> int:
        with self._lock:
            self._expire_cooldowns()
            return sum(1 for k in self._keys if self._is_usable(k))

    @property
    def enabled_key_count(self) -> int:
        with self._lock:
            return sum(1 for k in self._keys if k not in self._disabled)

    @property
    def total_key_count(self) -> int:
        return len(self._keys)

    @property
    def is_exhausted(self) -> bool:
        return self.enabled_key_count == 0

    def has_keys(self) -> bool:
        return bool(self._keys)

    @property
    def keys(self) -> list[str]:
        return list(self._keys)

    def reset(self, keys: str | list[str]) -> None:
        with self._lock:
            self._load(keys)
