from __future__ import annotations

import logging

from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    wait_random_exponential,
)

from dispatch_center.constants import (
    CONTEXT_GUARD_RATIO,
    DISPATCH_BACKOFF_MAX,
    DISPATCH_BACKOFF_MULTIPLIER,
    DISPATCH_MAX_ATTEMPTS,
    OUTPUT_WARNING_RATIO,
    REASONING_RATIO_THRESHOLD,
    SAFETY_MARGIN_RATIO,
)
from dispatch_center.errors import AuthError, TransientProviderError

logger = logging.getLogger(__name__)


def _is_auth_failure(retry_state: RetryCallState) -> bool:
    outcome = retry_state.outcome
    return outcome is not None and isinstance(outcome.exception(), AuthError)


class RetryPolicy(BaseModel):
    """Retry and budget knobs for one dispatched request."""

    max_attempts: int = Field(default=DISPATCH_MAX_ATTEMPTS, ge=1)
    backoff_multiplier: float = Field(default=DISPATCH_BACKOFF_MULTIPLIER, ge=0)
    backoff_max: float = Field(default=DISPATCH_BACKOFF_MAX, ge=0)
    context_guard_ratio: float = Field(default=CONTEXT_GUARD_RATIO, gt=0, le=1)
    safety_margin_ratio: float = Field(default=SAFETY_MARGIN_RATIO, ge=0, lt=1)
    output_warning_ratio: float = Field(default=OUTPUT_WARNING_RATIO, ge=0, le=1)
    reasoning_ratio_threshold: float = Field(default=REASONING_RATIO_THRESHOLD, ge=0, le=1)

    def retrying(self) -> AsyncRetrying:
        """Build a fresh retry controller for one request.

        Transient errors (429, 5xx, network) get ``max_attempts`` tries with
        random exponential backoff. Auth failures retry immediately with the
        next key and do not count toward ``max_attempts``; they are bounded by
        the key pool, which raises ``KeyPoolExhaustedError`` once empty.
        """
        backoff = wait_random_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max)
        auth_failures = 0

        def stop(retry_state: RetryCallState) -> bool:
            nonlocal auth_failures
            if _is_auth_failure(retry_state):
                auth_failures += 1
                return False
            return retry_state.attempt_number - auth_failures >= self.max_attempts

        def wait(retry_state: RetryCallState) -> float:
            if _is_auth_failure(retry_state):
                return 0.0
            return backoff(retry_state)

        return AsyncRetrying(
            stop=stop,
            wait=wait,
            retry=retry_if_exception_type((TransientProviderError, AuthError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
