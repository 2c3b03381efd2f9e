from __future__ import annotations


class DispatchError(Exception):
    pass


class ConfigurationError(DispatchError):
    """Missing or unusable configuration. Never retried."""


class FeatureNotConfiguredError(ConfigurationError):
    def __init__(self, feature: str, message: str | None = None) -> None:
        self.feature = feature
        super().__init__(message or f"No provider bound for feature: {feature}")


class TokenBudgetExceededError(DispatchError):
    """Input does not fit the model's context window; no request was sent."""

    code = "TOKEN_BUDGET_EXCEEDED"

    def __init__(self, model: str, input_tokens: int, context_window: int) -> None:
        self.model = model
        self.input_tokens = input_tokens
        self.context_window = context_window
        super().__init__(
            f"Input tokens (≈{input_tokens}) exceed 90% of the context window "
            f"of {model} ({context_window}); shorten the input or use a larger model"
        )


class KeyPoolExhaustedError(DispatchError):
    def __init__(self, total_keys: int) -> None:
        self.total_keys = total_keys
        super().__init__(f"No API keys available ({total_keys} configured, all disabled)")


class ProviderError(DispatchError):
    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class TransientProviderError(ProviderError):
    """429, 5xx or network fault. Retried with backoff."""


class RateLimitedError(TransientProviderError):
    pass


class AuthError(ProviderError):
    """401/403. The key that caused it has been disabled."""


class BadRequestError(ProviderError):
    pass


class ProviderRequestError(ProviderError):
    """Any other non-retryable HTTP failure."""


class EmptyResponseError(ProviderError):
    def __init__(self, finish_reason: str | None) -> None:
        self.finish_reason = finish_reason
        super().__init__(f"Empty response from API (finish_reason: {finish_reason or 'unknown'})")


class ContentModerationError(ProviderError):
    """Provider filtered the output. Callers may skip the item instead of retrying."""

    def __init__(self, finish_reason: str) -> None:
        self.finish_reason = finish_reason
        super().__init__(f"Content blocked by provider safety filter (finish_reason: {finish_reason})")


class BatchAbortedError(DispatchError):
    """Raised for a sub-batch skipped because the caller asked to stop."""
