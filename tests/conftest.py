from collections.abc import Callable

import httpx
import pytest

from dispatch_center.llm.dispatcher import ChatDispatcher
from dispatch_center.llm.model_registry import ModelCapabilityRegistry
from dispatch_center.llm.retry_policy import RetryPolicy
from http_stubs import RecordingTransport


@pytest.fixture
def registry():
    return ModelCapabilityRegistry()


@pytest.fixture
def fast_policy():
    return RetryPolicy(backoff_multiplier=0, backoff_max=0)


@pytest.fixture
def make_dispatcher(registry, fast_policy):
    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> tuple[ChatDispatcher, RecordingTransport]:
        transport = RecordingTransport(handler)
        dispatcher = ChatDispatcher(
            registry=registry, policy=fast_policy, client_factory=transport.client_factory
        )
        return dispatcher, transport

    return _make


@pytest.fixture(autouse=True)
def first_key_first(monkeypatch):
    """Key pools start at index 0 so tests can name the key a call will use."""
    monkeypatch.setattr("dispatch_center.llm.key_manager._random_start", lambda count: 0)
