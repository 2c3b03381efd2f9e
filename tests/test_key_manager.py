import threading

import pytest

from dispatch_center.errors import KeyPoolExhaustedError
from dispatch_center.llm.key_manager import ApiKeyManager, _random_start, mask_api_key
from dispatch_center.schemas import parse_api_keys


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestParseApiKeys:
    def test_comma_and_newline_separated(self):
        assert parse_api_keys("a, b\nc,,\n  ") == ["a", "b", "c"]

    def test_empty(self):
        assert parse_api_keys("") == []
        assert parse_api_keys(None) == []

    def test_list_input_trimmed(self):
        assert parse_api_keys([" a ", "", "b"]) == ["a", "b"]


class TestMaskApiKey:
    def test_long_key(self):
        assert mask_api_key("sk-1234567890abcdef") == "sk-12345...cdef"

    def test_short_key(self):
        assert mask_api_key("short") == "shor***"

    def test_missing(self):
        assert mask_api_key(None) == "<unset>"


class TestRotation:
    def test_current_key_is_first(self):
        manager = ApiKeyManager("k1,k2,k3")
        assert manager.get_current_key() == "k1"

    def test_rotate_cycles(self):
        manager = ApiKeyManager("k1,k2,k3")
        assert [manager.rotate_key() for _ in range(4)] == ["k2", "k3", "k1", "k2"]

    def test_start_index(self):
        assert ApiKeyManager("k1,k2,k3", start_index=4).get_current_key() == "k2"

    def test_random_start_when_index_omitted(self, monkeypatch):
        monkeypatch.setattr("dispatch_center.llm.key_manager._random_start", lambda count: count - 1)
        assert ApiKeyManager("k1,k2,k3").get_current_key() == "k3"
        assert ApiKeyManager("k1,k2,k3", start_index=0).get_current_key() == "k1"

    def test_random_start_covers_pool(self):
        assert {_random_start(3) for _ in range(300)} == {0, 1, 2}

    def test_single_key_rotation_is_stable(self):
        manager = ApiKeyManager("only")
        assert manager.rotate_key() == "only"
        assert manager.get_current_key() == "only"

    def test_empty_pool(self):
        manager = ApiKeyManager("")
        assert manager.get_current_key() is None
        assert manager.rotate_key() is None
        assert not manager.has_keys()
        with pytest.raises(KeyPoolExhaustedError):
            manager.acquire_key()


class TestSoftFailures:
    def test_rate_limited_key_is_skipped(self):
        clock = FakeClock()
        manager = ApiKeyManager("k1,k2,k3", clock=clock)
        manager.mark_rate_limited("k1")
        assert manager.get_current_key() == "k2"
        assert manager.available_key_count == 2
        assert [manager.rotate_key() for _ in range(3)] == ["k3", "k2", "k3"]

    def test_readmitted_after_cooldown(self):
        clock = FakeClock()
        manager = ApiKeyManager("k1,k2", cooldown_seconds=90, clock=clock)
        manager.mark_rate_limited("k1")
        clock.advance(89)
        assert manager.available_key_count == 1
        clock.advance(2)
        assert manager.available_key_count == 2

    def test_all_cooling_returns_earliest_expiry(self):
        clock = FakeClock()
        manager = ApiKeyManager("k1,k2", cooldown_seconds=90, clock=clock)
        manager.mark_rate_limited("k2")
        clock.advance(10)
        manager.mark_rate_limited("k1")
        assert manager.available_key_count == 0
        assert manager.acquire_key() == "k2"
        assert not manager.is_exhausted

    def test_handle_error_soft_statuses(self):
        manager = ApiKeyManager("k1,k2")
        assert manager.handle_error(429, "k1") is True
        assert manager.handle_error(503, "k2") is True
        assert manager.available_key_count == 0
        assert manager.enabled_key_count == 2


class TestHardFailures:
    def test_failed_key_never_returns(self):
        clock = FakeClock()
        manager = ApiKeyManager("k1,k2", clock=clock)
        manager.mark_failed("k1")
        clock.advance(10_000)
        assert [manager.rotate_key() for _ in range(3)] == ["k2", "k2", "k2"]
        assert manager.enabled_key_count == 1

    def test_all_failed_is_exhausted(self):
        manager = ApiKeyManager("k1,k2")
        manager.handle_error(401, "k1")
        manager.handle_error(403, "k2")
        assert manager.is_exhausted
        assert manager.get_current_key() is None
        with pytest.raises(KeyPoolExhaustedError) as exc_info:
            manager.acquire_key()
        assert exc_info.value.total_keys == 2

    def test_other_statuses_do_not_rotate(self):
        manager = ApiKeyManager("k1,k2")
        assert manager.handle_error(400, "k1") is False
        assert manager.handle_error(500, "k1") is False
        assert manager.get_current_key() == "k1"

    def test_marking_a_stale_key_keeps_pointer(self):
        manager = ApiKeyManager("k1,k2,k3")
        manager.rotate_key()
        # a slow request that used k1 fails after another caller moved on to k2
        manager.mark_failed("k1")
        assert manager.get_current_key() == "k2"

    def test_unknown_key_ignored(self):
        manager = ApiKeyManager("k1")
        manager.mark_failed("nope")
        manager.mark_rate_limited("nope")
        assert manager.available_key_count == 1


class TestReset:
    def test_reset_restores_keys(self):
        manager = ApiKeyManager("k1,k2")
        manager.mark_failed("k1")
        manager.mark_rate_limited("k2")
        manager.reset("k3,k4")
        assert manager.keys == ["k3", "k4"]
        assert manager.available_key_count == 2
        assert manager.get_current_key() == "k3"


class TestThreadSafety:
    def test_concurrent_marks_never_empty_the_pool(self):
        manager = ApiKeyManager("k1,k2,k3,k4", cooldown_seconds=60)
        seen_none = []

        def worker():
            for _ in range(2000):
                key = manager.get_current_key()
                if key is None:
                    seen_none.append(True)
                    continue
                manager.mark_rate_limited(key)
                manager.rotate_key()

        threads = [threading.Thread(target=worker) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert seen_none == []
        assert manager.enabled_key_count == 4

    def test_concurrent_hard_failures_leave_survivor(self):
        manager = ApiKeyManager("k1,k2,k3,k4")
        doomed = ["k1", "k2", "k3"]
        keys_seen = []

        def worker(key):
            manager.mark_failed(key)
            keys_seen.append(manager.get_current_key())

        threads = [threading.Thread(target=worker, args=(k,)) for k in doomed * 5]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert manager.get_current_key() == "k4"
        assert None not in keys_seen
