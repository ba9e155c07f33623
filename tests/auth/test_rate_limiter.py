"""Tests for RateLimiter - fixed-window throttling per client address."""

import threading

import pytest

from auth.config import AuthConfig
from auth.rate_limiter import RateLimiter
from clients.memory_client import MemoryKeyValueStore


@pytest.fixture
def config():
    """Test config with a small limit for faster tests."""
    return AuthConfig(rate_limit_max_requests=3, rate_limit_window_seconds=60)


@pytest.fixture
def rate_limiter(config, clock):
    return RateLimiter(MemoryKeyValueStore(), config)


class TestCheck:
    """Test rate limit checking and counting."""

    def test_first_request_opens_window(self, rate_limiter, clock):
        """First request is allowed with limit-1 remaining."""
        decision = rate_limiter.check("198.51.100.1")

        assert decision.allowed is True
        assert decision.limit == 3
        assert decision.remaining == 2
        assert (decision.reset_at - clock.now).total_seconds() == 60

    def test_within_limit_allowed(self, rate_limiter, config):
        decisions = [rate_limiter.check("198.51.100.1") for _ in range(config.rate_limit_max_requests)]

        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]

    def test_exceeding_limit_denied(self, rate_limiter, config):
        for _ in range(config.rate_limit_max_requests):
            rate_limiter.check("198.51.100.1")

        decision = rate_limiter.check("198.51.100.1")

        assert decision.allowed is False
        assert decision.remaining == 0

    def test_denial_includes_retry_after(self, rate_limiter, config, clock):
        """retry_after_seconds counts down to the end of the window."""
        for _ in range(config.rate_limit_max_requests):
            rate_limiter.check("198.51.100.1")
        clock.advance(seconds=20)

        decision = rate_limiter.check("198.51.100.1")

        assert decision.retry_after_seconds == 40

    def test_denials_do_not_extend_count(self, rate_limiter, config):
        """Denied requests leave the stored count at the limit."""
        for _ in range(config.rate_limit_max_requests + 5):
            rate_limiter.check("198.51.100.1")

        assert rate_limiter._store.get(rate_limiter._key("198.51.100.1")) == "3"

    def test_addresses_tracked_separately(self, rate_limiter, config):
        for _ in range(config.rate_limit_max_requests + 1):
            rate_limiter.check("198.51.100.1")

        assert rate_limiter.check("198.51.100.2").allowed is True


class TestFixedWindow:
    """Window resets after it lapses, not on each request."""

    def test_window_does_not_slide(self, rate_limiter, clock):
        """Requests late in the window do not push reset_at out."""
        first = rate_limiter.check("198.51.100.1")
        clock.advance(seconds=30)
        second = rate_limiter.check("198.51.100.1")

        assert second.reset_at == first.reset_at

    def test_new_window_after_expiry(self, rate_limiter, config, clock):
        for _ in range(config.rate_limit_max_requests + 1):
            rate_limiter.check("198.51.100.1")
        clock.advance(seconds=61)

        decision = rate_limiter.check("198.51.100.1")

        assert decision.allowed is True
        assert decision.remaining == 2


class TestResetAndRemaining:
    def test_get_remaining_without_requests(self, rate_limiter):
        assert rate_limiter.get_remaining("198.51.100.1") == 3

    def test_get_remaining_does_not_consume(self, rate_limiter):
        rate_limiter.check("198.51.100.1")

        assert rate_limiter.get_remaining("198.51.100.1") == 2
        assert rate_limiter.get_remaining("198.51.100.1") == 2

    def test_reset_clears_counter(self, rate_limiter, config):
        for _ in range(config.rate_limit_max_requests + 1):
            rate_limiter.check("198.51.100.1")

        rate_limiter.reset("198.51.100.1")

        assert rate_limiter.check("198.51.100.1").allowed is True


class TestConcurrency:
    def test_concurrent_requests_never_exceed_limit(self, clock):
        """Exactly max_requests of many simultaneous requests are allowed."""
        limiter = RateLimiter(
            MemoryKeyValueStore(), AuthConfig(rate_limit_max_requests=10, rate_limit_window_seconds=60)
        )
        results = []
        results_lock = threading.Lock()

        def hit():
            decision = limiter.check("198.51.100.1")
            with results_lock:
                results.append(decision.allowed)

        threads = [threading.Thread(target=hit) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 10
