"""Fixed-window rate limiting keyed by client address.

The counter lives in an injected key-value backend: ValkeyClient when several
instances must share one counter, MemoryKeyValueStore for a single process.
Both apply check-and-increment as one atomic step, and a denied request
never pushes the stored count past the limit.
"""

import math
from datetime import timedelta

from auth.config import AuthConfig
from auth.types import RateLimitDecision
from clients.memory_client import MemoryKeyValueStore
from clients.valkey_client import ValkeyClient
from utils.timezone import now_utc


class RateLimiter:
    """Per-client-address request throttling."""

    KEY_PREFIX = "ratelimit:client:"

    def __init__(self, store: ValkeyClient | MemoryKeyValueStore, config: AuthConfig):
        self._store = store
        self._config = config
        self._window_seconds = config.rate_limit_window_seconds
        self._max_requests = config.rate_limit_max_requests

    @property
    def limit(self) -> int:
        return self._max_requests

    def _key(self, client_key: str) -> str:
        return f"{self.KEY_PREFIX}{client_key}"

    def check(self, client_key: str) -> RateLimitDecision:
        """Count one request and report whether it is allowed.

        First request (or first after the window lapsed) opens a new window
        with count=1. Within a window, requests are allowed until the count
        reaches the maximum; after that they are denied with remaining=0.
        """
        allowed, count, ttl_ms = self._store.consume_fixed_window(
            self._key(client_key), self._max_requests, self._window_seconds
        )
        reset_at = now_utc() + timedelta(milliseconds=ttl_ms)

        if not allowed:
            return RateLimitDecision(
                allowed=False,
                limit=self._max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after_seconds=max(math.ceil(ttl_ms / 1000), 1),
            )

        return RateLimitDecision(
            allowed=True,
            limit=self._max_requests,
            remaining=max(self._max_requests - count, 0),
            reset_at=reset_at,
        )

    def reset(self, client_key: str) -> None:
        """Drop the counter for a client so its next request opens a fresh window."""
        self._store.delete(self._key(client_key))

    def get_remaining(self, client_key: str) -> int:
        """Requests left in the current window without consuming one."""
        current = self._store.get(self._key(client_key))

        if current is None:
            return self._max_requests

        return max(self._max_requests - int(current), 0)
