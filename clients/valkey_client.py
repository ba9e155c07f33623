"""
Valkey (Redis-compatible) key-value store.

Holds the state that must be shared between service instances: rate-limit
windows, password-reset grants and the refresh-token denylist. Connection
URL comes from Vault. Connection failures propagate; there is no fallback.
"""

import json
import logging

import redis

logger = logging.getLogger(__name__)


# KEYS[1] counter; ARGV[1] limit, ARGV[2] window in ms.
# The counter stops at the limit, so denied requests do not extend the count.
_FIXED_WINDOW_SCRIPT = """
local window_ms = tonumber(ARGV[2])
local current = redis.call('GET', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if not current or ttl < 0 then
  redis.call('SET', KEYS[1], 1, 'PX', window_ms)
  return {1, 1, window_ms}
end
current = tonumber(current)
if current >= tonumber(ARGV[1]) then
  return {0, current, ttl}
end
return {1, redis.call('INCR', KEYS[1]), ttl}
"""


class ValkeyClient:
    """
    String and JSON values with optional expiry, plus an atomic fixed-window counter.

    Usage:
        store = ValkeyClient("redis://localhost:6379/0")
        store.set_json("reset:<digest>", grant, expire_seconds=600)
        allowed, count, ttl_ms = store.consume_fixed_window("ratelimit:client:1.2.3.4", 100, 900)
    """

    def __init__(self, url: str):
        """
        Connect and ping.

        Raises:
            redis.ConnectionError: Server unreachable
        """
        self._client = redis.from_url(url, decode_responses=True)
        self._client.ping()
        self._fixed_window = self._client.register_script(_FIXED_WINDOW_SCRIPT)
        logger.info("ValkeyClient connected")

    def ping(self) -> bool:
        self._client.ping()
        return True

    # -- plain values ---------------------------------------------------------

    def get(self, key: str) -> str | None:
        """None for a missing key."""
        return self._client.get(key)

    def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        if expire_seconds is None:
            self._client.set(key, value)
        else:
            self._client.setex(key, expire_seconds, value)

    def set_if_absent(self, key: str, value: str, expire_seconds: int) -> bool:
        """SET NX EX. True only for the caller that created the key."""
        return bool(self._client.set(key, value, ex=expire_seconds, nx=True))

    def delete(self, key: str) -> bool:
        """True if the key existed."""
        return self._client.delete(key) > 0

    def exists(self, key: str) -> bool:
        return self._client.exists(key) > 0

    def ttl(self, key: str) -> int:
        """Seconds left; -1 for no expiry, -2 for a missing key."""
        return self._client.ttl(key)

    # -- counters -------------------------------------------------------------

    def consume_fixed_window(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int, int]:
        """
        Count one request against the window stored at key.

        Returns:
            (allowed, count, ttl_ms), ttl_ms being what is left of the window
        """
        allowed, count, ttl_ms = self._fixed_window(keys=[key], args=[limit, window_seconds * 1000])
        return bool(allowed), int(count), int(ttl_ms)

    # -- JSON -----------------------------------------------------------------

    def set_json(self, key: str, value: dict | list, expire_seconds: int | None = None) -> None:
        self.set(key, json.dumps(value), expire_seconds)

    def get_json(self, key: str) -> dict | list | None:
        """
        Raises:
            ValueError: Stored value is not JSON
        """
        return self._decode_json(key, self.get(key))

    def pop_json(self, key: str) -> dict | list | None:
        """GETDEL: of several concurrent callers, one gets the value and the rest get None."""
        return self._decode_json(key, self._client.getdel(key))

    @staticmethod
    def _decode_json(key: str, value: str | None) -> dict | list | None:
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in key '{key}': {e}")

    def close(self) -> None:
        self._client.close()
        logger.info("ValkeyClient closed")
