"""
In-process key-value store with the same surface as ValkeyClient.

For single-instance deployments and tests. State lives in process memory,
so counters are NOT shared across workers: multi-process deployments must
use ValkeyClient.
"""

import json
import logging
import math
import threading
from datetime import datetime, timedelta

from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class MemoryKeyValueStore:
    """Thread-safe dict with per-key expiry. Expired keys are dropped lazily."""

    def __init__(self):
        self._data: dict[str, tuple[str, datetime | None]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> tuple[str, datetime | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= now_utc():
            del self._data[key]
            return None
        return entry

    @staticmethod
    def _expiry(expire_seconds: int | None) -> datetime | None:
        if expire_seconds is None:
            return None
        return now_utc() + timedelta(seconds=expire_seconds)

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry(expire_seconds))

    def set_if_absent(self, key: str, value: str, expire_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(expire_seconds))
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._live(key) is not None
            self._data.pop(key, None)
            return existed

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    def ttl(self, key: str) -> int:
        """Same convention as Redis TTL: -2 missing, -1 no expiry."""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return max(math.ceil((entry[1] - now_utc()).total_seconds()), 0)

    def consume_fixed_window(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int, int]:
        with self._lock:
            now = now_utc()
            entry = self._live(key)
            if entry is None:
                expires_at = now + timedelta(seconds=window_seconds)
                self._data[key] = ("1", expires_at)
                return True, 1, window_seconds * 1000

            value, expires_at = entry
            ttl_ms = max(int((expires_at - now).total_seconds() * 1000), 0)
            count = int(value)
            if count >= limit:
                return False, count, ttl_ms

            count += 1
            self._data[key] = (str(count), expires_at)
            return True, count, ttl_ms

    def set_json(self, key: str, value: dict | list, expire_seconds: int | None = None) -> None:
        self.set(key, json.dumps(value), expire_seconds)

    def get_json(self, key: str) -> dict | list | None:
        value = self.get(key)
        return json.loads(value) if value is not None else None

    def pop_json(self, key: str) -> dict | list | None:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._data[key]
            return json.loads(entry[0])

    def close(self) -> None:
        with self._lock:
            self._data.clear()
        logger.info("MemoryKeyValueStore closed")
