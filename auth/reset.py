"""Password-reset grants.

A verified password-reset OTP earns one short-lived grant. The raw token goes
to the client (cookie); the key-value store only holds its SHA-256 digest. A
per-account pointer records the newest grant, so requesting another reset
invalidates the previous one, and consuming a grant deletes it in the same
round trip that reads it.
"""

import hashlib
import logging
import secrets
from datetime import timedelta

from auth.config import AuthConfig
from auth.exceptions import InvalidResetTokenError, ResetSessionExpiredError
from auth.types import Account, ResetSession
from clients.memory_client import MemoryKeyValueStore
from clients.valkey_client import ValkeyClient
from utils.timezone import now_utc, parse_iso

logger = logging.getLogger(__name__)


class ResetSessionStore:
    """Issue, inspect and consume single-use reset grants."""

    KEY_PREFIX = "reset:"
    ACCOUNT_PREFIX = "reset:account:"
    # Expired grants linger this long so they report as expired, not unknown
    EXPIRED_GRACE_SECONDS = 300

    def __init__(self, store: ValkeyClient | MemoryKeyValueStore, config: AuthConfig):
        self._store = store
        self._ttl_seconds = config.reset_session_expiry_minutes * 60

    @staticmethod
    def _digest(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def create(self, account: Account) -> ResetSession:
        """Issue a new grant for account, revoking any earlier one."""
        token = secrets.token_urlsafe(32)
        digest = self._digest(token)
        session = ResetSession(
            token=token,
            account_id=account.id,
            email=account.email,
            expires_at=now_utc() + timedelta(seconds=self._ttl_seconds),
        )

        pointer = f"{self.ACCOUNT_PREFIX}{account.id}"
        previous = self._store.get(pointer)
        if previous:
            self._store.delete(f"{self.KEY_PREFIX}{previous}")

        self._store.set_json(
            f"{self.KEY_PREFIX}{digest}",
            {
                "account_id": str(account.id),
                "email": account.email,
                "expires_at": session.expires_at.isoformat(),
            },
            expire_seconds=self._ttl_seconds + self.EXPIRED_GRACE_SECONDS,
        )
        self._store.set(pointer, digest, expire_seconds=self._ttl_seconds + self.EXPIRED_GRACE_SECONDS)
        logger.info(f"Reset session issued for account {account.id}")
        return session

    def _load(self, token: str | None, consume: bool) -> ResetSession:
        if not token:
            raise ResetSessionExpiredError()

        key = f"{self.KEY_PREFIX}{self._digest(token)}"
        data = self._store.pop_json(key) if consume else self._store.get_json(key)
        if not data:
            raise InvalidResetTokenError()

        session = ResetSession(
            token=token,
            account_id=data["account_id"],
            email=data["email"],
            expires_at=parse_iso(data["expires_at"]),
        )
        if session.expires_at <= now_utc():
            raise ResetSessionExpiredError()
        return session

    def peek(self, token: str | None) -> ResetSession:
        """Validate a grant without using it up.

        Raises:
            ResetSessionExpiredError: No token presented, or grant past expiry.
            InvalidResetTokenError: Unknown, superseded or already used.
        """
        return self._load(token, consume=False)

    def consume(self, token: str | None) -> ResetSession:
        """Validate and delete a grant in one step. Same errors as peek()."""
        return self._load(token, consume=True)
