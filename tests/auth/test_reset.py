"""Tests for ResetSessionStore - single-use password-reset grants."""

import hashlib
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from auth.exceptions import InvalidResetTokenError, ResetSessionExpiredError
from auth.reset import ResetSessionStore
from auth.types import Account


@pytest.fixture
def store(kv_store, config, clock):
    return ResetSessionStore(kv_store, config)


@pytest.fixture
def account():
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    return Account(id=uuid4(), email="alice@example.com", name="Alice", created_at=now, updated_at=now)


class TestCreate:
    def test_returns_raw_token(self, store, account, config, clock):
        grant = store.create(account)

        assert len(grant.token) >= 32
        assert grant.account_id == account.id
        assert (grant.expires_at - clock.now).total_seconds() == config.reset_session_expiry_minutes * 60

    def test_stores_digest_only(self, store, account, kv_store):
        grant = store.create(account)

        assert kv_store.get(f"reset:{grant.token}") is None
        digest = hashlib.sha256(grant.token.encode()).hexdigest()
        assert kv_store.get_json(f"reset:{digest}")["account_id"] == str(account.id)

    def test_new_grant_revokes_previous(self, store, account):
        first = store.create(account)
        second = store.create(account)

        with pytest.raises(InvalidResetTokenError):
            store.peek(first.token)
        assert store.peek(second.token).account_id == account.id


class TestPeekAndConsume:
    def test_peek_does_not_use_up(self, store, account):
        grant = store.create(account)

        store.peek(grant.token)

        assert store.peek(grant.token).email == "alice@example.com"

    def test_consume_is_single_use(self, store, account):
        grant = store.create(account)

        store.consume(grant.token)

        with pytest.raises(InvalidResetTokenError):
            store.consume(grant.token)

    def test_unknown_token(self, store):
        with pytest.raises(InvalidResetTokenError):
            store.peek("made-up-token")

    def test_no_token(self, store):
        """Missing cookie reads as an expired grant."""
        with pytest.raises(ResetSessionExpiredError):
            store.peek(None)

    def test_expired(self, store, account, config, clock):
        grant = store.create(account)
        clock.advance(minutes=config.reset_session_expiry_minutes)

        with pytest.raises(ResetSessionExpiredError):
            store.peek(grant.token)

    def test_forgotten_after_grace(self, store, account, config, clock):
        grant = store.create(account)
        clock.advance(minutes=config.reset_session_expiry_minutes, seconds=ResetSessionStore.EXPIRED_GRACE_SECONDS)

        with pytest.raises(InvalidResetTokenError):
            store.peek(grant.token)
