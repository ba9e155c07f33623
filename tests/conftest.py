"""Shared test fixtures for the accounts test suite.

Everything runs over the in-memory backends (MemoryAuthDatabase,
MemoryKeyValueStore) with the email gateway and blob store mocked, so no
Postgres, Valkey or Vault is needed.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import Mock

import pytest
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
load_dotenv(Path(__file__).parent.parent / ".env")

import clients.vault_client as vault_module
from auth.config import AuthConfig
from auth.memory_store import MemoryAuthDatabase
from auth.service import build_auth_service
from auth.types import SessionContext
from clients.blob_client import BlobStorageClient, StoredBlob
from clients.email_client import EmailGatewayClient
from clients.memory_client import MemoryKeyValueStore


# Modules that read the current time through utils.timezone.now_utc
CLOCK_MODULES = (
    "auth.otp",
    "auth.lifecycle",
    "auth.tokens",
    "auth.rate_limiter",
    "auth.reset",
    "clients.memory_client",
)


@pytest.fixture(autouse=True)
def reset_vault_singleton():
    """Vault client singleton and secret cache never leak between tests."""
    vault_module._vault_client_instance = None
    vault_module._secret_cache.clear()
    yield
    vault_module._vault_client_instance = None
    vault_module._secret_cache.clear()


# =============================================================================
# CLOCK
# =============================================================================


class FrozenClock:
    """Callable replacement for now_utc that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock(monkeypatch):
    """Frozen at the real current second, so JWT expiry checks still agree."""
    frozen = FrozenClock(datetime.now(timezone.utc).replace(microsecond=0))
    for module in CLOCK_MODULES:
        monkeypatch.setattr(f"{module}.now_utc", frozen)
    return frozen


# =============================================================================
# CONFIG / STORAGE
# =============================================================================


@pytest.fixture
def config():
    """Fast Argon2 parameters and non-secure cookies for the http TestClient."""
    return AuthConfig(
        otp_hash_secret="test-otp-secret",
        access_token_secret="test-access-secret",
        refresh_token_secret="test-refresh-secret",
        password_hash_time_cost=1,
        password_hash_memory_cost_kib=8,
        password_hash_parallelism=1,
        cookie_secure=False,
    )


@pytest.fixture
def auth_db():
    return MemoryAuthDatabase()


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


# =============================================================================
# COLLABORATORS
# =============================================================================


@pytest.fixture
def outbox():
    """Every OTP handed to the notifier, newest last."""
    return []


@pytest.fixture
def notifier(outbox):
    """Mock email gateway that records the codes it was asked to send."""
    mock = Mock(spec=EmailGatewayClient)

    def capture(email, code, otp_type, expires_in_minutes):
        outbox.append({"email": email, "code": code, "otp_type": otp_type})

    mock.send_otp.side_effect = capture
    return mock


@pytest.fixture
def blob_client():
    mock = Mock(spec=BlobStorageClient)
    mock.upload.return_value = StoredBlob(
        public_id="avatars/1700000000000",
        url="https://blobs.example.com/avatars/1700000000000.png",
        size=4,
    )
    return mock


@pytest.fixture
def sent_code(outbox):
    """Look up the most recent code sent to an email for a purpose."""

    def lookup(email: str, otp_type: str) -> str:
        for message in reversed(outbox):
            if message["email"] == email and message["otp_type"] == otp_type:
                return message["code"]
        raise AssertionError(f"No {otp_type} OTP was sent to {email}")

    return lookup


# =============================================================================
# SERVICE
# =============================================================================


@pytest.fixture
def auth_service(config, auth_db, kv_store, notifier, blob_client, clock):
    return build_auth_service(
        config=config,
        auth_db=auth_db,
        kv_store=kv_store,
        notifier=notifier,
        blob_client=blob_client,
    )


@pytest.fixture
def ctx():
    return SessionContext(client_address="203.0.113.7", user_agent="pytest")
