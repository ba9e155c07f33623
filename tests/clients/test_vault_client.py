"""Tests for vault_client - AppRole login, secret reads and the process-wide cache.

hvac.Client is patched; no Vault server is needed.
"""

from unittest.mock import Mock, patch

import pytest
from hvac.exceptions import Forbidden, InvalidPath

import clients.vault_client as vault_module
from clients.vault_client import VaultClient, VaultError, get_token_secrets, get_valkey_url


@pytest.fixture
def vault_env(monkeypatch):
    monkeypatch.setenv("VAULT_ADDR", "https://vault.example.com")
    monkeypatch.setenv("VAULT_ROLE_ID", "role")
    monkeypatch.setenv("VAULT_SECRET_ID", "secret")
    monkeypatch.delenv("VAULT_NAMESPACE", raising=False)


@pytest.fixture
def hvac_client(vault_env):
    """Authenticated hvac.Client double serving a small secret tree."""
    secrets = {
        "accounts/valkey": {"url": "redis://valkey.internal:6379/0"},
        "accounts/tokens": {"access_secret": "a" * 32, "refresh_secret": "r" * 32, "otp_secret": "o" * 32},
    }

    def read(path, raise_on_deleted_version=True):
        if path not in secrets:
            raise InvalidPath(f"no secret at {path}")
        return {"data": {"data": secrets[path]}}

    client = Mock()
    client.is_authenticated.return_value = True
    client.auth.approle.login.return_value = {"auth": {"client_token": "s.token"}}
    client.secrets.kv.v2.read_secret_version.side_effect = read

    with patch("clients.vault_client.hvac.Client", return_value=client) as factory:
        client.factory = factory
        yield client


class TestVaultClientInit:
    def test_missing_addr(self, monkeypatch):
        monkeypatch.delenv("VAULT_ADDR", raising=False)

        with pytest.raises(VaultError, match="VAULT_ADDR"):
            VaultClient()

    def test_missing_approle_credentials(self, monkeypatch):
        monkeypatch.setenv("VAULT_ADDR", "https://vault.example.com")
        monkeypatch.delenv("VAULT_ROLE_ID", raising=False)

        with pytest.raises(VaultError, match="VAULT_ROLE_ID"):
            VaultClient()

    def test_logs_in_with_approle(self, hvac_client):
        client = VaultClient()

        hvac_client.auth.approle.login.assert_called_once_with(role_id="role", secret_id="secret")
        assert client.client.token == "s.token"

    def test_namespace_passed_through(self, hvac_client, monkeypatch):
        monkeypatch.setenv("VAULT_NAMESPACE", "team")

        VaultClient()

        hvac_client.factory.assert_called_once_with(url="https://vault.example.com", namespace="team")

    def test_rejected_login(self, hvac_client):
        hvac_client.auth.approle.login.side_effect = Forbidden("bad role")

        with pytest.raises(VaultError, match="AppRole login rejected"):
            VaultClient()

    def test_not_authenticated_after_login(self, hvac_client):
        hvac_client.is_authenticated.return_value = False

        with pytest.raises(VaultError, match="authentication failed"):
            VaultClient()


class TestGetSecret:
    def test_reads_under_prefix(self, hvac_client):
        assert VaultClient().get_secret("valkey", "url") == "redis://valkey.internal:6379/0"

    def test_missing_path(self, hvac_client):
        with pytest.raises(VaultError, match="accounts/nope"):
            VaultClient().get_secret("nope", "url")

    def test_missing_field(self, hvac_client):
        with pytest.raises(KeyError, match="Available: url"):
            VaultClient().get_secret("valkey", "password")

    def test_access_denied(self, hvac_client):
        hvac_client.secrets.kv.v2.read_secret_version.side_effect = Forbidden("policy")

        with pytest.raises(VaultError, match="Access denied"):
            VaultClient().get_secret("valkey", "url")


class TestCachedGetters:
    def test_token_secrets(self, hvac_client):
        secrets = get_token_secrets()

        assert set(secrets) == {"access_secret", "refresh_secret", "otp_secret"}

    def test_cached_for_process(self, hvac_client):
        get_valkey_url()
        get_valkey_url()

        assert hvac_client.secrets.kv.v2.read_secret_version.call_count == 1
        assert hvac_client.factory.call_count == 1

    def test_singleton_reused_across_getters(self, hvac_client):
        get_valkey_url()
        get_token_secrets()

        assert vault_module._vault_client_instance is not None
        assert hvac_client.factory.call_count == 1
