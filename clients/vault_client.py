"""
Secrets for the accounts service, read from HashiCorp Vault (KV v2).

AppRole login with credentials from the environment. Every path lives under
the 'accounts/' mount prefix. Missing configuration or secrets are fatal:
the service cannot sign tokens or reach its stores without them.
"""

import logging
import os
from typing import Dict

import hvac
from hvac.exceptions import Forbidden, InvalidPath, Unauthorized

logger = logging.getLogger(__name__)

_SECRET_PREFIX = "accounts"

# Process-wide client and field cache, keyed "accounts/<path>/<field>"
_vault_client_instance: "VaultClient | None" = None
_secret_cache: Dict[str, str] = {}


class VaultError(Exception):
    """Vault unreachable, misconfigured, or refused a read."""


class VaultClient:
    """Authenticated hvac client scoped to accounts/ secrets."""

    def __init__(self, vault_addr: str | None = None, vault_namespace: str | None = None):
        """
        Log in with AppRole.

        Environment: VAULT_ADDR, VAULT_ROLE_ID, VAULT_SECRET_ID, optional VAULT_NAMESPACE.

        Raises:
            VaultError: Missing settings or rejected login
        """
        self.vault_addr = vault_addr or os.getenv("VAULT_ADDR")
        self.vault_namespace = vault_namespace or os.getenv("VAULT_NAMESPACE")
        role_id = os.getenv("VAULT_ROLE_ID")
        secret_id = os.getenv("VAULT_SECRET_ID")

        if not self.vault_addr:
            raise VaultError("VAULT_ADDR environment variable is required")
        if not role_id or not secret_id:
            raise VaultError("VAULT_ROLE_ID and VAULT_SECRET_ID environment variables are required")

        options = {"url": self.vault_addr}
        if self.vault_namespace:
            options["namespace"] = self.vault_namespace
        self.client = hvac.Client(**options)

        try:
            login = self.client.auth.approle.login(role_id=role_id, secret_id=secret_id)
        except (Unauthorized, Forbidden, InvalidPath) as e:
            logger.error(f"AppRole login rejected: {e}")
            raise VaultError(f"AppRole login rejected: {e}")
        self.client.token = login["auth"]["client_token"]

        if not self.client.is_authenticated():
            raise VaultError("Vault authentication failed")
        logger.info(f"Vault client authenticated against {self.vault_addr}")

    def read_secret(self, path: str) -> Dict[str, str]:
        """All fields of accounts/<path>."""
        full_path = f"{_SECRET_PREFIX}/{path}"
        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=full_path, raise_on_deleted_version=True
            )
        except InvalidPath:
            logger.error(f"Secret path not found: {full_path}")
            raise VaultError(f"Secret path '{full_path}' not found in Vault")
        except (Unauthorized, Forbidden) as e:
            logger.error(f"Access denied to secret {full_path}: {e}")
            raise VaultError(f"Access denied to secret '{full_path}': {e}")
        return response["data"]["data"]

    def get_secret(self, path: str, field: str) -> str:
        """
        One field of accounts/<path>.

        Raises:
            VaultError: Path missing or access denied
            KeyError: Field absent from the secret
        """
        data = self.read_secret(path)
        if field not in data:
            raise KeyError(
                f"Field '{field}' not found in secret '{_SECRET_PREFIX}/{path}'. "
                f"Available: {', '.join(data)}"
            )
        return data[field]


def _vault() -> VaultClient:
    global _vault_client_instance
    if _vault_client_instance is None:
        _vault_client_instance = VaultClient()
    return _vault_client_instance


def _fields(path: str, names: list[str]) -> Dict[str, str]:
    """Fields of one secret, fetched once per process."""
    keys = {name: f"{_SECRET_PREFIX}/{path}/{name}" for name in names}
    if any(key not in _secret_cache for key in keys.values()):
        data = _vault().read_secret(path)
        for name, key in keys.items():
            if name not in data:
                raise KeyError(f"Field '{name}' not found in secret '{_SECRET_PREFIX}/{path}'")
            _secret_cache[key] = data[name]
    return {name: _secret_cache[key] for name, key in keys.items()}


def get_database_url() -> str:
    return _fields("database", ["url"])["url"]


def get_valkey_url() -> str:
    return _fields("valkey", ["url"])["url"]


def get_token_secrets() -> Dict[str, str]:
    """Keys: access_secret, refresh_secret, otp_secret."""
    return _fields("tokens", ["access_secret", "refresh_secret", "otp_secret"])


def get_email_config() -> Dict[str, str]:
    """Keys: gateway_url, api_key, hmac_secret (EmailGatewayClient kwargs)."""
    return _fields("email", ["gateway_url", "api_key", "hmac_secret"])


def get_blob_config() -> Dict[str, str]:
    """Keys: base_url, api_key, hmac_secret (BlobStorageClient kwargs)."""
    return _fields("blob", ["base_url", "api_key", "hmac_secret"])
