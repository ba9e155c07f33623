# Infrastructure clients
from clients.vault_client import (
    VaultClient,
    VaultError,
    get_blob_config,
    get_database_url,
    get_email_config,
    get_token_secrets,
    get_valkey_url,
)
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient
from clients.memory_client import MemoryKeyValueStore
from clients.email_client import EmailGatewayClient, EmailGatewayError
from clients.blob_client import BlobStorageClient, BlobStorageError
