"""FastAPI application factory.

Run with:  uvicorn app:create_app --factory
Production wiring reads every secret and connection URL from Vault.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from api.base import success_response
from api.errors import register_error_handlers
from api.middleware import RequestIDMiddleware
from auth.api import create_auth_router
from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.service import AuthService, build_auth_service
from clients.blob_client import BlobStorageClient
from clients.email_client import EmailGatewayClient
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient
from clients.vault_client import (
    get_blob_config,
    get_database_url,
    get_email_config,
    get_valkey_url,
)

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_production_service(config: AuthConfig) -> AuthService:
    """Postgres + Valkey + HTTP collaborators, all configured from Vault."""
    postgres = PostgresClient(get_database_url())
    valkey = ValkeyClient(get_valkey_url())
    return build_auth_service(
        config=config,
        auth_db=AuthDatabase(postgres),
        kv_store=valkey,
        notifier=EmailGatewayClient(**get_email_config()),
        blob_client=BlobStorageClient(**get_blob_config()),
        postgres=postgres,
    )


def create_app(auth_service: AuthService | None = None, config: AuthConfig | None = None) -> FastAPI:
    """Build the app. Tests inject a service wired over in-memory stores."""
    if auth_service is None:
        load_dotenv(Path(__file__).parent / ".env")
        configure_logging()
        config = config or AuthConfig.from_vault(
            cookie_secure=os.getenv("COOKIE_SECURE", "true").lower() != "false",
            trust_forwarded_headers=os.getenv("TRUST_FORWARDED_HEADERS", "false").lower() == "true",
        )
        auth_service = build_production_service(config)
    config = config or AuthConfig()

    app = FastAPI(title=config.app_name)
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)
    app.include_router(create_auth_router(auth_service, config))

    @app.get("/health")
    def health():
        return success_response({"status": "ok"}).body()

    logger.info(f"{config.app_name} app created")
    return app
