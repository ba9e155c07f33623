"""Security event logging for the auth audit trail.

Every event goes to the `auth.security` logger. When a PostgresClient is
supplied it is also appended to the security_events table.
Raw passwords, codes and tokens are never passed in here.
"""

import logging
from enum import Enum
from typing import Any
from uuid import UUID

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from utils.timezone import now_utc

audit_logger = logging.getLogger("auth.security")


class SecurityEvent(Enum):
    """Auth security event types."""

    ACCOUNT_REGISTERED = "account_registered"
    SIGNIN_SUCCEEDED = "signin_succeeded"
    SIGNIN_FAILED = "signin_failed"
    ACCOUNT_LOCKED = "account_locked"
    SIGNIN_WHILE_LOCKED = "signin_while_locked"
    OTP_SENT = "otp_sent"
    OTP_VERIFIED = "otp_verified"
    OTP_FAILED = "otp_failed"
    EMAIL_VERIFIED = "email_verified"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGED = "password_changed"
    TOKENS_REFRESHED = "tokens_refreshed"
    REFRESH_REJECTED = "refresh_rejected"
    SIGNED_OUT = "signed_out"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    ACCOUNT_DELETED = "account_deleted"
    ACCOUNT_REACTIVATED = "account_reactivated"
    FEDERATED_SIGNIN = "federated_signin"
    RATE_LIMITED = "rate_limited"


# Events that indicate something worth a human's attention
_WARNING_EVENTS = {
    SecurityEvent.ACCOUNT_LOCKED,
    SecurityEvent.SIGNIN_WHILE_LOCKED,
    SecurityEvent.REFRESH_REJECTED,
    SecurityEvent.RATE_LIMITED,
}


class SecurityLogger:
    """Append-only security event logger."""

    def __init__(self, postgres: PostgresClient | None = None):
        self._db = postgres

    def log(
        self,
        event: SecurityEvent,
        email: str | None = None,
        account_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        level = logging.WARNING if event in _WARNING_EVENTS else logging.INFO
        audit_logger.log(
            level,
            f"{event.value} account={account_id or '-'} ip={ip_address or '-'}"
            + (f" details={details}" if details else ""),
        )

        if self._db is None:
            return

        self._db.execute_returning(
            """INSERT INTO security_events
               (event_type, email, account_id, ip_address, user_agent, details, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                event.value,
                email,
                str(account_id) if account_id else None,
                ip_address,
                user_agent,
                Json(details) if details else None,
                now_utc(),
            ),
        )

    def get_recent_events(
        self,
        email: str | None = None,
        account_id: UUID | None = None,
        event_type: SecurityEvent | None = None,
        limit: int = 100,
    ) -> list[dict]:
        """Query recent security events with optional filters. Empty without a database."""
        if self._db is None:
            return []

        conditions = []
        params = []

        if email:
            conditions.append("email = %s")
            params.append(email)

        if account_id:
            conditions.append("account_id = %s")
            params.append(str(account_id))

        if event_type:
            conditions.append("event_type = %s")
            params.append(event_type.value)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        return self._db.execute(
            f"""SELECT id, event_type, email, account_id, ip_address, user_agent, details, created_at
                FROM security_events
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT %s""",
            tuple(params),
        )
