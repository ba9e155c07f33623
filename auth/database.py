"""Database operations for accounts and OTP records.

Every mutation that other requests could race on is a single conditional
statement (UPDATE ... SET x = x + 1 ... RETURNING, INSERT ... ON CONFLICT ...
WHERE), never a read followed by a separate write.
"""

from datetime import datetime
from uuid import UUID

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from auth.exceptions import EmailAlreadyExistsError
from auth.types import Account, Avatar, OtpRecord, OtpType, Provider
from clients.postgres_client import PostgresClient

ACCOUNT_COLUMNS = """id, email, name, bio, password_hash, role, avatar, is_email_verified,
    failed_login_attempts, lock_until, is_deleted, deleted_at, reactivate_available_at,
    provider, provider_account_id, created_at, updated_at, last_login_at"""

OTP_COLUMNS = """email, otp_type, code_hash, attempts, is_verified, expires_at,
    next_resend_allowed_at, created_at"""

_OTP_COLUMNS_QUALIFIED = ", ".join(f"o.{name.strip()}" for name in OTP_COLUMNS.split(","))


def _to_account(row: dict) -> Account:
    return Account(
        id=UUID(row["id"]) if isinstance(row["id"], str) else row["id"],
        email=row["email"],
        name=row["name"],
        bio=row["bio"],
        password_hash=row["password_hash"],
        role=row["role"],
        avatar=Avatar(**row["avatar"]) if row["avatar"] else None,
        is_email_verified=row["is_email_verified"],
        failed_login_attempts=row["failed_login_attempts"],
        lock_until=row["lock_until"],
        is_deleted=row["is_deleted"],
        deleted_at=row["deleted_at"],
        reactivate_available_at=row["reactivate_available_at"],
        provider=row["provider"],
        provider_account_id=row["provider_account_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_login_at=row["last_login_at"],
    )


def _to_otp(row: dict) -> OtpRecord:
    return OtpRecord(
        email=row["email"],
        otp_type=OtpType(row["otp_type"]),
        code_hash=row["code_hash"],
        attempts=row["attempts"],
        is_verified=row["is_verified"],
        expires_at=row["expires_at"],
        next_resend_allowed_at=row["next_resend_allowed_at"],
        created_at=row["created_at"],
    )


class AuthDatabase:
    """PostgreSQL persistence for accounts and OTP records."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def _one_account(self, query: str, params: tuple | dict) -> Account | None:
        rows = self._db.execute_returning(query, params)
        return _to_account(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account_by_email(self, email: str) -> Account | None:
        """Find account by email (case-insensitive)."""
        row = self._db.execute_single(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE email = lower(%s)",
            (email,),
        )
        return _to_account(row) if row else None

    def get_account_by_id(self, account_id: UUID) -> Account | None:
        row = self._db.execute_single(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = %s",
            (account_id,),
        )
        return _to_account(row) if row else None

    def create_account(
        self,
        name: str,
        email: str,
        password_hash: str | None,
        now: datetime,
        provider: Provider = Provider.LOCAL,
        provider_account_id: str | None = None,
        is_email_verified: bool = False,
        avatar: Avatar | None = None,
    ) -> Account:
        """Insert a new account (email lowercased).

        Raises:
            EmailAlreadyExistsError: Email already registered.
        """
        try:
            rows = self._db.execute_returning(
                f"""INSERT INTO accounts
                       (email, name, password_hash, provider, provider_account_id,
                        is_email_verified, avatar, created_at, updated_at)
                   VALUES (lower(%s), %s, %s, %s, %s, %s, %s, %s, %s)
                   RETURNING {ACCOUNT_COLUMNS}""",
                (
                    email,
                    name,
                    password_hash,
                    provider.value,
                    provider_account_id,
                    is_email_verified,
                    Json(avatar.model_dump()) if avatar else None,
                    now,
                    now,
                ),
            )
        except pg_errors.UniqueViolation:
            raise EmailAlreadyExistsError()
        return _to_account(rows[0])

    def record_failed_login(
        self, account_id: UUID, max_attempts: int, lock_until: datetime, now: datetime
    ) -> Account | None:
        """Atomically count a failed sign-in and lock once the count reaches max.

        A lapsed lock restarts the count at 1 instead of re-locking on the
        first mistake after it expires.
        """
        return self._one_account(
            f"""UPDATE accounts
               SET failed_login_attempts = CASE
                       WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN 1
                       ELSE failed_login_attempts + 1
                   END,
                   lock_until = CASE
                       WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN
                           CASE WHEN 1 >= %(max)s THEN %(lock_until)s ELSE NULL END
                       WHEN failed_login_attempts + 1 >= %(max)s THEN %(lock_until)s
                       ELSE lock_until
                   END,
                   updated_at = %(now)s
               WHERE id = %(id)s
               RETURNING {ACCOUNT_COLUMNS}""",
            {"now": now, "max": max_attempts, "lock_until": lock_until, "id": account_id},
        )

    def reset_failed_logins(self, account_id: UUID, now: datetime) -> Account | None:
        return self._one_account(
            f"""UPDATE accounts
               SET failed_login_attempts = 0, lock_until = NULL, updated_at = %s
               WHERE id = %s
               RETURNING {ACCOUNT_COLUMNS}""",
            (now, account_id),
        )

    def mark_email_verified(self, account_id: UUID, now: datetime) -> Account | None:
        """Set verified, stamp last login and clear lockout in one statement."""
        return self._one_account(
            f"""UPDATE accounts
               SET is_email_verified = true, last_login_at = %s,
                   failed_login_attempts = 0, lock_until = NULL, updated_at = %s
               WHERE id = %s
               RETURNING {ACCOUNT_COLUMNS}""",
            (now, now, account_id),
        )

    def update_password_hash(self, account_id: UUID, password_hash: str, now: datetime) -> bool:
        rows = self._db.execute_returning(
            "UPDATE accounts SET password_hash = %s, updated_at = %s WHERE id = %s RETURNING id",
            (password_hash, now, account_id),
        )
        return len(rows) > 0

    def update_profile(
        self, account_id: UUID, name: str, bio: str | None, avatar: Avatar | None, now: datetime
    ) -> Account | None:
        return self._one_account(
            f"""UPDATE accounts
               SET name = %s, bio = %s, avatar = %s, updated_at = %s
               WHERE id = %s
               RETURNING {ACCOUNT_COLUMNS}""",
            (name, bio, Json(avatar.model_dump()) if avatar else None, now, account_id),
        )

    def soft_delete_account(
        self, account_id: UUID, now: datetime, reactivate_available_at: datetime
    ) -> Account | None:
        """Flag account deleted. Returns None if missing or already deleted."""
        return self._one_account(
            f"""UPDATE accounts
               SET is_deleted = true, deleted_at = %s, reactivate_available_at = %s, updated_at = %s
               WHERE id = %s AND is_deleted = false
               RETURNING {ACCOUNT_COLUMNS}""",
            (now, reactivate_available_at, now, account_id),
        )

    def reactivate_account(self, account_id: UUID, now: datetime) -> Account | None:
        """Clear deletion flags. Returns None unless deleted and the window has opened."""
        return self._one_account(
            f"""UPDATE accounts
               SET is_deleted = false, deleted_at = NULL, reactivate_available_at = NULL,
                   updated_at = %s
               WHERE id = %s AND is_deleted = true
                 AND (reactivate_available_at IS NULL OR reactivate_available_at <= %s)
               RETURNING {ACCOUNT_COLUMNS}""",
            (now, account_id, now),
        )

    def delete_account(self, account_id: UUID) -> bool:
        """Permanently delete account.

        Returns:
            True if account was found and deleted, False if not found.
        """
        rows = self._db.execute_returning(
            "DELETE FROM accounts WHERE id = %s RETURNING id",
            (account_id,),
        )
        return len(rows) > 0

    def upsert_federated_account(
        self,
        email: str,
        name: str,
        provider: Provider,
        provider_account_id: str,
        avatar: Avatar | None,
        now: datetime,
    ) -> Account:
        """Create the account if the email is new, otherwise link it to the provider."""
        rows = self._db.execute_returning(
            f"""INSERT INTO accounts
                   (email, name, password_hash, provider, provider_account_id,
                    is_email_verified, avatar, created_at, updated_at, last_login_at)
               VALUES (lower(%s), %s, NULL, %s, %s, true, %s, %s, %s, %s)
               ON CONFLICT (email) DO UPDATE
               SET provider = EXCLUDED.provider,
                   provider_account_id = EXCLUDED.provider_account_id,
                   is_email_verified = true,
                   last_login_at = EXCLUDED.last_login_at,
                   updated_at = EXCLUDED.updated_at
               RETURNING {ACCOUNT_COLUMNS}""",
            (
                email,
                name,
                provider.value,
                provider_account_id,
                Json(avatar.model_dump()) if avatar else None,
                now,
                now,
                now,
            ),
        )
        return _to_account(rows[0])

    # ------------------------------------------------------------------
    # OTP records
    # ------------------------------------------------------------------

    def get_otp(self, email: str, otp_type: OtpType) -> OtpRecord | None:
        row = self._db.execute_single(
            f"SELECT {OTP_COLUMNS} FROM otp_records WHERE email = %s AND otp_type = %s",
            (email, otp_type.value),
        )
        return _to_otp(row) if row else None

    def store_otp(self, record: OtpRecord, now: datetime) -> bool:
        """Insert or replace the record for its key unless the old one is still cooling down.

        Returns:
            True if stored, False if an existing record's resend cooldown blocked it.
        """
        rows = self._db.execute_returning(
            """INSERT INTO otp_records
                   (email, otp_type, code_hash, attempts, is_verified, expires_at,
                    next_resend_allowed_at, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (email, otp_type) DO UPDATE
               SET code_hash = EXCLUDED.code_hash,
                   attempts = 0,
                   is_verified = false,
                   expires_at = EXCLUDED.expires_at,
                   next_resend_allowed_at = EXCLUDED.next_resend_allowed_at,
                   created_at = EXCLUDED.created_at
               WHERE otp_records.next_resend_allowed_at <= %s
               RETURNING email""",
            (
                record.email,
                record.otp_type.value,
                record.code_hash,
                record.attempts,
                record.is_verified,
                record.expires_at,
                record.next_resend_allowed_at,
                record.created_at,
                now,
            ),
        )
        return len(rows) > 0

    def reserve_otp_attempt(
        self, email: str, otp_type: OtpType, candidate_hash: str, max_attempts: int, now: datetime
    ) -> tuple[OtpRecord, bool] | None:
        """Spend one attempt and, if the code matches, mark the record verified.

        One statement: the row lock taken by `prior` serializes concurrent
        callers, so at most one of them sees `won` true.

        Returns:
            (record after the update, won) or None when no record exists.
        """
        rows = self._db.execute_returning(
            f"""WITH prior AS (
                   SELECT is_verified FROM otp_records
                   WHERE email = %(email)s AND otp_type = %(otp_type)s
                   FOR UPDATE
               )
               UPDATE otp_records AS o
               SET attempts = o.attempts + 1,
                   is_verified = o.is_verified OR (
                       o.attempts + 1 <= %(max_attempts)s
                       AND o.expires_at >= %(now)s
                       AND o.code_hash = %(code_hash)s
                   )
               FROM prior
               WHERE o.email = %(email)s AND o.otp_type = %(otp_type)s
               RETURNING {_OTP_COLUMNS_QUALIFIED}, (o.is_verified AND NOT prior.is_verified) AS won""",
            {
                "email": email,
                "otp_type": otp_type.value,
                "max_attempts": max_attempts,
                "now": now,
                "code_hash": candidate_hash,
            },
        )
        if not rows:
            return None
        return _to_otp(rows[0]), bool(rows[0]["won"])

    def delete_otp(self, email: str, otp_type: OtpType) -> bool:
        rows = self._db.execute_returning(
            "DELETE FROM otp_records WHERE email = %s AND otp_type = %s RETURNING email",
            (email, otp_type.value),
        )
        return len(rows) > 0

    def delete_exhausted_otps(self, email: str, max_attempts: int) -> int:
        rows = self._db.execute_returning(
            "DELETE FROM otp_records WHERE email = %s AND attempts >= %s RETURNING email",
            (email, max_attempts),
        )
        return len(rows)

    def delete_otps_for_email(self, email: str) -> int:
        rows = self._db.execute_returning(
            "DELETE FROM otp_records WHERE email = %s RETURNING email",
            (email,),
        )
        return len(rows)

    def purge_stale_otps(
        self, now: datetime, max_attempts: int, keep: tuple[str, OtpType] | None = None
    ) -> int:
        """Delete expired, exhausted and verified records, optionally sparing one key."""
        query = """DELETE FROM otp_records
                   WHERE (expires_at < %s OR attempts >= %s OR is_verified = true)"""
        params: tuple = (now, max_attempts)
        if keep is not None:
            query += " AND NOT (email = %s AND otp_type = %s)"
            params += (keep[0], keep[1].value)
        rows = self._db.execute_returning(query + " RETURNING email", params)
        return len(rows)
