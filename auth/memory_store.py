"""In-memory stand-in for AuthDatabase.

Same method surface and the same conditional-update semantics as the SQL
statements in auth.database; each method body runs under one lock, which is
what makes it the in-process equivalent of a single atomic statement.
Suitable for single-process deployments and tests.
"""

import hmac
import threading
import uuid
from datetime import datetime
from uuid import UUID

from auth.exceptions import EmailAlreadyExistsError
from auth.types import Account, Avatar, OtpRecord, OtpType, Provider


class MemoryAuthDatabase:
    """Thread-safe dict-backed account and OTP storage."""

    def __init__(self):
        self._accounts: dict[UUID, Account] = {}
        self._otps: dict[tuple[str, OtpType], OtpRecord] = {}
        # RLock: helpers may be called while the lock is already held
        self._data_lock = threading.RLock()

    def _find_by_email(self, email: str) -> Account | None:
        email = email.lower()
        return next((a for a in self._accounts.values() if a.email == email), None)

    def _update(self, account_id: UUID, **changes) -> Account | None:
        account = self._accounts.get(account_id)
        if account is None:
            return None
        updated = account.model_copy(update=changes)
        self._accounts[account_id] = updated
        return updated.model_copy()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account_by_email(self, email: str) -> Account | None:
        with self._data_lock:
            account = self._find_by_email(email)
            return account.model_copy() if account else None

    def get_account_by_id(self, account_id: UUID) -> Account | None:
        with self._data_lock:
            account = self._accounts.get(account_id)
            return account.model_copy() if account else None

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
        with self._data_lock:
            if self._find_by_email(email) is not None:
                raise EmailAlreadyExistsError()
            account = Account(
                id=uuid.uuid4(),
                email=email.lower(),
                name=name,
                password_hash=password_hash,
                provider=provider,
                provider_account_id=provider_account_id,
                is_email_verified=is_email_verified,
                avatar=avatar,
                created_at=now,
                updated_at=now,
            )
            self._accounts[account.id] = account
            return account.model_copy()

    def record_failed_login(
        self, account_id: UUID, max_attempts: int, lock_until: datetime, now: datetime
    ) -> Account | None:
        with self._data_lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None

            if account.lock_until is not None and account.lock_until <= now:
                attempts = 1
                new_lock = lock_until if attempts >= max_attempts else None
            else:
                attempts = account.failed_login_attempts + 1
                new_lock = lock_until if attempts >= max_attempts else account.lock_until

            return self._update(
                account_id,
                failed_login_attempts=attempts,
                lock_until=new_lock,
                updated_at=now,
            )

    def reset_failed_logins(self, account_id: UUID, now: datetime) -> Account | None:
        with self._data_lock:
            return self._update(account_id, failed_login_attempts=0, lock_until=None, updated_at=now)

    def mark_email_verified(self, account_id: UUID, now: datetime) -> Account | None:
        with self._data_lock:
            return self._update(
                account_id,
                is_email_verified=True,
                last_login_at=now,
                failed_login_attempts=0,
                lock_until=None,
                updated_at=now,
            )

    def update_password_hash(self, account_id: UUID, password_hash: str, now: datetime) -> bool:
        with self._data_lock:
            return self._update(account_id, password_hash=password_hash, updated_at=now) is not None

    def update_profile(
        self, account_id: UUID, name: str, bio: str | None, avatar: Avatar | None, now: datetime
    ) -> Account | None:
        with self._data_lock:
            return self._update(account_id, name=name, bio=bio, avatar=avatar, updated_at=now)

    def soft_delete_account(
        self, account_id: UUID, now: datetime, reactivate_available_at: datetime
    ) -> Account | None:
        with self._data_lock:
            account = self._accounts.get(account_id)
            if account is None or account.is_deleted:
                return None
            return self._update(
                account_id,
                is_deleted=True,
                deleted_at=now,
                reactivate_available_at=reactivate_available_at,
                updated_at=now,
            )

    def reactivate_account(self, account_id: UUID, now: datetime) -> Account | None:
        with self._data_lock:
            account = self._accounts.get(account_id)
            if account is None or not account.is_deleted:
                return None
            if account.reactivate_available_at is not None and account.reactivate_available_at > now:
                return None
            return self._update(
                account_id,
                is_deleted=False,
                deleted_at=None,
                reactivate_available_at=None,
                updated_at=now,
            )

    def delete_account(self, account_id: UUID) -> bool:
        with self._data_lock:
            return self._accounts.pop(account_id, None) is not None

    def upsert_federated_account(
        self,
        email: str,
        name: str,
        provider: Provider,
        provider_account_id: str,
        avatar: Avatar | None,
        now: datetime,
    ) -> Account:
        with self._data_lock:
            existing = self._find_by_email(email)
            if existing is None:
                account = self.create_account(
                    name=name,
                    email=email,
                    password_hash=None,
                    now=now,
                    provider=provider,
                    provider_account_id=provider_account_id,
                    is_email_verified=True,
                    avatar=avatar,
                )
                return self._update(account.id, last_login_at=now)
            return self._update(
                existing.id,
                provider=provider,
                provider_account_id=provider_account_id,
                is_email_verified=True,
                last_login_at=now,
                updated_at=now,
            )

    # ------------------------------------------------------------------
    # OTP records
    # ------------------------------------------------------------------

    def get_otp(self, email: str, otp_type: OtpType) -> OtpRecord | None:
        with self._data_lock:
            record = self._otps.get((email, otp_type))
            return record.model_copy() if record else None

    def store_otp(self, record: OtpRecord, now: datetime) -> bool:
        with self._data_lock:
            key = (record.email, record.otp_type)
            existing = self._otps.get(key)
            if existing is not None and existing.next_resend_allowed_at > now:
                return False
            self._otps[key] = record.model_copy(update={"attempts": 0, "is_verified": False})
            return True

    def reserve_otp_attempt(
        self, email: str, otp_type: OtpType, candidate_hash: str, max_attempts: int, now: datetime
    ) -> tuple[OtpRecord, bool] | None:
        with self._data_lock:
            record = self._otps.get((email, otp_type))
            if record is None:
                return None
            attempts = record.attempts + 1
            won = (
                not record.is_verified
                and attempts <= max_attempts
                and record.expires_at >= now
                and hmac.compare_digest(record.code_hash, candidate_hash)
            )
            updated = record.model_copy(
                update={"attempts": attempts, "is_verified": record.is_verified or won}
            )
            self._otps[(email, otp_type)] = updated
            return updated.model_copy(), won

    def delete_otp(self, email: str, otp_type: OtpType) -> bool:
        with self._data_lock:
            return self._otps.pop((email, otp_type), None) is not None

    def delete_exhausted_otps(self, email: str, max_attempts: int) -> int:
        with self._data_lock:
            doomed = [k for k, r in self._otps.items() if k[0] == email and r.attempts >= max_attempts]
            for key in doomed:
                del self._otps[key]
            return len(doomed)

    def delete_otps_for_email(self, email: str) -> int:
        with self._data_lock:
            doomed = [k for k in self._otps if k[0] == email]
            for key in doomed:
                del self._otps[key]
            return len(doomed)

    def purge_stale_otps(
        self, now: datetime, max_attempts: int, keep: tuple[str, OtpType] | None = None
    ) -> int:
        with self._data_lock:
            doomed = [
                k for k, r in self._otps.items()
                if k != keep and r.is_purgeable(now, max_attempts)
            ]
            for key in doomed:
                del self._otps[key]
            return len(doomed)
