"""Account lifecycle: registration, lockout accounting, deletion, reactivation.

Owns every write to an account's lockout, deletion and credential fields.
Each mutation is a single conditional update in the database layer, so two
requests racing on one account cannot lose an increment or both win a flag
flip.

Guards on locked or deleted accounts are the orchestrator's job; methods here
assume the caller already decided the transition is permitted.
"""

import logging
from datetime import timedelta

from auth.config import AuthConfig
from auth.credentials import CredentialStore
from auth.database import AuthDatabase
from auth.exceptions import (
    AccountAlreadyDeletedError,
    AccountNotDeletedError,
    EmailAlreadyExistsError,
    ReactivationTooSoonError,
    UserNotFoundError,
)
from auth.memory_store import MemoryAuthDatabase
from auth.types import Account, Avatar, AvatarUpload, FederatedProfile
from clients.blob_client import BlobStorageClient, BlobStorageError
from utils.timezone import now_utc, seconds_until

logger = logging.getLogger(__name__)


class AccountLifecycle:
    """State transitions on Account records."""

    def __init__(
        self,
        config: AuthConfig,
        auth_db: AuthDatabase | MemoryAuthDatabase,
        credentials: CredentialStore,
        blob_client: BlobStorageClient | None = None,
    ):
        self._config = config
        self._auth_db = auth_db
        self._credentials = credentials
        self._blob_client = blob_client

    # ------------------------------------------------------------------
    # Registration / federation
    # ------------------------------------------------------------------

    def register(self, name: str, email: str, raw_password: str) -> Account:
        """Create an unverified local account.

        Raises:
            EmailAlreadyExistsError: Email already registered (any provider).
        """
        email = email.lower().strip()
        if self._auth_db.get_account_by_email(email) is not None:
            raise EmailAlreadyExistsError()

        # Unique constraint still backs this up if a concurrent register wins
        account = self._auth_db.create_account(
            name=name.strip(),
            email=email,
            password_hash=self._credentials.hash_password(raw_password),
            now=now_utc(),
        )
        logger.info(f"Registered account {account.id}")
        return account

    def link_federated_account(self, profile: FederatedProfile) -> Account:
        """Create or update an account from an external identity, matched by email.

        The provider has already proven control of the address, so the account
        is marked verified. A local password, if any, is left in place.
        """
        avatar = Avatar(public_id="", url=profile.avatar_url) if profile.avatar_url else None
        account = self._auth_db.upsert_federated_account(
            email=profile.email.lower(),
            name=profile.name,
            provider=profile.provider,
            provider_account_id=profile.provider_account_id,
            avatar=avatar,
            now=now_utc(),
        )
        logger.info(f"Linked {profile.provider.value} identity to account {account.id}")
        return account

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def is_locked(self, account: Account) -> bool:
        return account.is_locked(now_utc())

    def lock_remaining_seconds(self, account: Account) -> int:
        """Seconds until the lock lapses, 0 when not locked."""
        if account.lock_until is None:
            return 0
        return seconds_until(account.lock_until, now_utc())

    def record_login_attempt(self, account: Account, password_matched: bool) -> Account:
        """Apply a sign-in outcome to the lockout counters.

        A mismatch increments failed_login_attempts and sets lock_until once the
        count reaches login_max_attempts. A lapsed lock restarts the count at 1.
        A match clears both.
        """
        now = now_utc()
        if password_matched:
            updated = self._auth_db.reset_failed_logins(account.id, now)
        else:
            updated = self._auth_db.record_failed_login(
                account.id,
                max_attempts=self._config.login_max_attempts,
                lock_until=now + timedelta(minutes=self._config.lock_duration_minutes),
                now=now,
            )
            if updated is not None and updated.is_locked(now):
                logger.warning(f"Account {account.id} locked after {updated.failed_login_attempts} failed sign-ins")

        if updated is None:
            raise UserNotFoundError()
        return updated

    # ------------------------------------------------------------------
    # Verification / credentials / profile
    # ------------------------------------------------------------------

    def mark_email_verified(self, account: Account) -> Account:
        """Flag the email verified, clear lockout counters, stamp last_login_at."""
        updated = self._auth_db.mark_email_verified(account.id, now_utc())
        if updated is None:
            raise UserNotFoundError()
        return updated

    def change_password_hash(self, account: Account, new_password: str) -> None:
        if not self._auth_db.update_password_hash(
            account.id, self._credentials.hash_password(new_password), now_utc()
        ):
            raise UserNotFoundError()
        logger.info(f"Password updated for account {account.id}")

    def update_profile(
        self,
        account: Account,
        name: str,
        bio: str | None,
        avatar_upload: AvatarUpload | None = None,
    ) -> Account:
        """Update display fields. A new avatar replaces the old blob."""
        avatar = account.avatar
        if avatar_upload is not None:
            if self._blob_client is None:
                raise RuntimeError("Avatar upload requires a blob storage client")
            stored = self._blob_client.upload(
                avatar_upload.filename, avatar_upload.content, avatar_upload.content_type
            )
            avatar = Avatar(public_id=stored.public_id, url=stored.url, size=stored.size)

        updated = self._auth_db.update_profile(account.id, name.strip(), bio, avatar, now_utc())
        if updated is None:
            raise UserNotFoundError()

        if avatar_upload is not None and account.avatar is not None:
            self._discard_blob(account.avatar, strict=False)
        return updated

    # ------------------------------------------------------------------
    # Deletion / reactivation
    # ------------------------------------------------------------------

    def soft_delete(self, account: Account) -> Account:
        """Deactivate; reactivation opens after reactivation_window_hours.

        Raises:
            AccountAlreadyDeletedError: Account is already soft-deleted.
        """
        now = now_utc()
        updated = self._auth_db.soft_delete_account(
            account.id,
            now=now,
            reactivate_available_at=now + timedelta(hours=self._config.reactivation_window_hours),
        )
        if updated is None:
            raise AccountAlreadyDeletedError()
        logger.info(f"Account {account.id} soft-deleted, reactivation at {updated.reactivate_available_at}")
        return updated

    def hard_delete(self, account: Account) -> None:
        """Purge the avatar blob, then remove the account permanently."""
        if account.avatar is not None:
            self._discard_blob(account.avatar, strict=True)

        if not self._auth_db.delete_account(account.id):
            raise UserNotFoundError()
        logger.info(f"Account {account.id} permanently deleted")

    def reactivate(self, account: Account) -> Account:
        """Clear deletion flags once the window has opened.

        Raises:
            AccountNotDeletedError: Account is active.
            ReactivationTooSoonError: Window still closed.
        """
        if not account.is_deleted:
            raise AccountNotDeletedError()

        now = now_utc()
        if account.reactivate_available_at is not None and account.reactivate_available_at > now:
            raise ReactivationTooSoonError(seconds_until(account.reactivate_available_at, now))

        updated = self._auth_db.reactivate_account(account.id, now)
        if updated is None:
            # Lost a race with another reactivation
            raise AccountNotDeletedError()
        logger.info(f"Account {account.id} reactivated")
        return updated

    def _discard_blob(self, avatar: Avatar, strict: bool) -> None:
        # Externally hosted avatars (federated profiles) have no public_id
        if not avatar.public_id or self._blob_client is None:
            return
        try:
            self._blob_client.delete(avatar.public_id)
        except BlobStorageError as e:
            if strict:
                raise
            logger.warning(f"Could not delete old avatar {avatar.public_id}: {e}")
