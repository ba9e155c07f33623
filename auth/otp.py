"""One-time passcode lifecycle: issue, verify, purge.

One record per (email, otp_type). Issuing replaces the previous record once
its resend cooldown has passed, so there is at most one live challenge per
purpose. Only a keyed hash of the code is stored; the raw code goes to the
notifier and nowhere else.

Verification reserves an attempt with an atomic increment before any other
check. Two concurrent guesses against a record at max-1 attempts therefore
get distinct attempt numbers, and only one of them can still be under the limit.
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.exceptions import (
    InvalidOtpError,
    NotifierError,
    OtpAlreadyVerifiedError,
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpNotFoundError,
    OtpResendThrottledError,
)
from auth.memory_store import MemoryAuthDatabase
from auth.types import OtpRecord, OtpType
from clients.email_client import EmailGatewayClient, EmailGatewayError
from utils.timezone import now_utc, seconds_until

logger = logging.getLogger(__name__)


@dataclass
class OtpIssueResult:
    """Result of issuing an OTP. Never contains the code."""

    email: str
    otp_type: OtpType
    expires_at: datetime
    next_resend_allowed_at: datetime


class OtpEngine:
    """Generates, stores, dispatches and verifies one-time passcodes."""

    def __init__(
        self,
        config: AuthConfig,
        auth_db: AuthDatabase | MemoryAuthDatabase,
        notifier: EmailGatewayClient,
    ):
        self._config = config
        self._auth_db = auth_db
        self._notifier = notifier
        self._secret = config.otp_hash_secret.encode("utf-8")

    def _generate_code(self) -> str:
        length = self._config.otp_code_length
        return str(secrets.randbelow(10**length)).zfill(length)

    def _hash_code(self, email: str, otp_type: OtpType, code: str) -> str:
        # Email and purpose act as the salt: identical codes never share a digest.
        message = f"{otp_type.value}:{email}:{code}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def issue(self, email: str, otp_type: OtpType) -> OtpIssueResult:
        """Create a new OTP for (email, otp_type) and send it.

        Raises:
            OtpResendThrottledError: Previous OTP's resend cooldown still running.
            NotifierError: Code could not be delivered (record is discarded).
        """
        email = email.lower().strip()
        now = now_utc()

        existing = self._auth_db.get_otp(email, otp_type)
        if existing and existing.next_resend_allowed_at > now:
            raise OtpResendThrottledError(seconds_until(existing.next_resend_allowed_at, now))

        code = self._generate_code()
        record = OtpRecord(
            email=email,
            otp_type=otp_type,
            code_hash=self._hash_code(email, otp_type, code),
            attempts=0,
            is_verified=False,
            expires_at=now + timedelta(minutes=self._config.otp_expiry_minutes),
            next_resend_allowed_at=now + timedelta(seconds=self._config.otp_resend_delay_seconds),
            created_at=now,
        )

        # Conditional upsert re-checks the cooldown: a concurrent issue may have won.
        if not self._auth_db.store_otp(record, now):
            current = self._auth_db.get_otp(email, otp_type)
            retry_after = seconds_until(current.next_resend_allowed_at, now) if current else 1
            raise OtpResendThrottledError(max(retry_after, 1))

        try:
            self._notifier.send_otp(
                email=email,
                code=code,
                otp_type=otp_type.value,
                expires_in_minutes=self._config.otp_expiry_minutes,
            )
        except EmailGatewayError as e:
            self._auth_db.delete_otp(email, otp_type)
            logger.error(f"OTP dispatch failed for {otp_type.value}: {e}")
            raise NotifierError()

        logger.info(f"Issued {otp_type.value} OTP")
        return OtpIssueResult(
            email=email,
            otp_type=otp_type,
            expires_at=record.expires_at,
            next_resend_allowed_at=record.next_resend_allowed_at,
        )

    def verify(self, email: str, otp_type: OtpType, candidate_code: str) -> OtpType:
        """Check a candidate code against the live record.

        Returns:
            The verified record's otp_type, for the caller to branch on.

        Raises:
            OtpNotFoundError: No record for (email, otp_type).
            OtpAttemptsExceededError: Attempt limit reached. Exhausted records are purged.
            OtpAlreadyVerifiedError: Record was already consumed.
            OtpExpiredError: Record is past its expiry.
            InvalidOtpError: Code does not match.
        """
        email = email.lower().strip()
        max_attempts = self._config.otp_max_attempts
        now = now_utc()
        candidate_hash = self._hash_code(email, otp_type, str(candidate_code).strip())

        # Attempt counting and the verified flip happen in one storage step:
        # exactly one concurrent caller can win, and never past the limit.
        reserved = self._auth_db.reserve_otp_attempt(email, otp_type, candidate_hash, max_attempts, now)
        if reserved is None:
            raise OtpNotFoundError()
        record, won = reserved

        if record.attempts > max_attempts:
            purged = self._auth_db.delete_exhausted_otps(email, max_attempts)
            logger.info(f"Purged {purged} exhausted OTP record(s)")
            raise OtpAttemptsExceededError()

        if won:
            # The record just verified stays behind so a replay reports AlreadyVerified.
            self._auth_db.purge_stale_otps(now, max_attempts, keep=(email, otp_type))
            return record.otp_type

        if record.is_verified:
            raise OtpAlreadyVerifiedError()
        if record.expires_at < now:
            raise OtpExpiredError()
        raise InvalidOtpError()

    def purge_stale(self) -> int:
        """Delete every expired, exhausted or verified record. Returns count deleted."""
        count = self._auth_db.purge_stale_otps(now_utc(), self._config.otp_max_attempts)
        logger.info(f"Purged {count} stale OTP record(s)")
        return count

    def discard(self, email: str) -> int:
        """Delete all OTP records for an email (account removal)."""
        return self._auth_db.delete_otps_for_email(email.lower().strip())
