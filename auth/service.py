"""Authentication service - orchestrates the credential and session state machine.

Account states: registered (unverified) -> email verified -> [locked] ->
[soft-deleted] -> reactivated. Every public operation takes the caller's
SessionContext plus a JSON-shaped payload and returns an AuthResult; nothing
raises out of this class. Operations that can be brute-forced pass the
per-address rate limiter before touching any other state.
"""

import logging
from typing import Any, Callable
from uuid import UUID

from pydantic import ValidationError

from auth.config import AuthConfig
from auth.credentials import CredentialStore
from auth.database import AuthDatabase
from auth.exceptions import (
    AccountAlreadyDeletedError,
    AccountDeactivatedError,
    AccountLockedError,
    AuthError,
    EmailNotVerifiedError,
    InputValidationError,
    InvalidCredentialsError,
    InvalidResetTokenError,
    InvalidTokenError,
    OtpError,
    PasswordReuseError,
    RateLimitedError,
    ReactivationTooSoonError,
    ResetSessionExpiredError,
    UserNotFoundError,
)
from auth.lifecycle import AccountLifecycle
from auth.memory_store import MemoryAuthDatabase
from auth.otp import OtpEngine
from auth.rate_limiter import RateLimiter
from auth.reset import ResetSessionStore
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.tokens import TokenService
from auth.types import (
    Account,
    AuthResult,
    AvatarUpload,
    ChangePasswordRequest,
    DeleteAccountRequest,
    DeleteType,
    ErrorKind,
    FederatedProfile,
    OtpRequest,
    OtpType,
    OtpVerifyRequest,
    ProfileUpdateRequest,
    ResetPasswordRequest,
    SessionContext,
    SignInRequest,
    SignUpRequest,
    TokenKind,
)
from clients.blob_client import BlobStorageClient
from clients.email_client import EmailGatewayClient
from clients.memory_client import MemoryKeyValueStore
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."
RATE_LIMITED_MESSAGE = "Too many requests. Please try again later."


def _field_errors(error: ValidationError) -> dict[str, list[str]]:
    """Flatten pydantic errors into {field: [messages]} keyed by JSON field name."""
    fields: dict[str, list[str]] = {}
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"]) or "body"
        message = item["msg"].removeprefix("Value error, ")
        fields.setdefault(field, []).append(message)
    return fields


class AuthService:
    """Orchestrates registration, sign-in, OTP, reset, refresh and account lifecycle."""

    def __init__(
        self,
        config: AuthConfig,
        auth_db: AuthDatabase | MemoryAuthDatabase,
        rate_limiter: RateLimiter,
        otp_engine: OtpEngine,
        lifecycle: AccountLifecycle,
        credentials: CredentialStore,
        tokens: TokenService,
        reset_sessions: ResetSessionStore,
        security_logger: SecurityLogger,
    ):
        self._config = config
        self._auth_db = auth_db
        self._rate_limiter = rate_limiter
        self._otp = otp_engine
        self._lifecycle = lifecycle
        self._credentials = credentials
        self._tokens = tokens
        self._reset_sessions = reset_sessions
        self._security_logger = security_logger

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _run(
        self,
        operation: str,
        ctx: SessionContext,
        handler: Callable[[], AuthResult],
        gated: bool = False,
        **failure_flags: Any,
    ) -> AuthResult:
        """Rate-gate, run handler, and convert every failure into an AuthResult."""
        decision = None
        if gated:
            decision = self._rate_limiter.check(ctx.client_address)
            if not decision.allowed:
                self._audit(SecurityEvent.RATE_LIMITED, ctx, details={"operation": operation})
                return AuthResult.fail(
                    ErrorKind.RATE_LIMITED,
                    RATE_LIMITED_MESSAGE,
                    429,
                    retry_after_seconds=decision.retry_after_seconds,
                    rate_limit=decision,
                )

        try:
            result = handler()
        except AuthError as e:
            result = self._failure(e, **failure_flags)
        except Exception:
            logger.exception(f"{operation} failed unexpectedly")
            result = AuthResult.fail(ErrorKind.INTERNAL_ERROR, GENERIC_ERROR_MESSAGE, 500)

        result.rate_limit = decision
        return result

    @staticmethod
    def _failure(error: AuthError, **flags: Any) -> AuthResult:
        extra: dict[str, Any] = dict(flags)
        if isinstance(error, InputValidationError):
            extra["field_errors"] = error.field_errors
        if isinstance(error, RateLimitedError):
            extra["retry_after_seconds"] = error.retry_after_seconds
        if isinstance(error, (AccountLockedError, ReactivationTooSoonError)):
            extra["retry_after_seconds"] = error.remaining_seconds
            extra["data"] = {"remainingSeconds": error.remaining_seconds}
        if isinstance(error, (ResetSessionExpiredError, InvalidResetTokenError)):
            extra["clear_reset_session"] = True
        return AuthResult.fail(error.kind, error.message, error.status_code, **extra)

    @staticmethod
    def _parse(model, payload: Any):
        try:
            return model.model_validate(payload if payload is not None else {})
        except ValidationError as e:
            raise InputValidationError(_field_errors(e))

    def _audit(
        self,
        event: SecurityEvent,
        ctx: SessionContext,
        account: Account | None = None,
        email: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self._security_logger.log(
            event,
            email=account.email if account else email,
            account_id=account.id if account else None,
            ip_address=ctx.client_address,
            user_agent=ctx.user_agent,
            details=details,
        )

    def _account_for_subject(self, subject: str) -> Account:
        try:
            account_id = UUID(subject)
        except ValueError:
            raise InvalidTokenError()
        account = self._auth_db.get_account_by_id(account_id)
        if account is None:
            raise InvalidTokenError()
        return account

    def _authenticate(self, ctx: SessionContext, allow_deleted: bool = False) -> Account:
        """Resolve the access token to a verified account.

        Raises:
            InvalidTokenError: No token, bad token, or account gone.
            EmailNotVerifiedError: Account has not completed email verification.
            AccountDeactivatedError: Account is soft-deleted and allow_deleted is False.
        """
        if not ctx.access_token:
            raise InvalidTokenError()
        account = self._account_for_subject(self._tokens.verify(ctx.access_token, TokenKind.ACCESS))
        if not account.is_email_verified:
            raise EmailNotVerifiedError()
        if account.is_deleted and not allow_deleted:
            raise AccountDeactivatedError()
        return account

    def _reject_if_locked(self, ctx: SessionContext, account: Account) -> None:
        if self._lifecycle.is_locked(account):
            self._audit(SecurityEvent.SIGNIN_WHILE_LOCKED, ctx, account)
            raise AccountLockedError(self._lifecycle.lock_remaining_seconds(account))

    @staticmethod
    def _identity(account: Account) -> dict[str, str]:
        return {"id": str(account.id), "name": account.name, "email": account.email}

    # ------------------------------------------------------------------
    # Registration and sign-in
    # ------------------------------------------------------------------

    def register(self, ctx: SessionContext, payload: Any) -> AuthResult:
        """Create an unverified local account."""

        def handler() -> AuthResult:
            request = self._parse(SignUpRequest, payload)
            account = self._lifecycle.register(request.name, request.email, request.password)
            self._audit(SecurityEvent.ACCOUNT_REGISTERED, ctx, account)
            return AuthResult.ok("User created successfully", data=self._identity(account), status_code=201)

        return self._run("register", ctx, handler, gated=True)

    def sign_in(self, ctx: SessionContext, payload: Any) -> AuthResult:
        """Check the password, then send an email-verification OTP.

        Tokens are only issued once that OTP is verified. Unknown email and
        wrong password produce the same failure.
        """

        def handler() -> AuthResult:
            request = self._parse(SignInRequest, payload)
            account = self._auth_db.get_account_by_email(request.email)
            if account is None:
                self._audit(SecurityEvent.SIGNIN_FAILED, ctx, email=request.email, details={"reason": "unknown_email"})
                raise InvalidCredentialsError()

            self._reject_if_locked(ctx, account)

            matched = self._credentials.verify_password(request.password, account.password_hash)
            account = self._lifecycle.record_login_attempt(account, matched)
            if not matched:
                if self._lifecycle.is_locked(account):
                    self._audit(SecurityEvent.ACCOUNT_LOCKED, ctx, account)
                self._audit(
                    SecurityEvent.SIGNIN_FAILED,
                    ctx,
                    account,
                    details={"reason": "bad_password", "attempts": account.failed_login_attempts},
                )
                raise InvalidCredentialsError()

            if self._credentials.needs_rehash(account.password_hash):
                self._lifecycle.change_password_hash(account, request.password)

            self._otp.issue(account.email, OtpType.EMAIL_VERIFICATION)
            self._audit(SecurityEvent.SIGNIN_SUCCEEDED, ctx, account)
            return AuthResult.ok("OTP sent successfully", data=self._identity(account))

        return self._run("sign_in", ctx, handler, gated=True)

    def federated_sign_in(self, ctx: SessionContext, profile: FederatedProfile | dict) -> AuthResult:
        """Sign in with an identity an external provider has already verified.

        Creates the account on first use, otherwise links the provider to the
        existing account with the same email. Issues tokens directly.
        """

        def handler() -> AuthResult:
            identity = profile if isinstance(profile, FederatedProfile) else self._parse(FederatedProfile, profile)
            existing = self._auth_db.get_account_by_email(identity.email)
            if existing is not None:
                self._reject_if_locked(ctx, existing)

            account = self._lifecycle.link_federated_account(identity)
            tokens = self._tokens.issue_pair(account.id)
            self._audit(SecurityEvent.FEDERATED_SIGNIN, ctx, account, details={"provider": identity.provider.value})
            return AuthResult.ok("Signed in successfully", data=account.public_view(), tokens=tokens)

        return self._run("federated_sign_in", ctx, handler, gated=True)

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    def request_otp(self, ctx: SessionContext, payload: Any) -> AuthResult:
        """Send a fresh OTP, subject to the per-purpose resend cooldown."""

        def handler() -> AuthResult:
            request = self._parse(OtpRequest, payload)
            account = self._auth_db.get_account_by_email(request.email)
            if account is None:
                raise UserNotFoundError()
            if account.is_deleted:
                raise AccountDeactivatedError()
            self._reject_if_locked(ctx, account)
            if request.type is OtpType.PASSWORD_RESET and not account.is_email_verified:
                raise EmailNotVerifiedError()

            self._otp.issue(account.email, request.type)
            self._audit(SecurityEvent.OTP_SENT, ctx, account, details={"otp_type": request.type.value})
            return AuthResult.ok("OTP sent successfully")

        return self._run("request_otp", ctx, handler, gated=True)

    def verify_otp(self, ctx: SessionContext, payload: Any) -> AuthResult:
        """Verify a code and advance the account.

        email-verification: marks the email verified and issues tokens.
        password-reset: issues a short-lived reset grant.
        """

        def handler() -> AuthResult:
            request = self._parse(OtpVerifyRequest, payload)
            code = request.otp_code
            if len(code) != self._config.otp_code_length or not code.isdigit():
                raise InputValidationError({"otpCode": ["Please enter a valid OTP"]})

            account = self._auth_db.get_account_by_email(request.email)
            if account is None:
                raise UserNotFoundError()
            # Soft-deleted accounts are not rejected here; they need a session to reactivate.
            self._reject_if_locked(ctx, account)
            if request.otp_type is OtpType.PASSWORD_RESET and not account.is_email_verified:
                raise EmailNotVerifiedError()

            try:
                otp_type = self._otp.verify(account.email, request.otp_type, code)
            except OtpError as e:
                self._audit(SecurityEvent.OTP_FAILED, ctx, account, details={"reason": type(e).__name__})
                raise

            self._audit(SecurityEvent.OTP_VERIFIED, ctx, account, details={"otp_type": otp_type.value})

            if otp_type is OtpType.EMAIL_VERIFICATION:
                account = self._lifecycle.mark_email_verified(account)
                tokens = self._tokens.issue_pair(account.id)
                self._audit(SecurityEvent.EMAIL_VERIFIED, ctx, account)
                return AuthResult.ok("OTP code verified successfully.", data=account.public_view(), tokens=tokens)

            grant = self._reset_sessions.create(account)
            return AuthResult.ok(
                "OTP verified successfully. Reset your password",
                data={"expiresAt": grant.expires_at.isoformat()},
                reset_session=grant,
            )

        return self._run("verify_otp", ctx, handler, gated=True)

    def purge_stale_otps(self) -> int:
        """Periodic maintenance hook: drop expired, exhausted and verified OTP records."""
        return self._otp.purge_stale()

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def reset_password(self, ctx: SessionContext, payload: Any) -> AuthResult:
        """Set a new password using the reset grant from the password-reset OTP."""

        def handler() -> AuthResult:
            request = self._parse(ResetPasswordRequest, payload)
            grant = self._reset_sessions.peek(ctx.reset_token)

            account = self._auth_db.get_account_by_id(grant.account_id)
            if account is None or account.email != grant.email:
                raise InvalidResetTokenError()
            if self._credentials.verify_password(request.new_password, account.password_hash):
                raise PasswordReuseError()

            # Consuming re-validates; a concurrent reset with the same grant loses here
            self._reset_sessions.consume(ctx.reset_token)
            self._lifecycle.change_password_hash(account, request.new_password)
            self._audit(SecurityEvent.PASSWORD_RESET, ctx, account)
            return AuthResult.ok("Password reset successfully", clear_reset_session=True)

        return self._run("reset_password", ctx, handler, gated=True)

    def change_password(self, ctx: SessionContext, payload: Any) -> AuthResult:
        """Change the password of the signed-in account."""

        def handler() -> AuthResult:
            account = self._authenticate(ctx)
            request = self._parse(ChangePasswordRequest, payload)
            if not self._credentials.verify_password(request.current_password, account.password_hash):
                raise InvalidCredentialsError("Current password is incorrect")
            if request.new_password == request.current_password:
                raise PasswordReuseError()

            self._lifecycle.change_password_hash(account, request.new_password)
            self._audit(SecurityEvent.PASSWORD_CHANGED, ctx, account)
            return AuthResult.ok("Password changed successfully")

        return self._run("change_password", ctx, handler, gated=True)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def refresh_tokens(self, ctx: SessionContext) -> AuthResult:
        """Rotate the refresh token into a brand-new token pair.

        Soft-deleted accounts may refresh so that they can still reach
        reactivation.
        """

        def handler() -> AuthResult:
            if not ctx.refresh_token:
                raise InvalidTokenError()
            try:
                subject, tokens = self._tokens.rotate(ctx.refresh_token)
                account = self._account_for_subject(subject)
            except InvalidTokenError as e:
                self._audit(SecurityEvent.REFRESH_REJECTED, ctx, details={"reason": e.message})
                raise

            self._audit(SecurityEvent.TOKENS_REFRESHED, ctx, account)
            return AuthResult.ok("Tokens refreshed successfully", tokens=tokens)

        return self._run("refresh_tokens", ctx, handler, clear_tokens=True)

    def sign_out(self, ctx: SessionContext) -> AuthResult:
        """Revoke the refresh token and clear the session cookies."""

        def handler() -> AuthResult:
            if not ctx.refresh_token:
                raise InvalidTokenError()
            subject = self._tokens.revoke(ctx.refresh_token)
            self._security_logger.log(
                SecurityEvent.SIGNED_OUT,
                ip_address=ctx.client_address,
                user_agent=ctx.user_agent,
                details={"subject": subject},
            )
            return AuthResult.ok("Logged out successfully", clear_tokens=True)

        return self._run("sign_out", ctx, handler, clear_tokens=True)

    # ------------------------------------------------------------------
    # Profile and account lifecycle
    # ------------------------------------------------------------------

    def get_profile(self, ctx: SessionContext) -> AuthResult:
        def handler() -> AuthResult:
            account = self._authenticate(ctx)
            return AuthResult.ok("Profile fetched successfully", data=account.public_view())

        return self._run("get_profile", ctx, handler)

    def update_profile(
        self,
        ctx: SessionContext,
        payload: Any,
        avatar: AvatarUpload | None = None,
    ) -> AuthResult:
        def handler() -> AuthResult:
            account = self._authenticate(ctx)
            request = self._parse(ProfileUpdateRequest, payload)
            account = self._lifecycle.update_profile(account, request.name, request.bio, avatar)
            return AuthResult.ok("Profile updated successfully", data=account.public_view())

        return self._run("update_profile", ctx, handler, gated=True)

    def delete_account(self, ctx: SessionContext, payload: Any) -> AuthResult:
        """Soft delete (reactivatable) or hard delete (permanent)."""

        def handler() -> AuthResult:
            account = self._authenticate(ctx, allow_deleted=True)
            request = self._parse(DeleteAccountRequest, payload)
            if account.is_deleted:
                raise AccountAlreadyDeletedError()
            self._reject_if_locked(ctx, account)

            if request.type is DeleteType.SOFT:
                account = self._lifecycle.soft_delete(account)
                self._audit(SecurityEvent.ACCOUNT_DEACTIVATED, ctx, account)
                return AuthResult.ok(
                    "Account deactivated successfully!",
                    data={"reactivateAvailableAt": account.reactivate_available_at.isoformat()},
                )

            self._lifecycle.hard_delete(account)
            self._otp.discard(account.email)
            if ctx.refresh_token:
                self._revoke_after_delete(ctx.refresh_token)
            self._audit(SecurityEvent.ACCOUNT_DELETED, ctx, account)
            return AuthResult.ok("Account deleted successfully!", clear_tokens=True)

        return self._run("delete_account", ctx, handler, gated=True)

    def _revoke_after_delete(self, refresh_token: str) -> None:
        # The account is already gone; a stale refresh cookie is not a failure
        try:
            self._tokens.revoke(refresh_token)
        except InvalidTokenError as e:
            logger.info(f"Refresh token not revoked on hard delete: {e.message}")

    def reactivate_account(self, ctx: SessionContext) -> AuthResult:
        def handler() -> AuthResult:
            account = self._authenticate(ctx, allow_deleted=True)
            account = self._lifecycle.reactivate(account)
            self._audit(SecurityEvent.ACCOUNT_REACTIVATED, ctx, account)
            return AuthResult.ok("Account has been reactivated", data=account.public_view())

        return self._run("reactivate_account", ctx, handler, gated=True)


def build_auth_service(
    config: AuthConfig,
    auth_db: AuthDatabase | MemoryAuthDatabase,
    kv_store: ValkeyClient | MemoryKeyValueStore,
    notifier: EmailGatewayClient,
    blob_client: BlobStorageClient | None = None,
    postgres: PostgresClient | None = None,
) -> AuthService:
    """Wire the components over the given storage backends and collaborators."""
    credentials = CredentialStore(config)
    return AuthService(
        config=config,
        auth_db=auth_db,
        rate_limiter=RateLimiter(kv_store, config),
        otp_engine=OtpEngine(config, auth_db, notifier),
        lifecycle=AccountLifecycle(config, auth_db, credentials, blob_client),
        credentials=credentials,
        tokens=TokenService(config, kv_store),
        reset_sessions=ResetSessionStore(kv_store, config),
        security_logger=SecurityLogger(postgres),
    )
