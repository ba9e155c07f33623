"""Typed exceptions for auth failures.

Every exception carries the ErrorKind and HTTP status the orchestrator
reports when it converts the failure into an AuthResult.
"""

from auth.types import ErrorKind


class AuthError(Exception):
    """Base class for authentication/authorization errors."""

    kind = ErrorKind.BAD_REQUEST
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InputValidationError(AuthError):
    """Malformed input. The only failure that reports field-level detail."""

    kind = ErrorKind.VALIDATION_ERROR
    status_code = 422
    default_message = "Invalid data received!"

    def __init__(self, field_errors: dict[str, list[str]], message: str | None = None):
        self.field_errors = field_errors
        super().__init__(message)


# -- Unauthorized ------------------------------------------------------------


class InvalidTokenError(AuthError):
    """
    Token is missing, malformed, has a bad signature, or was already used.

    Used for access, refresh and reset tokens alike.
    """

    kind = ErrorKind.UNAUTHORIZED
    status_code = 401
    default_message = "Unauthorized, please login first"


class TokenExpiredError(InvalidTokenError):
    """Token signature is valid but its expiry has passed."""


class InvalidCredentialsError(AuthError):
    """
    Wrong password or unknown email.

    Deliberately generic so responses never reveal whether an email exists.
    """

    kind = ErrorKind.UNAUTHORIZED
    status_code = 401
    default_message = "Invalid email or password"


# -- Forbidden / Conflict / NotFound ----------------------------------------


class EmailNotVerifiedError(AuthError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    default_message = "Please verify your email"


class EmailAlreadyExistsError(AuthError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    default_message = "User with this email already exists"


class UserNotFoundError(AuthError):
    """
    Email or id not associated with any account.

    Sign-in converts this into InvalidCredentialsError so the caller
    cannot distinguish unknown emails from wrong passwords.
    """

    kind = ErrorKind.NOT_FOUND
    status_code = 404
    default_message = "User with this email does not exist"


# -- Rate limiting -----------------------------------------------------------


class RateLimitedError(AuthError):
    """Too many attempts. Client should wait before retrying."""

    kind = ErrorKind.RATE_LIMITED
    status_code = 429

    def __init__(self, retry_after_seconds: int, message: str | None = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message or f"Rate limited. Retry after {retry_after_seconds} seconds.")


class OtpResendThrottledError(RateLimitedError):
    """A live OTP exists and its resend cooldown has not elapsed."""

    def __init__(self, retry_after_seconds: int):
        super().__init__(
            retry_after_seconds,
            f"Please wait {retry_after_seconds} seconds before sending another OTP",
        )


# -- Account state guards ----------------------------------------------------


class AccountLockedError(AuthError):
    """Too many failed sign-ins. Credential checks are suspended until the lock lapses."""

    kind = ErrorKind.LOCKED
    status_code = 423

    def __init__(self, remaining_seconds: int):
        self.remaining_seconds = remaining_seconds
        minutes = max(1, -(-remaining_seconds // 60))
        super().__init__(
            f"Your account has been locked. Please try again after {minutes} minutes."
        )


class AccountDeactivatedError(AuthError):
    """Account is soft-deleted. Only reactivation is permitted."""

    kind = ErrorKind.DEACTIVATED
    status_code = 403
    default_message = "Your account has been deactivated."


class AccountAlreadyDeletedError(AccountDeactivatedError):
    status_code = 400
    default_message = "Your account has already been deactivated!"


class AccountNotDeletedError(AuthError):
    default_message = "Your account is already active"


class ReactivationTooSoonError(AuthError):
    """Soft-deleted account asked to come back before its reactivation window opened."""

    def __init__(self, remaining_seconds: int):
        self.remaining_seconds = remaining_seconds
        minutes = max(1, -(-remaining_seconds // 60))
        super().__init__(
            f"Reactivation is available too soon. Please try again after {minutes} minutes."
        )


# -- OTP ----------------------------------------------------------------------


class OtpError(AuthError):
    """Base class for one-time passcode verification failures."""


class OtpNotFoundError(OtpError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Invalid or expired OTP code."


class InvalidOtpError(OtpError):
    default_message = "Invalid or expired OTP code."


class OtpExpiredError(OtpError):
    default_message = "OTP code has expired."


class OtpAlreadyVerifiedError(OtpError):
    default_message = "OTP code has already been verified."


class OtpAttemptsExceededError(OtpError):
    default_message = "Maximum number of attempts reached. Please try again later."


# -- Password reset -----------------------------------------------------------


class ResetSessionExpiredError(AuthError):
    default_message = "Reset password token has expired"


class InvalidResetTokenError(AuthError):
    default_message = "Invalid reset password token"


class PasswordReuseError(AuthError):
    default_message = "New password cannot be same as old password"


# -- Collaborators --------------------------------------------------------------


class NotifierError(AuthError):
    """Outbound notification could not be delivered."""

    kind = ErrorKind.INTERNAL_ERROR
    status_code = 500
    default_message = "Failed to send OTP"
