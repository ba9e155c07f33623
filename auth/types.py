"""Pydantic models for the credential and session domain."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, ValidationInfo, field_validator


class OtpType(str, Enum):
    """Purpose of a one-time passcode. One live record per (email, type)."""

    EMAIL_VERIFICATION = "email-verification"
    PASSWORD_RESET = "password-reset"


class Provider(str, Enum):
    """Identity provider that owns the account's credentials."""

    LOCAL = "local"
    GOOGLE = "google"
    GITHUB = "github"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class DeleteType(str, Enum):
    SOFT = "soft"
    HARD = "hard"


class ErrorKind(str, Enum):
    """Machine-readable failure categories returned to the transport layer."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    LOCKED = "LOCKED"
    DEACTIVATED = "DEACTIVATED"
    BAD_REQUEST = "BAD_REQUEST"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class Avatar(BaseModel):
    """Reference to a blob held by the storage collaborator."""

    public_id: str
    url: str
    size: int = 0


class Account(BaseModel):
    """A registered account, local or federated."""

    id: UUID
    email: EmailStr
    name: str
    bio: str | None = None
    password_hash: str | None = Field(default=None, repr=False)
    role: Role = Role.USER
    avatar: Avatar | None = None

    is_email_verified: bool = False

    failed_login_attempts: int = Field(default=0, ge=0)
    lock_until: datetime | None = None

    is_deleted: bool = False
    deleted_at: datetime | None = None
    reactivate_available_at: datetime | None = None

    provider: Provider = Provider.LOCAL
    provider_account_id: str | None = None

    created_at: datetime
    updated_at: datetime
    last_login_at: datetime | None = None

    model_config = {"from_attributes": True}

    def is_locked(self, now: datetime) -> bool:
        """Locked while lock_until is in the future. Expiry is checked lazily."""
        return self.lock_until is not None and self.lock_until > now

    def public_view(self) -> dict[str, Any]:
        """Sanitized fields safe to return to the account owner."""
        return {
            "id": str(self.id),
            "name": self.name,
            "email": self.email,
            "bio": self.bio,
            "role": self.role.value,
            "isEmailVerified": self.is_email_verified,
            "avatar": self.avatar.model_dump() if self.avatar else None,
            "provider": self.provider.value,
            "lastLoginAt": self.last_login_at.isoformat() if self.last_login_at else None,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "isDeleted": self.is_deleted,
            "lockUntil": self.lock_until.isoformat() if self.lock_until else None,
        }


class OtpRecord(BaseModel):
    """A stored one-time passcode challenge. Holds the code hash, never the code."""

    email: EmailStr
    otp_type: OtpType
    code_hash: str = Field(..., repr=False)
    attempts: int = Field(default=0, ge=0)
    is_verified: bool = False
    expires_at: datetime
    next_resend_allowed_at: datetime
    created_at: datetime

    def is_purgeable(self, now: datetime, max_attempts: int) -> bool:
        return self.is_verified or self.expires_at < now or self.attempts >= max_attempts


class TokenPair(BaseModel):
    """Freshly minted access and refresh tokens."""

    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class ResetSession(BaseModel):
    """Ephemeral password-reset grant issued after a password-reset OTP."""

    token: str = Field(..., repr=False)
    account_id: UUID
    email: EmailStr
    expires_at: datetime


class RateLimitDecision(BaseModel):
    """Outcome of a fixed-window rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after_seconds: int = 0


class FederatedProfile(BaseModel):
    """Identity asserted by an external provider after its own handshake."""

    provider: Provider
    provider_account_id: str
    email: EmailStr
    name: str
    avatar_url: str | None = None


@dataclass
class AvatarUpload:
    """Raw avatar file handed over by the transport layer."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class SessionContext:
    """Per-request caller context: client address plus whatever cookies were sent."""

    client_address: str = "unknown"
    user_agent: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    reset_token: str | None = None


@dataclass
class AuthResult:
    """Tagged outcome of one orchestrator operation.

    Success carries an optional payload; failure carries an ErrorKind.
    Token and reset-session fields tell the transport which cookies to set
    or clear.
    """

    success: bool
    status_code: int
    message: str
    data: Any | None = None
    error: ErrorKind | None = None
    field_errors: dict[str, list[str]] | None = None
    retry_after_seconds: int | None = None
    rate_limit: RateLimitDecision | None = None
    tokens: TokenPair | None = None
    reset_session: ResetSession | None = None
    clear_tokens: bool = False
    clear_reset_session: bool = False

    @classmethod
    def ok(cls, message: str, data: Any | None = None, status_code: int = 200, **kwargs) -> "AuthResult":
        return cls(success=True, status_code=status_code, message=message, data=data, **kwargs)

    @classmethod
    def fail(cls, error: ErrorKind, message: str, status_code: int, **kwargs) -> "AuthResult":
        return cls(success=False, status_code=status_code, message=message, error=error, **kwargs)


# ---------------------------------------------------------------------------
# Request payloads. Field aliases follow the JSON contract (camelCase).
# ---------------------------------------------------------------------------


def _check_email(value: str) -> str:
    if len(value) > 100:
        raise ValueError("Email must be no more than 100 characters.")
    return value.lower()


AccountEmail = Annotated[EmailStr, AfterValidator(_check_email)]


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class SignUpRequest(_Payload):
    name: str = Field(..., min_length=3, max_length=50)
    email: AccountEmail
    password: str = Field(..., min_length=6, max_length=80)
    confirm_password: str = Field(..., alias="confirmPassword", min_length=6, max_length=80)

    @field_validator("confirm_password")
    @classmethod
    def _passwords_match(cls, value: str, info: ValidationInfo) -> str:
        if "password" in info.data and value != info.data["password"]:
            raise ValueError("Passwords do not match")
        return value


class SignInRequest(_Payload):
    email: AccountEmail
    password: str = Field(..., min_length=1)


class OtpRequest(_Payload):
    email: AccountEmail
    type: OtpType


class OtpVerifyRequest(_Payload):
    email: AccountEmail
    otp_code: str = Field(..., alias="otpCode", min_length=1, max_length=10)
    otp_type: OtpType = Field(..., alias="otpType")


class ResetPasswordRequest(_Payload):
    new_password: str = Field(..., alias="newPassword", min_length=6, max_length=80)
    confirm_new_password: str = Field(..., alias="confirmNewPassword", min_length=1)

    @field_validator("confirm_new_password")
    @classmethod
    def _passwords_match(cls, value: str, info: ValidationInfo) -> str:
        if "new_password" in info.data and value != info.data["new_password"]:
            raise ValueError("Passwords do not match")
        return value


class ChangePasswordRequest(ResetPasswordRequest):
    current_password: str = Field(..., alias="currentPassword", min_length=6, max_length=80)


class ProfileUpdateRequest(_Payload):
    name: str = Field(..., min_length=2, max_length=50)
    bio: str | None = Field(default=None, max_length=500)


class DeleteAccountRequest(_Payload):
    type: DeleteType = DeleteType.SOFT
