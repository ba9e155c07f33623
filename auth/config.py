"""Authentication configuration."""

from pydantic import BaseModel, Field, model_validator


class AuthConfig(BaseModel):
    """
    Authentication configuration.

    Durations are in their natural units (seconds for cooldowns and windows,
    minutes for short-lived grants, hours/days for longer ones) to make
    configuration intuitive.
    """

    # OTP settings
    otp_code_length: int = Field(
        default=6,
        description="Number of digits in a one-time passcode",
        ge=4,
        le=10,
    )
    otp_expiry_minutes: int = Field(
        default=5,
        description="How long an issued OTP remains valid",
        ge=1,
        le=60,
    )
    otp_resend_delay_seconds: int = Field(
        default=60,
        description="Cooldown before another OTP may be sent for the same purpose",
        ge=0,
        le=3600,
    )
    otp_max_attempts: int = Field(
        default=5,
        description="Verification attempts allowed per issued OTP",
        ge=1,
        le=20,
    )
    otp_hash_secret: str = Field(
        default="change-me-otp-secret",
        description="Keyed-hash secret for stored OTP digests",
        min_length=8,
    )

    # Login lockout
    login_max_attempts: int = Field(
        default=5,
        description="Consecutive failed sign-ins before the account is locked",
        ge=1,
        le=50,
    )
    lock_duration_minutes: int = Field(
        default=15,
        description="How long a locked account rejects credential checks",
        ge=1,
        le=1440,
    )

    # Rate limiting (fixed window, per client address)
    rate_limit_max_requests: int = Field(
        default=100,
        description="Requests allowed per client address per window",
        ge=1,
        le=10000,
    )
    rate_limit_window_seconds: int = Field(
        default=900,  # 15 minutes
        description="Fixed window length",
        ge=1,
        le=86400,
    )

    # Tokens
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_secret: str = Field(default="change-me-access-secret", min_length=8)
    refresh_token_secret: str = Field(default="change-me-refresh-secret", min_length=8)
    access_token_expiry_seconds: int = Field(
        default=900,  # 15 minutes
        description="Access token lifetime",
        ge=1,
    )
    refresh_token_expiry_seconds: int = Field(
        default=604800,  # 7 days
        description="Refresh token lifetime",
        ge=1,
    )

    # Password reset
    reset_session_expiry_minutes: int = Field(
        default=10,
        description="How long a verified password-reset grant remains usable",
        ge=1,
        le=60,
    )

    # Account lifecycle
    reactivation_window_hours: int = Field(
        default=24,
        description="Delay after soft delete before reactivation is allowed",
        ge=0,
        le=24 * 365,
    )

    # Password hashing (Argon2id)
    password_hash_time_cost: int = Field(default=2, ge=1, le=10)
    password_hash_memory_cost_kib: int = Field(default=19456, ge=8)
    password_hash_parallelism: int = Field(default=1, ge=1, le=8)

    # Transport
    cookie_secure: bool = Field(default=True, description="Set the Secure flag on auth cookies")
    trust_forwarded_headers: bool = Field(
        default=False,
        description="Take the client address from X-Forwarded-For / X-Real-IP",
    )

    # Application
    app_name: str = Field(
        default="Accounts",
        description="Application name for emails",
    )

    @model_validator(mode="after")
    def _access_shorter_than_refresh(self) -> "AuthConfig":
        if self.access_token_expiry_seconds >= self.refresh_token_expiry_seconds:
            raise ValueError("access_token_expiry_seconds must be shorter than refresh_token_expiry_seconds")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh tokens must use different secrets")
        return self

    @classmethod
    def from_vault(cls, **overrides) -> "AuthConfig":
        """Build config with signing secrets read from Vault."""
        from clients.vault_client import get_token_secrets

        secrets = get_token_secrets()
        return cls(
            access_token_secret=secrets["access_secret"],
            refresh_token_secret=secrets["refresh_secret"],
            otp_hash_secret=secrets["otp_secret"],
            **overrides,
        )
