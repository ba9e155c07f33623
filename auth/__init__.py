"""Credential and session management."""

from auth.exceptions import (
    AuthError,
    InputValidationError,
    InvalidCredentialsError,
    InvalidTokenError,
    RateLimitedError,
    AccountLockedError,
    AccountDeactivatedError,
)
from auth.types import (
    Account,
    AuthResult,
    ErrorKind,
    OtpType,
    SessionContext,
    TokenPair,
)
from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.memory_store import MemoryAuthDatabase
from auth.rate_limiter import RateLimiter
from auth.security_logger import SecurityLogger, SecurityEvent
from auth.service import AuthService, build_auth_service
