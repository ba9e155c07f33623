"""Password hashing boundary (Argon2id)."""

import logging

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from argon2.low_level import Type as Argon2Type

from auth.config import AuthConfig

logger = logging.getLogger(__name__)


class CredentialStore:
    """Memory-hard password hashing and verification.

    Hashes are self-describing Argon2 strings (salt and parameters embedded),
    so changing the cost settings never invalidates stored hashes.
    """

    def __init__(self, config: AuthConfig):
        self._hasher = PasswordHasher(
            time_cost=config.password_hash_time_cost,
            memory_cost=config.password_hash_memory_cost_kib,
            parallelism=config.password_hash_parallelism,
            hash_len=32,
            salt_len=16,
            type=Argon2Type.ID,
        )

    def hash_password(self, password: str) -> str:
        if not password:
            raise ValueError("password must not be empty")
        return self._hasher.hash(password)

    def verify_password(self, password: str, password_hash: str | None) -> bool:
        """True only if password matches. Missing or corrupt hashes never match."""
        if not password or not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHashError) as e:
            logger.warning(f"Stored password hash could not be verified: {e}")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        """True when the stored hash was produced with different cost parameters."""
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True
