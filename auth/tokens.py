"""Signed access/refresh token issuance, verification and rotation.

Tokens are self-contained JWTs carrying only the subject id, a kind claim and
a unique jti. Access and refresh tokens are signed with different secrets so
one can never be replayed as the other.

Refresh tokens are single-use when a key-value store is supplied: rotation
claims the presented token's jti in a denylist (atomic SET NX) before minting
the new pair, and sign-out revokes it the same way. Denylist entries expire
with the token, so the store stays bounded.
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from jose import ExpiredSignatureError, JWTError, jwt

from auth.config import AuthConfig
from auth.exceptions import InvalidTokenError, TokenExpiredError
from auth.types import TokenKind, TokenPair
from clients.memory_client import MemoryKeyValueStore
from clients.valkey_client import ValkeyClient
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class TokenService:
    """Stateless JWT issuance plus an optional refresh-token denylist."""

    DENYLIST_PREFIX = "revoked:refresh:"

    def __init__(
        self,
        config: AuthConfig,
        store: ValkeyClient | MemoryKeyValueStore | None = None,
    ):
        self._config = config
        self._store = store
        self._secrets = {
            TokenKind.ACCESS: config.access_token_secret,
            TokenKind.REFRESH: config.refresh_token_secret,
        }
        self._lifetimes = {
            TokenKind.ACCESS: config.access_token_expiry_seconds,
            TokenKind.REFRESH: config.refresh_token_expiry_seconds,
        }

    def _encode(self, subject_id: UUID | str, kind: TokenKind) -> tuple[str, datetime]:
        now = now_utc()
        expires_at = now + timedelta(seconds=self._lifetimes[kind])
        claims = {
            "sub": str(subject_id),
            "type": kind.value,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": uuid4().hex,
        }
        token = jwt.encode(claims, self._secrets[kind], algorithm=self._config.jwt_algorithm)
        return token, expires_at

    def _decode(self, token: str, kind: TokenKind) -> dict:
        if not token:
            raise InvalidTokenError("Token is missing")
        try:
            claims = jwt.decode(token, self._secrets[kind], algorithms=[self._config.jwt_algorithm])
        except ExpiredSignatureError:
            raise TokenExpiredError("Token has expired")
        except JWTError:
            raise InvalidTokenError("Token is invalid")

        if claims.get("type") != kind.value or not claims.get("sub") or not claims.get("jti"):
            raise InvalidTokenError("Token is invalid")
        return claims

    def issue_access_token(self, subject_id: UUID | str) -> str:
        token, _ = self._encode(subject_id, TokenKind.ACCESS)
        return token

    def issue_refresh_token(self, subject_id: UUID | str) -> str:
        token, _ = self._encode(subject_id, TokenKind.REFRESH)
        return token

    def issue_pair(self, subject_id: UUID | str) -> TokenPair:
        access_token, access_expires_at = self._encode(subject_id, TokenKind.ACCESS)
        refresh_token, refresh_expires_at = self._encode(subject_id, TokenKind.REFRESH)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def verify(self, token: str, kind: TokenKind) -> str:
        """Return the subject id of a valid token.

        Raises:
            TokenExpiredError: Signature valid but past expiry.
            InvalidTokenError: Bad signature, wrong kind, malformed, or revoked.
        """
        claims = self._decode(token, kind)
        if kind is TokenKind.REFRESH and self._is_revoked(claims["jti"]):
            raise InvalidTokenError("Refresh token has been revoked")
        return claims["sub"]

    def rotate(self, refresh_token: str) -> tuple[str, TokenPair]:
        """Exchange a refresh token for a brand-new access+refresh pair.

        The presented token is consumed: a second rotation with it fails.

        Returns:
            Tuple of (subject_id, new token pair)
        """
        claims = self._decode(refresh_token, TokenKind.REFRESH)
        if not self._claim_jti(claims):
            logger.warning(f"Refresh token reuse detected for subject {claims['sub']}")
            raise InvalidTokenError("Refresh token has already been used")
        return claims["sub"], self.issue_pair(claims["sub"])

    def revoke(self, refresh_token: str) -> str:
        """Revoke a refresh token (sign-out). Returns its subject id.

        Raises:
            InvalidTokenError: If the token is not a valid, unexpired refresh token.
        """
        claims = self._decode(refresh_token, TokenKind.REFRESH)
        self._claim_jti(claims)
        return claims["sub"]

    def _remaining_seconds(self, claims: dict) -> int:
        expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        return max(int((expires_at - now_utc()).total_seconds()), 1)

    def _claim_jti(self, claims: dict) -> bool:
        if self._store is None:
            return True
        return self._store.set_if_absent(
            f"{self.DENYLIST_PREFIX}{claims['jti']}", claims["sub"], self._remaining_seconds(claims)
        )

    def _is_revoked(self, jti: str) -> bool:
        if self._store is None:
            return False
        return self._store.exists(f"{self.DENYLIST_PREFIX}{jti}")
