"""HMAC request signing shared by the HTTP collaborators."""

import hashlib
import hmac


def sign_body(secret: str, body: str | bytes) -> str:
    """Hex HMAC-SHA256 of a request body, sent as X-Signature."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
