"""
Notifier: outbound email through an HTTP gateway.

Requests are authenticated with an API key plus an HMAC-SHA256 signature over
the exact JSON body. The gateway owns templates and delivery; this client only
hands over the recipient and message.
"""

import json
import logging

import requests

from clients.signing import sign_body

logger = logging.getLogger(__name__)

_OTP_SUBJECTS = {
    "email-verification": "Verify your email",
    "password-reset": "Reset your password",
}


class EmailGatewayError(Exception):
    """Gateway rejected the message or could not be reached."""


class EmailGatewayClient:
    """Deliver OTP codes and plain messages via the email gateway."""

    def __init__(self, gateway_url: str, api_key: str, hmac_secret: str, timeout: float = 10):
        """
        Args:
            gateway_url: Full URL of the gateway's send endpoint
            api_key: Value for the X-API-Key header
            hmac_secret: Secret for the X-Signature header

        Raises:
            ValueError: If any credential is empty
        """
        if not gateway_url:
            raise ValueError("gateway_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not hmac_secret:
            raise ValueError("hmac_secret is required")

        self.gateway_url = gateway_url
        self.api_key = api_key
        self.hmac_secret = hmac_secret
        self.timeout = timeout

    def _post(self, payload: dict) -> None:
        body = json.dumps(payload, separators=(",", ":"))
        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Signature": sign_body(self.hmac_secret, body),
        }

        try:
            response = requests.post(self.gateway_url, data=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Email gateway unreachable: {e}")
            raise EmailGatewayError(f"Connection failed: {e}")

        try:
            result = response.json()
        except ValueError:
            logger.error(f"Email gateway returned non-JSON response (HTTP {response.status_code})")
            raise EmailGatewayError("Invalid response from gateway")

        if response.status_code != 200 or not result.get("success"):
            reason = result.get("message", "Unknown error")
            logger.error(f"Email gateway rejected message: {reason}")
            raise EmailGatewayError(f"Gateway error: {reason}")

    def send_otp(self, email: str, code: str, otp_type: str, expires_in_minutes: int) -> None:
        """
        Send a one-time passcode.

        The code appears only in the outgoing payload, never in logs.

        Args:
            email: Recipient address
            code: Raw numeric code
            otp_type: "email-verification" or "password-reset"
            expires_in_minutes: Shown to the recipient

        Raises:
            EmailGatewayError: On any delivery failure
        """
        subject = _OTP_SUBJECTS.get(otp_type, "Your verification code")
        payload = {
            "type": "otp",
            "email": email,
            "subject": subject,
            "code": code,
            "purpose": otp_type,
            "expires_in_minutes": expires_in_minutes,
            "body": (
                f"Your verification code is {code}. "
                f"It expires in {expires_in_minutes} minutes."
            ),
        }
        self._post(payload)
        logger.info(f"OTP email ({otp_type}) handed to gateway")

    def send_email(self, to: str, subject: str, body: str, sender: str = "system") -> None:
        """
        Send an arbitrary plain-text message.

        Raises:
            ValueError: If sender is not "auth" or "system"
            EmailGatewayError: On gateway failure
        """
        if sender not in ("auth", "system"):
            raise ValueError(f"sender must be 'auth' or 'system', got '{sender}'")

        self._post({"type": "custom", "email": to, "subject": subject, "body": body, "sender": sender})
        logger.info(f"Email handed to gateway: {subject}")
