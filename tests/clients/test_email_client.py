"""
Tests for EmailGatewayClient.

HTTP is mocked with the responses library; assertions cover what the
gateway receives and how failures surface to callers.
"""

import json
import logging

import pytest
import requests
import responses

from clients.email_client import EmailGatewayClient, EmailGatewayError
from clients.signing import sign_body

GATEWAY_URL = "https://gateway.example.com/send"


@pytest.fixture
def client():
    return EmailGatewayClient(gateway_url=GATEWAY_URL, api_key="test-api-key", hmac_secret="test-hmac-secret")


class TestEmailGatewayClientInit:
    """Fail fast on missing credentials."""

    @pytest.mark.parametrize("missing", ["gateway_url", "api_key", "hmac_secret"])
    def test_rejects_empty_credential(self, missing):
        kwargs = {"gateway_url": GATEWAY_URL, "api_key": "k", "hmac_secret": "s", missing: ""}

        with pytest.raises(ValueError, match=missing):
            EmailGatewayClient(**kwargs)


class TestSendOtp:
    """send_otp - the notifier contract used for verification and reset codes."""

    @responses.activate
    def test_payload_and_signature(self, client):
        responses.add(responses.POST, GATEWAY_URL, json={"success": True}, status=200)

        result = client.send_otp("alice@example.com", "123456", "password-reset", 5)

        assert result is None
        request = responses.calls[0].request
        payload = json.loads(request.body)
        assert payload["email"] == "alice@example.com"
        assert payload["code"] == "123456"
        assert payload["subject"] == "Reset your password"
        assert payload["expires_in_minutes"] == 5
        assert request.headers["X-API-Key"] == "test-api-key"
        assert request.headers["X-Signature"] == sign_body("test-hmac-secret", request.body)

    @responses.activate
    def test_code_not_logged(self, client, caplog):
        responses.add(responses.POST, GATEWAY_URL, json={"success": True}, status=200)

        with caplog.at_level(logging.DEBUG):
            client.send_otp("alice@example.com", "987654", "email-verification", 5)

        assert all("987654" not in r.getMessage() for r in caplog.records)

    @responses.activate
    def test_gateway_500_raises_error(self, client):
        responses.add(responses.POST, GATEWAY_URL, json={"success": False, "message": "Internal error"}, status=500)

        with pytest.raises(EmailGatewayError, match="Internal error"):
            client.send_otp("alice@example.com", "123456", "email-verification", 5)

    @responses.activate
    def test_success_false_raises_error(self, client):
        responses.add(responses.POST, GATEWAY_URL, json={"success": False, "message": "Bounced"}, status=200)

        with pytest.raises(EmailGatewayError):
            client.send_otp("alice@example.com", "123456", "email-verification", 5)

    @responses.activate
    def test_connection_failure_raises_error(self, client):
        responses.add(responses.POST, GATEWAY_URL, body=requests.exceptions.ConnectionError("Network unreachable"))

        with pytest.raises(EmailGatewayError, match="Connection failed"):
            client.send_otp("alice@example.com", "123456", "email-verification", 5)

    @responses.activate
    def test_invalid_json_response_raises_error(self, client):
        responses.add(responses.POST, GATEWAY_URL, body="not json", status=200)

        with pytest.raises(EmailGatewayError, match="Invalid response"):
            client.send_otp("alice@example.com", "123456", "email-verification", 5)


class TestSendEmail:
    """Generic send_email."""

    @responses.activate
    def test_successful_send(self, client):
        responses.add(responses.POST, GATEWAY_URL, json={"success": True}, status=200)

        client.send_email(to="alice@example.com", subject="Welcome", body="Hello", sender="auth")

        payload = json.loads(responses.calls[0].request.body)
        assert payload == {
            "type": "custom",
            "email": "alice@example.com",
            "subject": "Welcome",
            "body": "Hello",
            "sender": "auth",
        }

    def test_invalid_sender_raises_value_error(self, client):
        """Invalid sender value raises ValueError before any HTTP call."""
        with pytest.raises(ValueError, match="sender must be"):
            client.send_email(to="alice@example.com", subject="Test", body="Body", sender="invalid")


class TestSignBody:
    def test_str_and_bytes_agree(self):
        assert sign_body("secret", "payload") == sign_body("secret", b"payload")

    def test_depends_on_secret(self):
        assert sign_body("one", "payload") != sign_body("two", "payload")

    def test_hex_sha256_length(self):
        assert len(sign_body("secret", "payload")) == 64
