"""Tests for OtpEngine - issue, verify, purge of one-time passcodes."""

import threading

import pytest

from auth.exceptions import (
    InvalidOtpError,
    NotifierError,
    OtpAlreadyVerifiedError,
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpNotFoundError,
    OtpResendThrottledError,
)
from auth.otp import OtpEngine
from auth.types import OtpType
from clients.email_client import EmailGatewayError

EMAIL = "alice@example.com"
VERIFY = OtpType.EMAIL_VERIFICATION
RESET = OtpType.PASSWORD_RESET


@pytest.fixture
def engine(config, auth_db, notifier, clock):
    return OtpEngine(config, auth_db, notifier)


def wrong(code: str) -> str:
    return str((int(code) + 1) % 10 ** len(code)).zfill(len(code))


class TestIssue:
    """Issuing stores a hash and hands the code to the notifier."""

    def test_sends_code(self, engine, notifier, sent_code, config):
        engine.issue(EMAIL, VERIFY)

        code = sent_code(EMAIL, "email-verification")
        assert len(code) == config.otp_code_length
        assert code.isdigit()
        notifier.send_otp.assert_called_once()
        assert notifier.send_otp.call_args.kwargs["expires_in_minutes"] == config.otp_expiry_minutes

    def test_stores_hash_not_code(self, engine, auth_db, sent_code):
        engine.issue(EMAIL, VERIFY)

        record = auth_db.get_otp(EMAIL, VERIFY)
        assert record.code_hash != sent_code(EMAIL, "email-verification")
        assert len(record.code_hash) == 64

    def test_result_never_contains_code(self, engine, clock, config):
        result = engine.issue(EMAIL, VERIFY)

        assert not hasattr(result, "code")
        assert (result.expires_at - clock.now).total_seconds() == config.otp_expiry_minutes * 60

    def test_email_normalized(self, engine, auth_db):
        engine.issue("  Alice@Example.com ", VERIFY)
        assert auth_db.get_otp(EMAIL, VERIFY) is not None

    def test_resend_within_cooldown_throttled(self, engine, notifier):
        engine.issue(EMAIL, VERIFY)

        with pytest.raises(OtpResendThrottledError) as exc_info:
            engine.issue(EMAIL, VERIFY)

        assert exc_info.value.retry_after_seconds == 60
        assert notifier.send_otp.call_count == 1

    def test_resend_after_cooldown_replaces_record(self, engine, auth_db, clock, sent_code):
        engine.issue(EMAIL, VERIFY)
        first_code = sent_code(EMAIL, "email-verification")
        with pytest.raises(InvalidOtpError):
            engine.verify(EMAIL, VERIFY, wrong(first_code))
        clock.advance(seconds=61)

        engine.issue(EMAIL, VERIFY)

        record = auth_db.get_otp(EMAIL, VERIFY)
        assert record.created_at == clock.now
        assert record.attempts == 0

    def test_types_are_independent(self, engine):
        """A verification OTP does not throttle a reset OTP."""
        engine.issue(EMAIL, VERIFY)
        engine.issue(EMAIL, RESET)

    def test_notifier_failure_discards_record(self, engine, auth_db, notifier):
        notifier.send_otp.side_effect = EmailGatewayError("down")

        with pytest.raises(NotifierError):
            engine.issue(EMAIL, VERIFY)

        assert auth_db.get_otp(EMAIL, VERIFY) is None

    def test_notifier_failure_allows_immediate_retry(self, engine, notifier, outbox):
        """A failed send leaves no cooldown behind."""
        notifier.send_otp.side_effect = EmailGatewayError("down")
        with pytest.raises(NotifierError):
            engine.issue(EMAIL, VERIFY)

        notifier.send_otp.side_effect = lambda **kw: outbox.append(kw)
        engine.issue(EMAIL, VERIFY)
        assert len(outbox) == 1


class TestVerify:
    """Verification outcomes."""

    def test_correct_code(self, engine, auth_db, sent_code):
        engine.issue(EMAIL, VERIFY)

        assert engine.verify(EMAIL, VERIFY, sent_code(EMAIL, "email-verification")) is VERIFY
        assert auth_db.get_otp(EMAIL, VERIFY).is_verified is True

    def test_wrong_code(self, engine, auth_db, sent_code):
        engine.issue(EMAIL, VERIFY)

        with pytest.raises(InvalidOtpError):
            engine.verify(EMAIL, VERIFY, wrong(sent_code(EMAIL, "email-verification")))

        assert auth_db.get_otp(EMAIL, VERIFY).attempts == 1

    def test_no_record(self, engine):
        with pytest.raises(OtpNotFoundError):
            engine.verify(EMAIL, VERIFY, "123456")

    def test_code_for_other_type_rejected(self, engine, sent_code):
        """A reset code cannot verify an email."""
        engine.issue(EMAIL, VERIFY)
        engine.issue(EMAIL, RESET)
        reset_code = sent_code(EMAIL, "password-reset")
        verify_code = sent_code(EMAIL, "email-verification")
        if reset_code == verify_code:
            pytest.skip("codes collided")

        with pytest.raises(InvalidOtpError):
            engine.verify(EMAIL, VERIFY, reset_code)

    def test_expired(self, engine, clock, config, sent_code):
        engine.issue(EMAIL, VERIFY)
        clock.advance(minutes=config.otp_expiry_minutes, seconds=1)

        with pytest.raises(OtpExpiredError):
            engine.verify(EMAIL, VERIFY, sent_code(EMAIL, "email-verification"))

    def test_replay_reports_already_verified(self, engine, sent_code):
        engine.issue(EMAIL, VERIFY)
        code = sent_code(EMAIL, "email-verification")
        engine.verify(EMAIL, VERIFY, code)

        with pytest.raises(OtpAlreadyVerifiedError):
            engine.verify(EMAIL, VERIFY, code)

    def test_attempts_exhausted(self, engine, auth_db, config, sent_code):
        """After max wrong guesses the next attempt is refused and the record purged."""
        engine.issue(EMAIL, VERIFY)
        code = sent_code(EMAIL, "email-verification")
        for _ in range(config.otp_max_attempts):
            with pytest.raises(InvalidOtpError):
                engine.verify(EMAIL, VERIFY, wrong(code))

        with pytest.raises(OtpAttemptsExceededError):
            engine.verify(EMAIL, VERIFY, code)

        assert auth_db.get_otp(EMAIL, VERIFY) is None
        with pytest.raises(OtpNotFoundError):
            engine.verify(EMAIL, VERIFY, code)

    def test_correct_code_on_last_attempt(self, engine, config, sent_code):
        engine.issue(EMAIL, VERIFY)
        code = sent_code(EMAIL, "email-verification")
        for _ in range(config.otp_max_attempts - 1):
            with pytest.raises(InvalidOtpError):
                engine.verify(EMAIL, VERIFY, wrong(code))

        assert engine.verify(EMAIL, VERIFY, code) is VERIFY

    def test_verify_purges_other_stale_records(self, engine, auth_db, clock, config, sent_code):
        engine.issue("bob@example.com", VERIFY)
        clock.advance(minutes=config.otp_expiry_minutes, seconds=1)
        engine.issue(EMAIL, VERIFY)

        engine.verify(EMAIL, VERIFY, sent_code(EMAIL, "email-verification"))

        assert auth_db.get_otp("bob@example.com", VERIFY) is None
        assert auth_db.get_otp(EMAIL, VERIFY) is not None

    def test_concurrent_correct_guesses_verify_once(self, engine, sent_code):
        """Exactly one of many simultaneous correct submissions succeeds."""
        engine.issue(EMAIL, VERIFY)
        code = sent_code(EMAIL, "email-verification")
        outcomes = []
        outcomes_lock = threading.Lock()

        def attempt():
            try:
                engine.verify(EMAIL, VERIFY, code)
                outcome = "ok"
            except (OtpAlreadyVerifiedError, OtpAttemptsExceededError, OtpNotFoundError):
                outcome = "refused"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1

    def test_concurrent_correct_guesses_on_last_attempt(self, engine, auth_db, config, sent_code, monkeypatch):
        """With one attempt left, one simultaneous correct submission wins and none wins past the limit."""
        engine.issue(EMAIL, VERIFY)
        code = sent_code(EMAIL, "email-verification")
        for _ in range(config.otp_max_attempts - 1):
            with pytest.raises(InvalidOtpError):
                engine.verify(EMAIL, VERIFY, wrong(code))

        reservations = []
        outcomes = []
        outcomes_lock = threading.Lock()
        reserve = auth_db.reserve_otp_attempt

        def recording_reserve(*args, **kwargs):
            result = reserve(*args, **kwargs)
            if result is not None:
                with outcomes_lock:
                    reservations.append((result[0].attempts, result[1]))
            return result

        monkeypatch.setattr(auth_db, "reserve_otp_attempt", recording_reserve)

        def attempt():
            try:
                engine.verify(EMAIL, VERIFY, code)
                outcome = "ok"
            except (OtpAlreadyVerifiedError, OtpAttemptsExceededError, OtpNotFoundError):
                outcome = "refused"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(outcomes) == 8
        assert outcomes.count("ok") == 1
        winners = [attempts for attempts, won in reservations if won]
        assert winners == [config.otp_max_attempts]


class TestPurge:
    def test_purge_stale(self, engine, auth_db, clock, config):
        engine.issue(EMAIL, VERIFY)
        engine.issue("bob@example.com", VERIFY)
        clock.advance(minutes=config.otp_expiry_minutes, seconds=1)
        engine.issue("carol@example.com", VERIFY)

        assert engine.purge_stale() == 2
        assert auth_db.get_otp("carol@example.com", VERIFY) is not None

    def test_discard(self, engine, auth_db):
        engine.issue(EMAIL, VERIFY)
        engine.issue(EMAIL, RESET)

        assert engine.discard("Alice@example.com") == 2
        assert auth_db.get_otp(EMAIL, RESET) is None
