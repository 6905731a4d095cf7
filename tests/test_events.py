import pytest

from authcore.logging import _add_correlation_id, _redact_pii, sanitize_error_message, set_correlation_id
from authcore.service.email import EmailService
from authcore.service.events import (
    ACCOUNT_REGISTERED,
    PASSWORD_CHANGED,
    SECOND_FACTOR_DISABLED,
    SUSPICIOUS_LOGIN,
    USER_LOGIN,
    AccountNotificationHandler,
    EventDispatcher,
    LoginAlertHandler,
    SecurityEvent,
)


class RecordingHandler:
    def __init__(self, name="recording", fail_times=0, only=None):
        self.name = name
        self.fail_times = fail_times
        self.only = only
        self.calls = 0
        self.delivered = []

    def accepts(self, event):
        return self.only is None or event.name == self.only

    async def handle(self, event):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError("handler down")
        self.delivered.append(event.id)


class RecordingEmail:
    def __init__(self, result=True):
        self.result = result
        self.sent = []

    def send_email_verification(self, to_email, code, *, ttl_minutes):
        self.sent.append(("verification", to_email, code, ttl_minutes))
        return self.result

    def send_password_changed(self, to_email):
        self.sent.append(("password_changed", to_email))
        return self.result

    def send_second_factor_changed(self, to_email, *, enabled):
        self.sent.append(("second_factor", to_email, enabled))
        return self.result

    def send_login_alert(self, to_email, *, device_type, ip_address, flags):
        self.sent.append(("login_alert", to_email, device_type, ip_address, flags))
        return self.result


class TestDispatcher:
    async def test_retries_then_delivers(self):
        handler = RecordingHandler(fail_times=2)
        dispatcher = EventDispatcher([handler], max_attempts=3, base_delay_seconds=0)
        event = SecurityEvent(name=USER_LOGIN, account_id="acct")
        dispatcher.emit(event)
        await dispatcher.drain(timeout=1)
        assert handler.calls == 3
        assert handler.delivered == [event.id]
        assert dispatcher.pending == 0

    async def test_abandons_after_max_attempts(self):
        handler = RecordingHandler(fail_times=10)
        dispatcher = EventDispatcher([handler], max_attempts=2, base_delay_seconds=0)
        dispatcher.emit(SecurityEvent(name=USER_LOGIN, account_id="acct"))
        await dispatcher.drain(timeout=1)
        assert handler.calls == 2
        assert handler.delivered == []

    async def test_failing_handler_does_not_block_others(self):
        broken = RecordingHandler(name="broken", fail_times=10)
        healthy = RecordingHandler(name="healthy")
        dispatcher = EventDispatcher([broken, healthy], max_attempts=1, base_delay_seconds=0)
        event = SecurityEvent(name=USER_LOGIN, account_id="acct")
        dispatcher.emit(event)
        await dispatcher.drain(timeout=1)
        assert healthy.delivered == [event.id]

    async def test_only_accepting_handlers_run(self):
        handler = RecordingHandler(only=SUSPICIOUS_LOGIN)
        dispatcher = EventDispatcher([handler], base_delay_seconds=0)
        dispatcher.emit(SecurityEvent(name=USER_LOGIN, account_id="acct"))
        await dispatcher.drain(timeout=1)
        assert handler.calls == 0

    def test_emit_without_loop_delivers_inline(self):
        handler = RecordingHandler()
        dispatcher = EventDispatcher(base_delay_seconds=0)
        dispatcher.register(handler)
        event = SecurityEvent(name=USER_LOGIN, account_id="acct")
        dispatcher.emit(event)
        assert handler.delivered == [event.id]


class TestNotificationHandlers:
    async def test_registration_sends_code(self):
        email = RecordingEmail()
        handler = AccountNotificationHandler(email, verification_ttl_minutes=15)
        event = SecurityEvent(
            name=ACCOUNT_REGISTERED,
            account_id="acct",
            notify={"email": "a@example.com", "verification_code": "123456"},
        )
        assert handler.accepts(event)
        await handler.handle(event)
        assert email.sent == [("verification", "a@example.com", "123456", 15)]

    async def test_security_change_notices(self):
        email = RecordingEmail()
        handler = AccountNotificationHandler(email)
        for name in (PASSWORD_CHANGED, SECOND_FACTOR_DISABLED):
            await handler.handle(
                SecurityEvent(name=name, account_id="acct", notify={"email": "a@example.com"})
            )
        assert email.sent == [
            ("password_changed", "a@example.com"),
            ("second_factor", "a@example.com", False),
        ]

    async def test_undelivered_mail_raises_for_retry(self):
        handler = AccountNotificationHandler(RecordingEmail(result=False))
        with pytest.raises(RuntimeError):
            await handler.handle(
                SecurityEvent(
                    name=PASSWORD_CHANGED, account_id="acct", notify={"email": "a@example.com"}
                )
            )

    def test_events_without_recipient_ignored(self):
        handler = AccountNotificationHandler(RecordingEmail())
        assert not handler.accepts(SecurityEvent(name=PASSWORD_CHANGED, account_id="acct"))
        assert not handler.accepts(
            SecurityEvent(name=USER_LOGIN, account_id="acct", notify={"email": "a@example.com"})
        )

    async def test_login_alert(self):
        email = RecordingEmail()
        handler = LoginAlertHandler(email)
        event = SecurityEvent(
            name=SUSPICIOUS_LOGIN,
            account_id="acct",
            severity="warning",
            payload={"device_type": "mobile", "ip_address": "10.0.0.9", "flags": ["multiple_ips"]},
            notify={"email": "a@example.com"},
        )
        assert handler.accepts(event)
        await handler.handle(event)
        assert email.sent == [("login_alert", "a@example.com", "mobile", "10.0.0.9", ["multiple_ips"])]

    def test_notify_is_hidden_from_repr(self):
        event = SecurityEvent(
            name=ACCOUNT_REGISTERED, account_id="acct", notify={"verification_code": "123456"}
        )
        assert "123456" not in repr(event)


class TestEmailService:
    def test_unconfigured_service_logs_instead(self):
        service = EmailService()
        assert not service.is_configured
        assert service.send_password_changed("a@example.com") is True

    def test_email_redaction(self):
        assert EmailService._redact_email("traveler@example.com") == "tr***@example.com"
        assert EmailService._redact_email("nonsense") == "redacted"


class TestLogScrubbing:
    def test_pii_fields_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"email": "traveler@example.com", "refresh_token": "abcdefghij", "account_id": "acct-1"},
        )
        assert event["email"] == "tr***om"
        assert event["refresh_token"] == "ab***ij"
        assert event["account_id"] == "acct-1"

    def test_short_and_non_string_values_untouched(self):
        event = _redact_pii(None, "info", {"otp": "1234", "token_count": 3})
        assert event == {"otp": "1234", "token_count": 3}

    def test_correlation_id_attached(self):
        cid = set_correlation_id("req-42")
        assert cid == "req-42"
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"

    def test_sanitize_error_message(self):
        message = sanitize_error_message("failed reading /srv/authcore/.jwt_access_secret")
        assert "/srv" not in message
        assert sanitize_error_message("") == "An error occurred"
        assert len(sanitize_error_message("x" * 1000)) == 500
