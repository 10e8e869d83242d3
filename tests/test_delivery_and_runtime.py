import smtplib
from types import SimpleNamespace

import pytest
from twilio.base.exceptions import TwilioRestException

from credvault.service import email as email_module
from credvault.service.email import EmailService, redact_email
from credvault.service.runtime import _mask_url_password, check_rate_limit, get_runtime
from credvault.service.sms import SmsService


class FakeSMTP:
    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = user

    def sendmail(self, from_addr, to_addr, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.sent.append((from_addr, to_addr, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _mailer(**overrides):
    options = {
        "smtp_host": "smtp.example.com",
        "smtp_user": "mailer",
        "smtp_password": "pw",
        "from_email": "no-reply@example.com",
        "base_url": "https://auth.example.com/",
    }
    options.update(overrides)
    return EmailService(**options)


def test_unconfigured_email_counts_as_delivered():
    assert EmailService().is_configured is False
    assert EmailService().send_welcome("dev@example.com") is True


def test_verification_email_links_to_service(fake_smtp):
    assert _mailer().send_email_verification("ada@example.com", "abc-123_XYZ") is True

    (server,) = fake_smtp.instances
    assert server.logged_in == "mailer"
    _, to_addr, message = server.sent[0]
    assert to_addr == "ada@example.com"
    assert "https://auth.example.com/v1/auth/verify-email?token=abc-123_XYZ" in message


def test_smtp_failure_reported_as_false(fake_smtp):
    fake_smtp.fail_with = smtplib.SMTPRecipientsRefused({"ada@example.com": (550, b"no")})
    assert _mailer().send_password_reset("ada@example.com", "token") is False

    fake_smtp.fail_with = OSError("connection reset")
    assert _mailer().send_password_reset("ada@example.com", "token") is False


def test_redact_email():
    assert redact_email("grace@example.com") == "gr***@example.com"
    assert redact_email("not-an-address") == "redacted"


class FakeMessages:
    def __init__(self, error=None):
        self.error = error
        self.created = []

    def create(self, **kwargs):
        if self.error:
            raise self.error
        self.created.append(kwargs)
        return SimpleNamespace(sid="SM123")


def test_sms_sends_code_through_gateway():
    messages = FakeMessages()
    sms = SmsService(from_number="+15550001234", client=SimpleNamespace(messages=messages))

    assert sms.send_otp("+15557654321", "123456") is True
    (sent,) = messages.created
    assert sent["to"] == "+15557654321"
    assert sent["from_"] == "+15550001234"
    assert "123456" in sent["body"]


def test_sms_gateway_error_is_false():
    error = TwilioRestException(400, "https://api.twilio.com", msg="invalid number")
    sms = SmsService(
        from_number="+15550001234", client=SimpleNamespace(messages=FakeMessages(error))
    )

    assert sms.send_otp("+15557654321", "123456") is False


def test_unconfigured_sms_counts_as_delivered():
    assert SmsService().send_otp("+15557654321", "123456") is True


def test_mask_url_password():
    assert (
        _mask_url_password("postgresql://app:hunter2@db:5432/credvault")
        == "postgresql://app:***@db:5432/credvault"
    )
    assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
    assert _mask_url_password(None) is None


async def test_local_rate_limit_bucket():
    runtime = get_runtime()
    assert runtime.limiter is None

    results = [await check_rate_limit(runtime, "unit:key", 3, 60) for _ in range(4)]
    assert results == [True, True, True, False]

    allowed, remaining, retry_after = await check_rate_limit(
        runtime, "unit:key", 3, 60, return_remaining=True
    )
    assert allowed is False
    assert remaining == 0
    assert retry_after > 0

    assert await check_rate_limit(runtime, "unit:other", 3, 60) is True
    assert await check_rate_limit(runtime, "unit:off", 0, 60) is True
