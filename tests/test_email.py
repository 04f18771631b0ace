import smtplib

import pytest

from credkeep.logging import redact_email
from credkeep.service import email as email_module
from credkeep.service.email import (
    EmailService,
    _lifetime,
    password_reset_email,
    verification_email,
)


class FakeSMTP:
    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        self.sent.append((from_addr, to_addr, message))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(email_module.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def service():
    return EmailService(
        smtp_host="smtp.test",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@credkeep.test",
        from_name="credkeep",
    )


def test_unconfigured_service_logs_instead_of_sending(fake_smtp):
    service = EmailService()

    assert service.is_configured is False
    assert service.send("a@example.com", "subject", "body") is True
    assert fake_smtp.instances == []


def test_send_uses_starttls_and_login(fake_smtp, service):
    assert service.send("a@example.com", "Hello", "Body text") is True

    smtp = fake_smtp.instances[0]
    assert smtp.started_tls is True
    assert smtp.logged_in == ("mailer", "pw")
    assert smtp.timeout == 10.0
    from_addr, to_addr, message = smtp.sent[0]
    assert from_addr == "noreply@credkeep.test"
    assert to_addr == "a@example.com"
    assert "Subject: Hello" in message


@pytest.mark.parametrize(
    "error",
    [
        smtplib.SMTPAuthenticationError(535, b"bad credentials"),
        smtplib.SMTPException("boom"),
        ConnectionRefusedError("refused"),
    ],
)
def test_delivery_failures_return_false(fake_smtp, service, error):
    fake_smtp.fail_with = error

    assert service.send("a@example.com", "Hello", "Body") is False


def test_redact_email():
    assert redact_email("alice@example.com") == "al***@example.com"
    assert redact_email("nonsense") == "redacted"


def test_verification_email_links_to_frontend():
    subject, body = verification_email(
        "tok123", app_name="credkeep", frontend_url="http://localhost:3000/"
    )

    assert subject == "credkeep - Verify your email address"
    assert "http://localhost:3000/verify-email?token=tok123" in body
    assert "24 hours" in body


def test_password_reset_email_links_to_frontend():
    subject, body = password_reset_email(
        "tok456", app_name="credkeep", frontend_url="http://localhost:3000"
    )

    assert subject == "credkeep - Reset your password"
    assert "http://localhost:3000/reset-password?token=tok456" in body
    assert "1 hour" in body


@pytest.mark.parametrize(
    "minutes,text",
    [(60, "1 hour"), (1440, "24 hours"), (30, "30 minutes"), (1, "1 minute"), (90, "90 minutes")],
)
def test_lifetime_wording(minutes, text):
    assert _lifetime(minutes) == text


def test_reset_email_reflects_configured_lifetime():
    _, body = password_reset_email(
        "tok", app_name="credkeep", frontend_url="http://localhost:3000", valid_minutes=30
    )
    assert "expire in 30 minutes" in body
