"""Magic-link email delivery."""

import smtplib
import time
from unittest.mock import MagicMock, patch

from authera.service.email import EmailService
from helpers import register_and_enroll


def _configured(**overrides) -> EmailService:
    params = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer@example.com",
        smtp_password="hunter2",
        from_email="no-reply@example.com",
    )
    params.update(overrides)
    return EmailService(**params)


def test_unconfigured_service_logs_instead_of_sending():
    service = EmailService()

    with patch("authera.service.email.smtplib.SMTP") as smtp:
        assert service.send_magic_link("ada@example.com", "http://backend/link") is True

    smtp.assert_not_called()
    assert not service.is_configured


def test_starttls_delivery():
    service = _configured()
    server = MagicMock()

    with patch("authera.service.email.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value = server
        sent = service.send_magic_link("ada@example.com", "http://backend/verify?token=a&b", expires_in_minutes=5)

    assert sent is True
    smtp.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer@example.com", "hunter2")
    from_addr, to_addr, message = server.sendmail.call_args.args
    assert from_addr == "no-reply@example.com"
    assert to_addr == "ada@example.com"
    assert "Subject: Your Login Link" in message


def test_implicit_ssl_delivery():
    service = _configured(smtp_port=465, smtp_use_tls=False)
    server = MagicMock()

    with patch("authera.service.email.smtplib.SMTP_SSL") as smtp_ssl:
        smtp_ssl.return_value.__enter__.return_value = server
        assert service.send_magic_link("ada@example.com", "http://backend/link") is True

    server.starttls.assert_not_called()
    server.sendmail.assert_called_once()


def test_smtp_failure_returns_false():
    service = _configured()

    with patch("authera.service.email.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value.sendmail.side_effect = smtplib.SMTPException("boom")
        assert service.send_magic_link("ada@example.com", "http://backend/link") is False


def test_connection_failure_returns_false():
    service = _configured()

    with patch("authera.service.email.smtplib.SMTP", side_effect=ConnectionRefusedError("refused")):
        assert service.send_magic_link("ada@example.com", "http://backend/link") is False


def test_slow_delivery_fails_login(client, runtime):
    register_and_enroll(client, runtime)
    runtime.auth.settings = runtime.settings.model_copy(update={"email_send_timeout_seconds": 0.05})

    def _slow_send(*args, **kwargs):
        time.sleep(0.3)
        return True

    runtime.email.send_magic_link = _slow_send

    response = client.post("/api/auth/login", json={"email": "ada@example.com"})

    assert response.status_code == 500
    assert response.json()["message"] == "Failed to send login link. Please try again later."
