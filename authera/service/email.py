from __future__ import annotations

import html
import smtplib
import ssl
from email.message import EmailMessage
from string import Template
from typing import Optional

from authera.logging import get_logger

logger = get_logger(__name__)

MAGIC_LINK_SUBJECT = "Your Login Link"

_MAGIC_LINK_TEXT = Template(
    """Welcome to Authera!

Open the link below to log in:

$link

This link will expire in $minutes minutes. If you didn't request it, ignore this email.
"""
)

_MAGIC_LINK_HTML = Template(
    """<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <h2>Welcome to Authera!</h2>
  <p>Click the link below to log in:</p>
  <p><a href="$link">Log in to Authera</a></p>
  <p>This link will expire in $minutes minutes.</p>
  <p style="color: #7b8794;">If you didn't request this, you can safely ignore this email.</p>
</body>
</html>
"""
)


class EmailService:
    """Sends magic-link emails over SMTP.

    With no ``smtp_host`` configured the service runs in dev mode: the send is
    logged and reported as successful so local logins still work.
    Delivery problems are logged and reported as ``False``; callers decide
    what the user sees.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Authera",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _compose(self, to_email: str, subject: str, text_body: str, html_body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        return message

    def _login_and_send(self, server: smtplib.SMTP, to_email: str, message: EmailMessage) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        server.sendmail(self.from_email, to_email, message.as_string())

    def _deliver(self, to_email: str, message: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                self._login_and_send(server, to_email, message)
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            ) as server:
                self._login_and_send(server, to_email, message)

    def send(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=to_email, subject=subject)
            return True

        message = self._compose(to_email, subject, text_body, html_body)
        try:
            self._deliver(to_email, message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, smtp_code=exc.smtp_code)
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error", to=to_email, error_type=type(exc).__name__, error=str(exc)
            )
            return False
        except OSError as exc:
            # Includes ssl.SSLError, refused connections and socket timeouts
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=to_email, subject=subject)
        return True

    def send_magic_link(self, to_email: str, link: str, *, expires_in_minutes: int = 5) -> bool:
        text_body = _MAGIC_LINK_TEXT.substitute(link=link, minutes=expires_in_minutes)
        html_body = _MAGIC_LINK_HTML.substitute(
            link=html.escape(link, quote=True), minutes=expires_in_minutes
        )
        return self.send(to_email, MAGIC_LINK_SUBJECT, text_body, html_body)

