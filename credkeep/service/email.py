from __future__ import annotations

import smtplib
import ssl
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Optional, Protocol

from credkeep.logging import get_logger, redact_email

logger = get_logger(__name__)

# most specific first; the first isinstance match names the log event
_DELIVERY_FAILURES = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (ssl.SSLError, "email_ssl_error"),
    (OSError, "email_connect_failed"),
)


class NotificationSink(Protocol):
    def send(self, to_email: str, subject: str, body: str) -> bool: ...


class EmailService:
    """Plain-text transactional mail over SMTP.

    Delivery is best-effort: ``send`` never raises, it logs and returns
    False. When SMTP is not configured the message is logged instead of
    sent, which keeps local development usable.
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
        from_name: str = "credkeep",
        timeout: float = 10.0,
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

    def _compose(self, to_email: str, subject: str, body: str) -> MIMEText:
        message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = formataddr((self.from_name, self.from_email))
        message["To"] = to_email
        return message

    def _connect(self, context: ssl.SSLContext) -> smtplib.SMTP:
        """STARTTLS on the submission port, or implicit TLS when ``smtp_use_tls`` is off."""
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
            try:
                server.starttls(context=context)
            except BaseException:
                server.close()
                raise
            return server
        return smtplib.SMTP_SSL(
            self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
        )

    def send(self, to_email: str, subject: str, body: str) -> bool:
        """Send a plain-text message. Returns True if handed to the SMTP server."""
        if not self.is_configured:
            # dev mode: the only place the link shows up
            logger.info(
                "email_dev_mode",
                recipient=redact_email(to_email),
                subject=subject,
                body_preview=body[:200],
            )
            return True

        message = self._compose(to_email, subject, body)
        try:
            with self._connect(ssl.create_default_context()) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, message.as_string())
        except OSError as exc:
            # smtplib and ssl errors are OSError subclasses
            event = next(name for kind, name in _DELIVERY_FAILURES if isinstance(exc, kind))
            logger.error(
                event,
                recipient=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                smtp_code=getattr(exc, "smtp_code", None),
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=redact_email(to_email), subject=subject)
        return True


def _lifetime(minutes: int) -> str:
    """60 -> '1 hour', 1440 -> '24 hours', 30 -> '30 minutes'."""
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


def verification_email(
    token: str, *, app_name: str, frontend_url: str, valid_minutes: int = 24 * 60
) -> tuple[str, str]:
    """Subject and body for the address-confirmation link."""
    verify_url = f"{frontend_url.rstrip('/')}/verify-email?token={token}"
    subject = f"{app_name} - Verify your email address"
    body = (
        "Hi,\n\n"
        "Please verify your email address by clicking the link below:\n\n"
        f"{verify_url}\n\n"
        f"This link will expire in {_lifetime(valid_minutes)}.\n\n"
        "If you didn't create an account, you can ignore this email.\n\n"
        f"Thanks,\n{app_name}"
    )
    return subject, body


def password_reset_email(
    token: str, *, app_name: str, frontend_url: str, valid_minutes: int = 60
) -> tuple[str, str]:
    reset_url = f"{frontend_url.rstrip('/')}/reset-password?token={token}"
    subject = f"{app_name} - Reset your password"
    body = (
        "Hi,\n\n"
        "You requested to reset your password. Click the link below:\n\n"
        f"{reset_url}\n\n"
        f"This link will expire in {_lifetime(valid_minutes)}.\n\n"
        "If you didn't request this, you can ignore this email.\n\n"
        f"Thanks,\n{app_name}"
    )
    return subject, body
