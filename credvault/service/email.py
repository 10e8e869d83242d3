from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from credvault.logging import get_logger

logger = get_logger(__name__)

_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 560px; margin: 0 auto; padding: 24px;">
    <h2 style="margin-top: 0;">{heading}</h2>
    {body}
    <p style="color: #7b8794; font-size: 12px;">{footer}</p>
  </div>
</body>
</html>
"""

_BUTTON = (
    '<p><a href="{url}" style="display: inline-block; padding: 10px 18px; '
    'background: #2563eb; color: #ffffff; border-radius: 6px; text-decoration: none;">'
    "{label}</a></p>"
)


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Transactional email over SMTP.

    Sends verification, password-reset and welcome messages. When SMTP is not
    configured the message is logged instead and the send counts as delivered.
    Every send returns a bool and never raises.
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
        from_name: str = "CredVault",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _deliver(self, to_email: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(to_email, msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused_count=len(getattr(exc, "recipients", {}) or {}),
            )
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/v1/auth/verify-email?token={quote(token)}"
        subject = f"Verify your {self.from_name} email address"
        html_body = _HTML_LAYOUT.format(
            heading="Confirm your email",
            body=(
                "<p>Thanks for signing up. Confirm this address to finish setting up your account.</p>"
                + _BUTTON.format(url=verify_url, label="Verify email")
                + "<p>The link expires in 24 hours.</p>"
            ),
            footer="If you did not create an account, you can ignore this message.",
        )
        text_body = (
            "Confirm your email address by opening the link below.\n\n"
            f"{verify_url}\n\n"
            "The link expires in 24 hours. If you did not create an account, ignore this message.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={quote(token)}"
        subject = f"Reset your {self.from_name} password"
        html_body = _HTML_LAYOUT.format(
            heading="Password reset requested",
            body=(
                "<p>Someone asked to reset the password for this account.</p>"
                + _BUTTON.format(url=reset_url, label="Choose a new password")
                + "<p>The link expires in 24 hours and can be used once. "
                "Resetting signs out every existing session.</p>"
            ),
            footer="If you did not request this, no action is needed.",
        )
        text_body = (
            "Someone asked to reset the password for this account.\n\n"
            f"{reset_url}\n\n"
            "The link expires in 24 hours and can be used once. "
            "If you did not request this, no action is needed.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str) -> bool:
        subject = f"Welcome to {self.from_name}"
        html_body = _HTML_LAYOUT.format(
            heading="Your email is verified",
            body=(
                "<p>Your account is ready.</p>"
                + _BUTTON.format(url=self.base_url, label="Sign in")
            ),
            footer="You are receiving this because you verified your email address.",
        )
        text_body = f"Your email is verified and your account is ready.\n\n{self.base_url}\n"
        return self._send_email(to_email, subject, html_body, text_body)
