from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Mapping, Optional, Protocol

from notehub.config import Settings
from notehub.logging import get_logger, redact_email

logger = get_logger(__name__)

KIND_VERIFICATION = "verification"
KIND_RESET = "reset"
KIND_WELCOME = "welcome"
EMAIL_KINDS = frozenset({KIND_VERIFICATION, KIND_RESET, KIND_WELCOME})


class EmailSender(Protocol):
    """Outbound email collaborator; returns False when delivery failed."""

    def send(self, to: str, kind: str, payload: Mapping[str, Any]) -> bool: ...


_HTML_SHELL = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: #4f46e5; color: white; padding: 20px; text-align: center; }}
        .content {{ padding: 20px; background: #f9fafb; }}
        .button {{ display: inline-block; background: #4f46e5; color: white; padding: 12px 30px; text-decoration: none; border-radius: 5px; }}
        .footer {{ text-align: center; padding: 20px; color: #6b7280; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>{heading}</h1></div>
        <div class="content">
{body}
        </div>
        <div class="footer"><p>{brand}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP delivery for verification, password reset and welcome emails.

    When SMTP is not configured the message is logged instead of sent and
    delivery is reported as successful, which keeps local development and
    tests free of a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        timeout: int = 30,
        from_email: Optional[str] = None,
        from_name: str = "NoteHub",
        base_url: str = "http://localhost:3000",
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.timeout = timeout
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            timeout=settings.smtp_timeout_seconds,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            verification_ttl_hours=max(1, settings.verification_token_ttl_minutes // 60),
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to: str, kind: str, payload: Mapping[str, Any]) -> bool:
        if kind not in EMAIL_KINDS:
            raise ValueError(f"unknown email kind: {kind}")
        name = str(payload.get("name") or "there")
        if kind == KIND_VERIFICATION:
            subject, html_body, text_body = self._render_verification(name, str(payload["token"]))
        elif kind == KIND_RESET:
            subject, html_body, text_body = self._render_reset(name, str(payload["token"]))
        else:
            subject, html_body, text_body = self._render_welcome(name)
        return self._send_email(to, subject, html_body, text_body)

    def _render_verification(self, name: str, token: str) -> tuple[str, str, str]:
        url = f"{self.base_url}/verify-email/{token}"
        body = (
            f"            <h2>Hi {html.escape(name)},</h2>\n"
            "            <p>Thank you for registering. Please verify your email address to activate your account.</p>\n"
            f'            <p style="text-align: center;"><a href="{url}" class="button">Verify Email</a></p>\n'
            f"            <p>This link will expire in {self.verification_ttl_hours} hours.</p>\n"
            f"            <p>If the button doesn't work, copy and paste this URL: {url}</p>"
        )
        text = (
            f"Hi {name},\n\nThank you for registering. Verify your email address by visiting:\n\n"
            f"{url}\n\nThis link will expire in {self.verification_ttl_hours} hours.\n"
        )
        return "Verify your NoteHub email", self._wrap("Welcome to NoteHub", body), text

    def _render_reset(self, name: str, token: str) -> tuple[str, str, str]:
        url = f"{self.base_url}/reset-password/{token}"
        body = (
            f"            <h2>Hi {html.escape(name)},</h2>\n"
            "            <p>We received a request to reset your password. Click the button below to choose a new one.</p>\n"
            f'            <p style="text-align: center;"><a href="{url}" class="button">Reset Password</a></p>\n'
            f"            <p>This link will expire in {self.reset_ttl_minutes} minutes.</p>\n"
            "            <p>If you didn't request this, you can safely ignore this email.</p>"
        )
        text = (
            f"Hi {name},\n\nWe received a request to reset your password. Visit:\n\n"
            f"{url}\n\nThis link will expire in {self.reset_ttl_minutes} minutes.\n"
            "If you didn't request this, you can safely ignore this email.\n"
        )
        return "Reset your NoteHub password", self._wrap("Password Reset", body), text

    def _render_welcome(self, name: str) -> tuple[str, str, str]:
        url = f"{self.base_url}/login"
        body = (
            f"            <h2>Welcome, {html.escape(name)}!</h2>\n"
            "            <p>Your email is verified and your account is active. You can now share notes, "
            "browse materials by subject and join the Q&amp;A forum.</p>\n"
            f'            <p style="text-align: center;"><a href="{url}" class="button">Log In</a></p>'
        )
        text = (
            f"Welcome, {name}!\n\nYour email is verified and your account is active.\n"
            f"Log in at {url}\n"
        )
        return "Welcome to NoteHub", self._wrap("Account Activated", body), text

    def _wrap(self, heading: str, body: str) -> str:
        return _HTML_SHELL.format(heading=heading, body=body, brand=self.from_name)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except OSError as e:
            # Covers connection refusal, timeouts and TLS failures
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
