"""
notify/email.py -- SMTP delivery of registration emails.

send_verification_email() raises EmailDeliveryError when the mail server
refuses or cannot be reached. The registration flow decides what that means
for the caller; this module only reports it.

Dev mode: when SMTP_HOST or EMAIL_FROM is empty the message is logged (with
the recipient redacted) instead of sent, and delivery counts as successful.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

logger = logging.getLogger("campus.notify.email")


class EmailDeliveryError(Exception):
    """The message could not be handed to the SMTP server."""


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        from_name: str = "Campus Logistics",
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

    def send_verification_email(self, to_email: str, link: str) -> None:
        """Send the 'confirm your email' message containing link."""
        subject = "Verify your email address"
        text_body = (
            "Welcome to Campus Logistics!\n\n"
            "Confirm your email address to finish creating your account:\n"
            f"{link}\n\n"
            "This link expires in 1 hour. If you did not sign up, ignore this email."
        )
        html_body = (
            "<p>Welcome to Campus Logistics!</p>"
            "<p>Confirm your email address to finish creating your account:</p>"
            f'<p><a href="{link}">Verify email</a></p>'
            "<p>This link expires in 1 hour. If you did not sign up, ignore this email.</p>"
        )
        self._send(to_email, subject, html_body, text_body)

    def _send(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        if not self.is_configured:
            logger.info("Email (dev mode, not sent) to=%s subject=%r body=%r", redact_email(to_email), subject, text_body[:200])
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # OSError covers connection refused and socket timeouts
            logger.error(
                "Email delivery failed to=%s host=%s error_type=%s error=%s",
                redact_email(to_email),
                self.smtp_host,
                type(exc).__name__,
                exc,
            )
            raise EmailDeliveryError(str(exc)) from exc

        logger.info("Email sent to=%s subject=%r", redact_email(to_email), subject)
