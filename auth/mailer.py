"""
auth/mailer.py -- Outbound transactional email (password reset links).

SMTP via smtplib. When SMTP_HOST is not configured (local dev, tests) the
message is logged instead of sent. Send failures are logged and reported as
False; they never propagate into the request that triggered them.

Mail is always sent after the related token was committed, never while a
transaction or lock is held.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("sessionkeeper.auth.mailer")


def _redact(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer:
    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "noreply@localhost",
        base_url: str = "http://localhost:3000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> Mailer:
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.smtp_from,
            base_url=settings.web_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host)

    def send_password_reset(self, to_email: str, display_name: str, token: str, expires_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        body = (
            f"Hello {display_name},\n\n"
            "We received a request to reset the password for your account.\n"
            f"Open this link to choose a new password (valid for {expires_minutes} minutes):\n\n"
            f"{reset_url}\n\n"
            "If you did not ask for this, you can ignore this message.\n"
        )
        return self._send(to_email, "Password reset", body)

    def _send(self, to_email: str, subject: str, body: str) -> bool:
        if not self.is_configured:
            # Dev mode: log instead of sending. The body holds a live token, so only the subject is logged.
            logger.info("Email not sent (SMTP not configured): to=%s subject=%r", _redact(to_email), subject)
            return True

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as smtp:
                if self.smtp_use_tls:
                    smtp.starttls()
                if self.smtp_user:
                    smtp.login(self.smtp_user, self.smtp_password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("Email send failed: to=%s error=%s", _redact(to_email), exc)
            return False
        logger.info("Email sent: to=%s subject=%r", _redact(to_email), subject)
        return True
