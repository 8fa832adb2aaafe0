from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authguard.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """SMTP delivery for MFA codes and password-reset links.

    When no SMTP host is configured the message is logged instead of sent,
    which keeps development and test setups free of mail servers.
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
        from_name: str = "authguard",
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

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _connect(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
            try:
                server.starttls(context=context)
            except Exception:
                server.close()
                raise
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        return server

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send a plain-text email via SMTP.

        Returns True if sent (or logged in dev mode), False otherwise.
        """
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))

        try:
            with self._connect(ssl.create_default_context()) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=recipient, error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_mfa_code(self, to_email: str, code: str, ttl_seconds: int) -> bool:
        minutes = max(1, ttl_seconds // 60)
        text_body = (
            f"Your sign-in verification code is {code}.\n\n"
            f"It expires in {minutes} minute(s). If you did not try to sign in, "
            "change your password.\n"
        )
        return self._send_email(to_email, "Your verification code", text_body)

    def send_password_reset(self, to_email: str, reset_url: str, ttl_minutes: int) -> bool:
        text_body = (
            "We received a request to reset your password. Visit the link below "
            f"to choose a new one:\n\n{reset_url}\n\n"
            f"This link expires in {ttl_minutes} minutes. If you didn't request "
            "this, you can ignore this email.\n"
        )
        return self._send_email(to_email, "Reset your password", text_body)
