from __future__ import annotations

import smtplib
import ssl
from email.mime.text import MIMEText
from email.utils import formataddr, parseaddr
from typing import Optional

from coris.logging import get_logger, redact_email

logger = get_logger(__name__)

DEFAULT_FROM = "CORIS <no-reply@coris.local>"


class EmailService:
    """Transactional email over SMTP.

    When SMTP host or credentials are missing the message is logged instead
    of sent so local development can proceed.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_address: Optional[str] = None,
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 30,
    ) -> None:
        self.smtp_host = (smtp_host or "").strip() or None
        self.smtp_port = smtp_port
        self.smtp_user = (smtp_user or "").strip() or None
        self.smtp_password = (smtp_password or "").strip() or None
        self.smtp_use_tls = smtp_use_tls
        self.from_address = (from_address or "").strip() or DEFAULT_FROM
        self.base_url = (base_url or "http://localhost:5173").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_address=settings.smtp_from,
            base_url=settings.app_public_url,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    def send(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send a plain-text email. Returns True if it was handed to SMTP."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        _, sender = parseaddr(self.from_address)
        msg = MIMEText(text_body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = formataddr(("", to_email))

        try:
            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_email(to_email),
            )
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(sender, [to_email], msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(sender, [to_email], msg.as_string())
            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
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
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def reset_link(self, token: str) -> str:
        return f"{self.base_url}/app/reset-password.html?token={token}"

    def send_password_reset(self, to_email: str, token: str) -> bool:
        subject = "Reset your CORIS password"
        text_body = "\n".join(
            [
                "You requested a password reset for CORIS.",
                "",
                f"Use this link to set a new password (valid for {self.reset_ttl_minutes} minutes):",
                self.reset_link(token),
                "",
                "If you did not request this, you can ignore this email.",
            ]
        )
        return self.send(to_email, subject, text_body)

    def send_due_today(self, to_email: str, *, bill_name: str, due_date: str, amount_due) -> bool:
        subject = "Bill due today"
        text_body = "\n".join(
            [
                "CORIS bill reminder",
                "",
                "Your bill is due today.",
                "",
                f"Bill: {bill_name}",
                f"Due date: {due_date}",
                f"Amount: {amount_due}",
                "",
                "Open CORIS to review your plan.",
            ]
        )
        return self.send(to_email, subject, text_body)


__all__ = ["EmailService", "DEFAULT_FROM"]
