from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from kleroteria.logging import get_logger, redact_address

logger = get_logger(__name__)


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Verification code emails (first send and resend)
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Kleroteria",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_address(to_email),
                subject=subject,
            )
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        context = ssl.create_default_context()
        try:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_address(to_email),
                host=self.smtp_host,
                error=str(e),
                status_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=redact_address(to_email), error=str(e)
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_address(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # covers connection refused and timeouts
            logger.error(
                "email_connection_error",
                to=redact_address(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_address(to_email), subject=subject)
        return True

    def send_verification_code(
        self,
        to_email: str,
        code: str,
        *,
        first_name: str = "",
        resent: bool = False,
        ttl_minutes: int = 10,
    ) -> bool:
        """Send a one-time email verification code."""
        heading = "Email Verification - Resent" if resent else "Email Verification"
        subject = (
            "Email Verification Code - Resent" if resent else "Email Verification Code"
        )
        intro = (
            "You requested a new verification code. Please use the following code to verify your email address:"
            if resent
            else "Please use the following verification code to verify your email address:"
        )
        greeting = f"Hello {first_name}," if first_name else "Hello,"

        html_body = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <h2>{heading}</h2>
    <p>{escape(greeting)}</p>
    <p>{intro}</p>
    <div style="background-color: #f5f5f5; padding: 20px; text-align: center; margin: 20px 0; border-radius: 8px;">
        <h1 style="font-size: 32px; margin: 0; color: #333; letter-spacing: 4px;">{escape(code)}</h1>
    </div>
    <p>This code will expire in {ttl_minutes} minutes.</p>
    <p>If you didn't request this verification code, please ignore this email.</p>
    <p>Best regards,<br>The {escape(self.from_name)} Team</p>
</div>
"""

        text_body = f"""{heading}

{greeting}

{intro}

    {code}

This code will expire in {ttl_minutes} minutes.

If you didn't request this verification code, please ignore this email.

Best regards,
The {self.from_name} Team
"""

        return self._send_email(to_email, subject, html_body, text_body)
