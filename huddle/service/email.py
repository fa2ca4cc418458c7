from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from huddle.logging import get_logger, mask_email

logger = get_logger(__name__)

_HTML_SHELL = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #2e3338;">
  <div style="max-width: 480px; margin: 0 auto; padding: 24px;">
    <h2 style="color: #5865f2;">{heading}</h2>
    <p>{intro}</p>
    {action}
    <p style="font-size: 12px; color: #747f8d;">{footer}</p>
  </div>
</body>
</html>
"""

_BUTTON = (
    '<p><a href="{url}" style="background: #5865f2; color: #fff; padding: 10px 18px; '
    'border-radius: 4px; text-decoration: none;">{label}</a></p>'
)


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host or sender is configured the message is logged instead
    of sent, which is how local development and tests run.
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
        from_name: str = "Huddle",
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

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP; returns False instead of raising on failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=mask_email(to_email),
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

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
                recipient=mask_email(to_email),
                host=self.smtp_host,
                smtp_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=mask_email(to_email),
                refused=len(e.recipients),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                recipient=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=mask_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body = _HTML_SHELL.format(
            heading="Verify your email",
            intro="Thanks for signing up for Huddle. Confirm this address to finish setting up your account.",
            action=_BUTTON.format(url=verify_url, label="Verify email"),
            footer="This link expires in 24 hours. If you did not create an account, ignore this message.",
        )
        text_body = (
            "Thanks for signing up for Huddle.\n\n"
            f"Verify your email: {verify_url}\n\n"
            "This link expires in 24 hours."
        )
        return self._send_email(to_email, "Verify your Huddle email", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body = _HTML_SHELL.format(
            heading="Reset your password",
            intro="Someone asked to reset the password on your Huddle account.",
            action=_BUTTON.format(url=reset_url, label="Choose a new password"),
            footer="This link expires in 1 hour. If it was not you, your password is unchanged.",
        )
        text_body = (
            "Someone asked to reset the password on your Huddle account.\n\n"
            f"Choose a new password: {reset_url}\n\n"
            "This link expires in 1 hour."
        )
        return self._send_email(to_email, "Reset your Huddle password", html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> bool:
        html_body = _HTML_SHELL.format(
            heading="Two-factor authentication is on",
            intro="An authenticator app was just linked to your Huddle account.",
            action="<p>Keep your backup codes somewhere safe.</p>",
            footer="If you did not do this, reset your password right away.",
        )
        text_body = (
            "An authenticator app was just linked to your Huddle account.\n"
            "If you did not do this, reset your password right away."
        )
        return self._send_email(
            to_email, "Two-factor authentication enabled", html_body, text_body
        )
