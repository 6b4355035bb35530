from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from gatekeep.config import Settings
from gatekeep.logging import get_logger, redact_email

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{heading}</h1>
        {body}
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{from_name}</p>
    </div>
</body>
</html>
"""


def describe_ttl(minutes: int) -> str:
    """Human wording for a token lifetime, e.g. "1 hour" or "5 minutes"."""
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


class EmailService:
    """Transactional mail for the authentication flows.

    Sends reset links, verification links and two-factor codes over SMTP.
    Without an SMTP host and sender address the message is logged instead,
    which is how development and test runs deliver mail.
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
        from_name: str = "gatekeep",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        verification_ttl_minutes: int = 60,
        two_factor_ttl_minutes: int = 5,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_minutes = verification_ttl_minutes
        self.two_factor_ttl_minutes = two_factor_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            reset_ttl_minutes=settings.password_reset_token_ttl_minutes,
            verification_ttl_minutes=settings.verification_token_ttl_minutes,
            two_factor_ttl_minutes=settings.two_factor_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message. Returns False when delivery failed."""
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
            msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=redact_email(to_email), error=str(e)
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _render(self, heading: str, paragraphs: List[str]) -> str:
        body = "\n        ".join(f"<p>{p}</p>" for p in paragraphs)
        return _HTML_TEMPLATE.format(heading=heading, body=body, from_name=self.from_name)

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/auth/new-password?token={token}"
        expiry = f"This link expires in {describe_ttl(self.reset_ttl_minutes)}."
        subject = "Reset your password"
        html_body = self._render(
            "Reset your password",
            [f'Click <a href="{reset_url}">here</a> to reset your password.', expiry],
        )
        text_body = (
            f"Visit the link below to reset your password:\n\n{reset_url}\n\n{expiry}\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_verification_email(self, to_email: str, token: str) -> bool:
        confirm_url = f"{self.base_url}/auth/new-verification?token={token}"
        expiry = f"This link expires in {describe_ttl(self.verification_ttl_minutes)}."
        subject = "Confirm your email"
        html_body = self._render(
            "Confirm your email",
            [f'Click <a href="{confirm_url}">here</a> to confirm your email.', expiry],
        )
        text_body = f"Visit the link below to confirm your email:\n\n{confirm_url}\n\n{expiry}\n"
        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_token_email(self, to_email: str, token: str) -> bool:
        expiry = f"It expires in {describe_ttl(self.two_factor_ttl_minutes)}."
        subject = "Your sign-in code"
        html_body = self._render(
            "Your sign-in code",
            [f"Your two-factor code: <strong>{token}</strong>", expiry],
        )
        text_body = f"Your two-factor code: {token}\n\n{expiry}\n"
        return self._send_email(to_email, subject, html_body, text_body)
