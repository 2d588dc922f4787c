from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from venueauth.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 28px; letter-spacing: 6px; font-weight: 700; background: #f1f5f9; padding: 12px 20px; border-radius: 8px; display: inline-block; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """SMTP delivery of verification, password reset and welcome emails.

    When SMTP is not configured the message is logged instead of sent and
    the call reports success, so local development works without a relay.
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
        from_name: str = "Venue Booking",
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
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message; False on any delivery failure."""
        if not self.is_configured:
            # body is not logged, it carries the code
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _code_email(
        self, to_email: str, subject: str, heading: str, intro: str, code: str, minutes: int
    ) -> bool:
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;"><span class="code">{code}</span></p>
        <p>This code will expire in {minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer"><p>{self.from_name}</p></div>
    </div>
</body>
</html>
"""
        text_body = f"""{heading}

{intro}

    {code}

This code will expire in {minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_verification_code(
        self, to_email: str, name: str, code: str, *, minutes: int = 10
    ) -> bool:
        return self._code_email(
            to_email,
            "Verify your email address",
            f"Hi {name}, verify your email",
            "Enter the following code to verify your email address:",
            code,
            minutes,
        )

    def send_password_reset_code(
        self, to_email: str, name: str, code: str, *, minutes: int = 10
    ) -> bool:
        return self._code_email(
            to_email,
            "Your password reset code",
            f"Hi {name}, reset your password",
            "We received a request to reset your password. Use this code to continue:",
            code,
            minutes,
        )

    def send_welcome(self, to_email: str, name: str) -> bool:
        subject = f"Welcome to {self.from_name}"
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Welcome, {name}!</h1>
        <p>Your account is verified and ready to use.</p>
        <div class="footer"><p>{self.from_name}</p></div>
    </div>
</body>
</html>
"""
        text_body = f"Welcome, {name}!\n\nYour account is verified and ready to use.\n\n---\n{self.from_name}\n"
        return self._send_email(to_email, subject, html_body, text_body)
