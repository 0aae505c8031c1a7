from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from hrauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {content}
        <div class="footer">
            <p>{sender}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailSender:
    """Transactional email for OTP codes and password reset notices.

    Sends over SMTP (STARTTLS or implicit TLS). When SMTP is not configured
    the message is logged instead, which is the console driver used in
    development and tests.
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
        from_name: str = "HR Portal",
        otp_ttl_seconds: int = 300,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.otp_ttl_seconds = otp_ttl_seconds

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, content: str) -> str:
        return _HTML_TEMPLATE.format(title=title, content=content, sender=self.from_name)

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
                recipient=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
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

            logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp(self, to_email: str, code: str) -> bool:
        """Send a one-time verification code."""
        minutes = max(1, self.otp_ttl_seconds // 60)
        subject = "Your verification code"
        html_body = self._render(
            "Your verification code",
            f"""<p>Use the code below to continue signing in:</p>
        <p class="code">{code}</p>
        <p>This code expires in {minutes} minutes. Do not share it with anyone.</p>""",
        )
        text_body = f"""Your verification code is: {code}

This code expires in {minutes} minutes. Do not share it with anyone.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, link: str) -> bool:
        """Send password reset email carrying the reset link."""
        subject = "Reset your password"
        html_body = self._render(
            "Reset your password",
            f"""<p>We received a request to reset your password. Click the button below to choose a new password:</p>
        <p style="margin: 30px 0;">
            <a href="{link}" class="button">Reset Password</a>
        </p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p>If the button doesn't work, copy and paste this URL: {link}</p>""",
        )
        text_body = f"""Reset your password

We received a request to reset your password. Visit the link below to choose a new password:

{link}

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset_success(self, to_email: str) -> bool:
        """Tell the account owner their password was changed."""
        subject = "Your password has been reset"
        html_body = self._render(
            "Password reset successful",
            """<p>Your password has been reset successfully.</p>
        <p>If you didn't make this change, please contact support immediately.</p>""",
        )
        text_body = f"""Your password has been reset successfully.

If you didn't make this change, please contact support immediately.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_enabled(self, to_email: str, method: str) -> bool:
        """Send confirmation that two-factor authentication was turned on."""
        subject = "Two-factor authentication enabled"
        html_body = self._render(
            "Two-factor authentication enabled",
            f"""<p>Two-factor authentication is now enabled on your account using <strong>{method}</strong>.</p>
        <p>If you didn't make this change, please contact support immediately.</p>""",
        )
        text_body = f"""Two-factor authentication is now enabled on your account using {method}.

If you didn't make this change, please contact support immediately.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)
