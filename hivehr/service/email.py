from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from hivehr.config import Settings
from hivehr.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #f5a623; color: #1f2933; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{sender}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Internal SMTP transport for system emails.

    Used for registration welcome mails, password resets, new-account
    notices and operator alerts. Tenant-configured mail servers are not
    involved here. When no SMTP host is configured the message is logged
    instead of sent (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_secure: bool = False,
        from_email: Optional[str] = None,
        from_name: str = "HiveHR",
        timeout: float = 15.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_secure = smtp_secure
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.internal_smtp_host,
            smtp_port=settings.internal_smtp_port,
            smtp_user=settings.internal_smtp_user,
            smtp_password=settings.internal_smtp_password,
            smtp_secure=bool(settings.internal_smtp_secure),
            from_email=settings.internal_from_email,
            from_name=settings.internal_from_name,
            timeout=settings.smtp_timeout_seconds,
        )

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

    def _render(self, title: str, paragraphs: list[str], link: Optional[tuple[str, str]] = None) -> tuple[str, str]:
        body = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        text = "\n\n".join([title, *paragraphs])
        if link:
            label, url = link
            safe_url = html.escape(url, quote=True)
            body += f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{html.escape(label)}</a></p>'
            body += f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
            text += f"\n\n{url}"
        text += f"\n\n---\n{self.from_name}\n"
        return (
            _HTML_TEMPLATE.format(
                title=html.escape(title), body=body, sender=html.escape(self.from_name)
            ),
            text,
        )

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
            # Dev mode: log the email instead of sending
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

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                secure=self.smtp_secure,
                to=self._redact_email(to_email),
            )

            if self.smtp_secure:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
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
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_welcome(
        self, to_email: str, *, admin_name: str, company_name: str, login_url: str
    ) -> bool:
        """Registration confirmation for a new company's first admin."""
        subject = f"Welcome to {self.from_name}, {company_name}"
        html_body, text_body = self._render(
            f"Welcome, {admin_name}",
            [
                f"Your {self.from_name} workspace for {company_name} is ready.",
                "Sign in with the email address and password you registered with.",
            ],
            link=("Sign in", login_url),
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(
        self, to_email: str, reset_url: str, *, company_name: str, ttl_minutes: int = 15
    ) -> bool:
        """Send password reset email with reset link."""
        subject = f"Reset your {company_name} password"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new password.",
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=("Reset Password", reset_url),
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_account_created(
        self,
        to_email: str,
        *,
        name: str,
        company_name: str,
        username: str,
        temporary_password: str,
        login_url: str,
    ) -> bool:
        """Credentials for an account created by an admin or manager."""
        subject = f"Your {company_name} account"
        html_body, text_body = self._render(
            f"Hello {name}",
            [
                f"An account has been created for you at {company_name}.",
                f"Username: {username}",
                f"Temporary password: {temporary_password}",
                "Please change your password after signing in.",
            ],
            link=("Sign in", login_url),
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_admin_alert(self, to_email: str, subject: str, message: str) -> bool:
        html_body, text_body = self._render(subject, [message])
        return self._send_email(to_email, f"[{self.from_name}] {subject}", html_body, text_body)
