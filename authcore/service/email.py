from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Optional

from authcore.logging import get_logger

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
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {paragraphs}
        <div class="footer"><p>{sender}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional account notifications over SMTP.

    When SMTP is not configured the message is logged instead of sent.
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
        from_name: str = "AuthCore",
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

    def _render(self, title: str, lines: Iterable[str]) -> tuple[str, str]:
        lines = list(lines)
        html_body = _HTML_TEMPLATE.format(
            title=html.escape(title),
            paragraphs="\n        ".join(f"<p>{html.escape(line)}</p>" for line in lines),
            sender=html.escape(self.from_name),
        )
        text_body = "\n\n".join([title, *lines, f"---\n{self.from_name}"]) + "\n"
        return html_body, text_body

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message; returns False instead of raising on SMTP failures."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
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
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=self._redact_email(to_email), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, code: str, *, ttl_minutes: int) -> bool:
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Enter this code to confirm your email address:",
                code,
                f"The code expires in {ttl_minutes} minutes.",
            ],
        )
        return self._send_email(to_email, "Verify your email address", html_body, text_body)

    def send_login_alert(
        self, to_email: str, *, device_type: Optional[str], ip_address: Optional[str], flags: list
    ) -> bool:
        html_body, text_body = self._render(
            "New sign-in to your account",
            [
                f"We noticed a sign-in from a {device_type or 'unknown'} device"
                f" at {ip_address or 'an unknown address'}.",
                "Unusual activity: " + (", ".join(flags) if flags else "none"),
                "If this wasn't you, sign out of all sessions and change your password.",
            ],
        )
        return self._send_email(to_email, "New sign-in alert", html_body, text_body)

    def send_second_factor_changed(self, to_email: str, *, enabled: bool) -> bool:
        state = "enabled" if enabled else "disabled"
        html_body, text_body = self._render(
            f"Two-factor authentication {state}",
            [
                f"Two-factor authentication has been {state} on your account.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return self._send_email(to_email, f"Two-factor authentication {state}", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password for your account was just changed and other sessions were signed out.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)
