from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from murmur.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ display: inline-block; background: #f1f5f9; padding: 12px 24px; border-radius: 8px; font-size: 24px; letter-spacing: 6px; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
"""


class EmailService:
    """Email service for transactional one-time codes.

    Sends over SMTP with STARTTLS or implicit SSL. When SMTP is not configured
    the message is logged instead and reported as delivered (dev mode).
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
        from_name: str = "Murmur",
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
        """Send an email via SMTP.

        Returns True if sent (or logged in dev mode), False otherwise.
        """
        if not self.is_configured:
            # Body is not logged; it carries a one-time code
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
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
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
        except OSError as e:
            # Connection refused, DNS failure and socket timeouts
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _code_email(self, heading: str, intro: str, code: str, footer_note: str) -> tuple[str, str]:
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE.format()}</style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;"><span class="code">{code}</span></p>
        <p>{footer_note}</p>
        <div class="footer">
            <p>{self.from_name}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = f"""{heading}

{intro}

    {code}

{footer_note}

---
{self.from_name}
"""
        return html_body, text_body

    def send_confirmation_code(self, to_email: str, code: str) -> bool:
        """Send the signup (or changed-email) confirmation code."""
        html_body, text_body = self._code_email(
            "Confirm your email",
            "Use the code below to confirm your email address.",
            code,
            "If you didn't create an account, you can safely ignore this email.",
        )
        return self._send_email(
            to_email, f"Confirm your {self.from_name} email", html_body, text_body
        )

    def send_password_reset_code(
        self, to_email: str, code: str, *, expires_minutes: int = 10
    ) -> bool:
        """Send a password reset code."""
        html_body, text_body = self._code_email(
            "Reset your password",
            "We received a request to reset your password. Use the code below to choose a new one.",
            code,
            f"This code will expire in {expires_minutes} minutes. "
            "If you didn't request this, you can safely ignore this email.",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )
