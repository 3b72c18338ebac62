from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Iterable, List, Optional, Tuple

from authcore.config import Settings
from authcore.logging import get_logger, redact_email

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        {paragraphs}
        {action}
        <div class="footer">
            <p>{sender}</p>
            {footer_link}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for the auth flows.

    Without an SMTP host the message is logged instead of sent, which is what
    development and tests rely on. Delivery failures are logged and reported
    as ``False``; they never propagate into the calling auth flow.
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
        from_name: str = "Account Security",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        verification_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours
        # (recipient, subject, text body) of messages handled in dev mode
        self.outbox: List[Tuple[str, str, str]] = []

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
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
            verification_ttl_hours=settings.email_verification_ttl_hours,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(
        self,
        heading: str,
        lines: Iterable[str],
        *,
        action_label: Optional[str] = None,
        action_url: Optional[str] = None,
    ) -> Tuple[str, str]:
        lines = list(lines)
        paragraphs = "\n        ".join(f"<p>{escape(line)}</p>" for line in lines)
        action = ""
        footer_link = ""
        if action_url:
            url = escape(action_url, quote=True)
            action = f'<p style="margin: 30px 0;"><a href="{url}" class="button">{escape(action_label or "Open")}</a></p>'
            footer_link = f"<p>If the button doesn't work, copy and paste this URL: {url}</p>"
        html_body = _HTML_TEMPLATE.format(
            heading=escape(heading),
            paragraphs=paragraphs,
            action=action,
            sender=escape(self.from_name),
            footer_link=footer_link,
        )
        text_parts = [heading, ""] + lines
        if action_url:
            text_parts += ["", action_url]
        text_parts += ["", "---", self.from_name]
        return html_body, "\n".join(text_parts) + "\n"

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            self.outbox.append((to_email, subject, text_body))
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
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(getattr(e, "recipients", {}) or {}),
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

    async def _deliver(self, to_email: str, subject: str, bodies: Tuple[str, str]) -> bool:
        html_body, text_body = bodies
        return await asyncio.to_thread(self._send_email, to_email, subject, html_body, text_body)

    async def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        bodies = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one.",
                f"This link expires in {self.reset_ttl_minutes} minutes and can be used once.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_label="Reset Password",
            action_url=reset_url,
        )
        return await self._deliver(to_email, "Reset your password", bodies)

    async def send_sso_only_notice(self, to_email: str, providers: List[str]) -> bool:
        names = ", ".join(p.title() for p in providers) or "your identity provider"
        bodies = self._render(
            "Password reset requested",
            [
                "Someone asked to reset the password for this account, but it has no password.",
                f"You sign in with {names}. Use that provider to access your account.",
                "If you didn't request this, you can safely ignore this email.",
            ],
        )
        return await self._deliver(to_email, "Password reset requested", bodies)

    async def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        bodies = self._render(
            "Verify your email",
            [
                "Please confirm your email address to finish setting up your account.",
                f"This link expires in {self.verification_ttl_hours} hours.",
            ],
            action_label="Verify Email",
            action_url=verify_url,
        )
        return await self._deliver(to_email, "Verify your email address", bodies)

    async def send_mfa_code(self, to_email: str, code: str, *, ttl_minutes: int) -> bool:
        bodies = self._render(
            "Your sign-in code",
            [
                f"Your verification code is {code}.",
                f"It expires in {ttl_minutes} minutes. Never share this code with anyone.",
            ],
        )
        return await self._deliver(to_email, "Your sign-in code", bodies)

    async def send_mfa_setup_confirmation(self, to_email: str) -> bool:
        bodies = self._render(
            "Two-factor authentication enabled",
            [
                "Two-factor authentication has been enabled on your account.",
                "You will now need a code from your authenticator app when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return await self._deliver(to_email, "Two-factor authentication enabled", bodies)

    async def send_suspicious_activity(
        self, to_email: str, *, reasons: List[str], locations: List[str]
    ) -> bool:
        lines = ["We noticed unusual sign-in activity on your account."]
        if "many_locations" in reasons:
            lines.append(f"Sign-in attempts came from {len(locations)} different networks.")
        if "many_failures" in reasons:
            lines.append("There were many failed sign-in attempts.")
        lines.append(
            "If this wasn't you, change your password and review your active sessions."
        )
        bodies = self._render("Unusual sign-in activity", lines)
        return await self._deliver(to_email, "Unusual sign-in activity", bodies)
