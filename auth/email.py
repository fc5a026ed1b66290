"""
auth/email.py -- Outbound email for account verification and password reset.

Mailer is the narrow email collaborator used by the auth endpoints:
  send(to, subject, html) -> bool   (async; never raises)

When SMTP is not configured (SMTP_HOST / SMTP_USER / SMTP_PASSWORD unset) the
send is logged and reported as successful so registration and password reset
work in development without a mail server.

Message bodies are Jinja2 templates under auth/templates/ with autoescape on,
so a user-chosen display name cannot inject markup into the email.

Only the raw one-time token ever leaves the process, inside the emailed link.
It is never logged.

Layer rule: no imports from api/, web/, or qa/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from email.message import EmailMessage
from pathlib import Path

import aiosmtplib
from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import Settings, get_settings

logger = logging.getLogger("devsolve.auth.email")

_TEMPLATES_DIR = Path(__file__).parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


class Mailer:
    """SMTP sender driven by Settings.

    Usage:
        mailer = Mailer()
        await mailer.send_verification_email("ada@example.com", "Ada", raw_token)
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    @property
    def configured(self) -> bool:
        return self.settings.email_configured

    async def send(self, to: str, subject: str, html: str) -> bool:
        """Deliver one HTML message. Returns False on SMTP failure, never raises."""
        if not self.configured:
            logger.info("Email not configured; skipping delivery of %r to %s", subject, to)
            return True

        message = EmailMessage()
        message["From"] = f'"{self.settings.mail_from_name}" <{self.settings.smtp_user}>'
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(html, subtype="html")

        # Port 465 is implicit TLS; anything else upgrades with STARTTLS.
        implicit_tls = self.settings.smtp_port == 465
        try:
            await aiosmtplib.send(
                message,
                hostname=self.settings.smtp_host,
                port=self.settings.smtp_port,
                username=self.settings.smtp_user,
                password=self.settings.smtp_password,
                use_tls=implicit_tls,
                start_tls=not implicit_tls,
            )
        except Exception:
            logger.exception("Email delivery to %s failed", to)
            return False
        logger.info("Email sent to %s", to)
        return True

    # ------------------------------------------------------------------
    # Account emails
    # ------------------------------------------------------------------

    def _link(self, path: str, raw_token: str) -> str:
        return f"{self.settings.app_url.rstrip('/')}{path}?token={raw_token}"

    async def send_verification_email(self, to: str, name: str, raw_token: str) -> bool:
        html = _env.get_template("verify_email.html").render(
            name=name,
            url=self._link("/verify-email", raw_token),
            ttl_hours=self.settings.verification_token_ttl_hours,
        )
        return await self.send(to, "Verify your DevSolve account", html)

    async def send_password_reset_email(self, to: str, name: str, raw_token: str) -> bool:
        html = _env.get_template("reset_password.html").render(
            name=name,
            url=self._link("/reset-password", raw_token),
            ttl_minutes=self.settings.reset_token_ttl_minutes,
        )
        return await self.send(to, "Reset your DevSolve password", html)
