"""
auth/mailer.py -- Outbound email via aiosmtplib.

Mailer.send() is scheduled as a FastAPI background task, so delivery happens
after the HTTP response is sent. It returns True on success and False on any
failure; failures are logged, never raised. There is no retry and no delivery
confirmation.

When SMTP_HOST is empty the mailer is disabled: messages are dropped with a
warning so local development works without a mail server.

Message bodies for each flow are built by the *_message() helpers below so
the credential service never formats HTML itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from email.message import EmailMessage
from html import escape

import aiosmtplib

from core.config import Settings, get_settings

logger = logging.getLogger("credgate.mailer")


@dataclass(frozen=True)
class OutgoingMail:
    to: str
    subject: str
    text: str
    html: str


class Mailer:
    """SMTP transport. One instance per process, created in the lifespan."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    @property
    def is_configured(self) -> bool:
        return bool(self._settings.smtp_host)

    async def send(self, mail: OutgoingMail) -> bool:
        """Deliver one message. Returns True on success, False on failure."""
        s = self._settings
        if not self.is_configured:
            logger.warning("SMTP not configured -- dropping mail '%s' to %s", mail.subject, mail.to)
            return False

        msg = EmailMessage()
        msg["From"] = f"{s.smtp_from_name} <{s.smtp_from_email or s.smtp_username}>"
        msg["To"] = mail.to
        msg["Subject"] = mail.subject
        msg.set_content(mail.text)
        msg.add_alternative(mail.html, subtype="html")

        try:
            await aiosmtplib.send(
                msg,
                hostname=s.smtp_host,
                port=s.smtp_port,
                username=s.smtp_username or None,
                password=s.smtp_password or None,
                start_tls=s.smtp_start_tls,
                timeout=15,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error("SMTP delivery failed (%s -> %s): %s", s.smtp_host, mail.to, exc)
            return False
        logger.info("Mail '%s' delivered to %s", mail.subject, mail.to)
        return True


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------


def verification_message(to: str, fullname: str, otp: int, link: str) -> OutgoingMail:
    return OutgoingMail(
        to=to,
        subject="Verify your email",
        text=f"Welcome {fullname}! Your verification code is {otp}. Verify at {link}",
        html=(
            f"<b>Please verify your email using the code {otp} "
            f'by following this link: <a href="{escape(link, quote=True)}">Verify Email</a></b>'
        ),
    )


def login_code_message(to: str, fullname: str, code: int, minutes: int) -> OutgoingMail:
    return OutgoingMail(
        to=to,
        subject="OTP for login",
        text=f"Hello {fullname}, your login code is {code}. It expires in {minutes} minutes.",
        html=f"Your login code is <b>{code}</b>. It expires in {minutes} minutes.",
    )


def reset_message(to: str, fullname: str, link: str) -> OutgoingMail:
    return OutgoingMail(
        to=to,
        subject="Reset Password",
        text=f"Hello {fullname}, reset your password at {link}",
        html=f'<b>Click this link to reset the password: <a href="{escape(link, quote=True)}">Reset Password</a></b>',
    )
