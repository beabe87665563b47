import logging
import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from html import escape
from typing import Protocol

logger = logging.getLogger(__name__)

PLATFORM_NAME = os.getenv("PLATFORM_NAME", "Campus Marketplace")


class Mailer(Protocol):
    def send(self, to: str, subject: str, html_body: str) -> bool: ...


@dataclass
class SmtpMailer:
    host: str | None
    port: int
    user: str | None
    password: str | None
    sender: str
    use_tls: bool = True

    @classmethod
    def from_env(cls) -> "SmtpMailer":
        user = os.getenv("SMTP_USER")
        return cls(
            host=os.getenv("SMTP_HOST"),
            port=int(os.getenv("SMTP_PORT", "587")),
            user=user,
            password=os.getenv("SMTP_PASSWORD"),
            sender=os.getenv("SMTP_FROM", user or ""),
            use_tls=os.getenv("SMTP_USE_TLS", "true").lower() == "true",
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password and self.sender)

    def send(self, to: str, subject: str, html_body: str) -> bool:
        if not self.configured:
            logger.warning("smtp_not_configured subject=%r to=%s", subject, to)
            return False

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(html_body, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            if self.use_tls:
                server.starttls()
            server.login(self.user, self.password)
            server.send_message(msg)

        logger.info("mail_sent subject=%r to=%s", subject, to)
        return True


def get_mailer() -> Mailer:
    return SmtpMailer.from_env()


def _layout(heading: str, paragraphs: list[str]) -> str:
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        f"<h2>{heading}</h2>{body}"
        "<p style=\"font-size: 12px; color: #666;\">This is an automated message. Please do not reply.</p>"
        "</body></html>"
    )


def approval_email(user_name: str, approval_type: str) -> tuple[str, str]:
    subject = f"Account {approval_type} - {PLATFORM_NAME}"
    html_body = _layout(
        f"Hello {escape(user_name)},",
        [
            f"Your account status has been updated: <strong>{escape(approval_type)}</strong>.",
            "You can now sign in and use the features that come with this approval.",
        ],
    )
    return subject, html_body


def interest_email(seller_name: str, buyer_name: str, listing_title: str, listing_price) -> tuple[str, str]:
    subject = f"Someone is Interested in Your Listing: {listing_title}"
    html_body = _layout(
        f"Hello {escape(seller_name)},",
        [
            f"{escape(buyer_name)} is interested in your listing "
            f"<strong>{escape(listing_title)}</strong> ({escape(str(listing_price))}).",
            "To share contact details with interested buyers, please contact the administrator "
            "to enable contact visibility on your account.",
        ],
    )
    return subject, html_body


def password_changed_email(user_name: str, changed_at: str) -> tuple[str, str]:
    subject = f"Password Changed Successfully - {PLATFORM_NAME}"
    html_body = _layout(
        f"Hello {escape(user_name)},",
        [
            f"Your password was changed at {escape(changed_at)} (UTC).",
            "If you did not make this change, contact the administrator immediately.",
        ],
    )
    return subject, html_body


def password_reset_email(user_name: str, code: str, expires_minutes: int) -> tuple[str, str]:
    subject = f"Password Reset Code - {PLATFORM_NAME}"
    html_body = _layout(
        f"Hello {escape(user_name)},",
        [
            f"Your password reset code is <strong style=\"font-size: 20px;\">{escape(code)}</strong>.",
            f"The code expires in {expires_minutes} minutes and can be used once.",
            "If you did not request a password reset, you can ignore this email.",
        ],
    )
    return subject, html_body
