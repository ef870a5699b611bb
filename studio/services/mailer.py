# studio/services/mailer.py
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional, Tuple

from ..settings.config import settings

logger = logging.getLogger(__name__)

SMTP_TIMEOUT = 30


def sender_headers(reply_to: Optional[str] = None) -> Tuple[str, Optional[str]]:
    """``(From, Reply-To)`` for studio mail.

    A configured ``SMTP_FROM`` that differs from the login account moves to Reply-To,
    and the login account signs the message.
    """
    login = (settings.SMTP_USERNAME or "").strip()
    studio_addr = (settings.SMTP_FROM or "").strip() or login
    if login and studio_addr.lower() != login.lower():
        return login, reply_to or studio_addr
    return studio_addr, reply_to


def build_message(
    to_email: str,
    subject: str,
    text_body: str,
    html_body: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> EmailMessage:
    sender, reply = sender_headers(reply_to)
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to_email
    msg["Subject"] = subject
    if reply:
        msg["Reply-To"] = reply
    msg.set_content(text_body or "")
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg


def _connect() -> smtplib.SMTP:
    host, port = settings.SMTP_HOST, int(settings.SMTP_PORT or 587)
    context = ssl.create_default_context()
    if settings.SMTP_USE_SSL:
        conn = smtplib.SMTP_SSL(host, port, context=context, timeout=SMTP_TIMEOUT)
    else:
        conn = smtplib.SMTP(host, port, timeout=SMTP_TIMEOUT)
    try:
        if settings.SMTP_USE_TLS and not settings.SMTP_USE_SSL:
            conn.starttls(context=context)
        if settings.SMTP_USERNAME:
            conn.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD or "")
    except smtplib.SMTPException:
        conn.close()
        raise
    return conn


def send_email(
    to_email: str,
    subject: str,
    text_body: str,
    html_body: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> bool:
    """Deliver one notification; False when the SMTP server refuses it.

    The ``dummy`` transport writes the text body to the log instead.
    """
    if (settings.EMAIL_TRANSPORT or "smtp").lower() == "dummy":
        logger.info("dummy email to=%s subject=%r\n%s", to_email, subject, text_body)
        return True

    msg = build_message(to_email, subject, text_body, html_body, reply_to)
    try:
        with _connect() as conn:
            conn.send_message(msg)
    except smtplib.SMTPException as exc:
        logger.error("could not mail %r to %s: %s", subject, to_email, exc)
        return False
    return True
