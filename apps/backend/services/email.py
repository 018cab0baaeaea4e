"""SMTP email sender."""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from apps.backend.config import get_settings

logger = logging.getLogger(__name__)


def send_email(
    *,
    host: str,
    port: int,
    username: str,
    password: str,
    secure: str,
    from_email: str,
    from_name: str,
    to_email: str,
    subject: str,
    html: str,
    text: str,
) -> tuple[bool, str | None]:
    if not host or not port:
        return False, "missing_smtp"
    if not from_email:
        return False, "missing_from"
    msg = EmailMessage()
    msg["Subject"] = subject or "ChatBot Builder"
    msg["From"] = f"{from_name} <{from_email}>" if from_name else from_email
    msg["To"] = to_email
    if text:
        msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")
    try:
        if secure == "ssl":
            server = smtplib.SMTP_SSL(host, port, timeout=10)
        else:
            server = smtplib.SMTP(host, port, timeout=10)
        try:
            if secure == "tls":
                server.starttls()
            if username:
                server.login(username, password or "")
            server.send_message(msg)
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        return False, str(e)[:200]
    return True, None


def send_with_settings(*, to_email: str, subject: str, html: str, text: str) -> tuple[bool, str | None]:
    s = get_settings()
    return send_email(
        host=s.smtp_host,
        port=s.smtp_port,
        username=s.smtp_user,
        password=s.smtp_password,
        secure=s.smtp_secure,
        from_email=s.smtp_from_email,
        from_name=s.smtp_from_name,
        to_email=to_email,
        subject=subject,
        html=html,
        text=text,
    )


def notify_payment_failed(to_email: str, name: str | None, attempts: int) -> None:
    """Fire-and-forget: a failed send is logged and never reaches the caller."""
    greeting = f"Hi {name}," if name else "Hi,"
    text = (
        f"{greeting}\n\nWe could not process the latest payment for your ChatBot Builder subscription "
        f"(attempt {attempts}). Please update your payment method to keep your chatbots running.\n"
    )
    html = f"<p>{greeting}</p><p>We could not process the latest payment for your subscription (attempt {attempts}). Please update your payment method.</p>"
    ok, err = send_with_settings(to_email=to_email, subject="Payment failed", html=html, text=text)
    if not ok:
        logger.warning("payment_failed_email_not_sent error=%s", err)
