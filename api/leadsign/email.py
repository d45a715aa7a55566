import logging
import os
import smtplib
from email.message import EmailMessage
from email.utils import formataddr

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("EMAIL_PORT", "587"))
SMTP_USER = os.getenv("EMAIL_USER")
SMTP_PASSWORD = os.getenv("EMAIL_PASSWORD")
SMTP_TIMEOUT = float(os.getenv("EMAIL_TIMEOUT", "10"))
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", SMTP_USER or "noreply@example.com")
DEFAULT_SENDER_NAME = (os.getenv("EMAIL_SENDER_NAME") or "").strip() or "Lead Referral Desk"

def format_sender_name(requester_name: str | None = None) -> str:
    """Display name for outgoing mail, e.g. ``Rita via Lead Referral Desk``."""
    requester = (requester_name or "").strip()
    return f"{requester} via {DEFAULT_SENDER_NAME}" if requester else DEFAULT_SENDER_NAME

def build_message(
    to: str,
    subject: str,
    body: str,
    html_body: str | None = None,
    sender_name: str | None = None,
    reply_to: str | None = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = formataddr((sender_name or DEFAULT_SENDER_NAME, DEFAULT_SENDER))
    msg["To"] = to
    msg["Subject"] = subject
    if reply_to:
        msg["Reply-To"] = reply_to
    msg.set_content(body or "")
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg

def send_email(to: str, subject: str, body: str, **options):
    """Send one message; without SMTP credentials it is only logged."""
    msg = build_message(to, subject, body, **options)
    if not (SMTP_USER and SMTP_PASSWORD):
        logger.info("SMTP not configured, message to %s not sent\nFrom: %s\nSubject: %s\n\n%s", to, msg["From"], subject, body)
        return
    with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT) as smtp:
        smtp.starttls()
        smtp.login(SMTP_USER, SMTP_PASSWORD)
        smtp.send_message(msg)
    logger.info("Email sent to %s: %s", to, subject)
