"""Best-effort notification delivery.

Nothing in here raises to the caller: a failed or slow delivery is logged and
counted as undelivered, and the triggering write stands.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from html import escape
from typing import Iterable, Tuple

from .config import NOTIFY_TIMEOUT_SECONDS
from .email import send_email, format_sender_name

logger = logging.getLogger(__name__)

_CARD_STYLE = (
    "max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; "
    "padding: 24px; box-shadow: 0 10px 25px rgba(15,23,42,0.08);"
)
_BODY_STYLE = "font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;"


@dataclass
class Notification:
    recipient: str
    kind: str  # signature_request|commission_paid
    data: dict = field(default_factory=dict)


def _wrap_html(inner: str) -> str:
    return f"""
<html>
  <body style="{_BODY_STYLE}">
    <div style="{_CARD_STYLE}">
{inner}
    </div>
  </body>
</html>
"""


def _render_signature_request(data: dict) -> Tuple[str, str, str]:
    title = data.get("document_title") or "Document"
    sender = data.get("sender_name") or "Your contact"
    link = data["sign_url"]
    subject = f"Signature Request: {title}"
    text_body = f"""{sender} has requested your signature on “{title}”.

Open document: {link}
"""
    link_html = escape(link)
    html_body = _wrap_html(f"""      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">Signature requested</h2>
      <p style="font-size: 14px; color: #1e293b; line-height: 1.5;">
        <strong>{escape(sender)}</strong> has requested your signature on <strong>{escape(title)}</strong>.
      </p>
      <div style="margin: 24px 0;">
        <a href="{link_html}" style="display: inline-block; background: #2563eb; color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none; font-weight: 600;">
          Sign Document
        </a>
      </div>
      <p style="font-size: 12px; color: #64748b;">If the button doesn&apos;t work, copy this link into your browser:<br /><a href="{link_html}">{link_html}</a></p>""")
    return subject, text_body, html_body


def _render_commission_paid(data: dict) -> Tuple[str, str, str]:
    amount = float(data.get("amount") or 0)
    lead_name = data.get("lead_name") or "your referral"
    subject = f"Commission Earned: ${amount:,.2f}"
    text_body = f"Congratulations! You've earned a commission of ${amount:,.2f} for the lead “{lead_name}”."
    html_body = _wrap_html(f"""      <h2 style="margin-top: 0; font-size: 20px; color: #15803d;">Congratulations!</h2>
      <p style="font-size: 14px; color: #1e293b;">You've earned a commission for your referral:</p>
      <p style="font-size: 13px; color: #475569; background: #f8fafc; padding: 12px 16px; border-radius: 8px;">
        Lead: {escape(lead_name)}<br />
        <strong style="font-size: 20px; color: #15803d;">${amount:,.2f}</strong>
      </p>
      <p style="font-size: 13px; color: #475569;">Thank you for your continued partnership!</p>""")
    return subject, text_body, html_body


_RENDERERS = {
    "signature_request": _render_signature_request,
    "commission_paid": _render_commission_paid,
}


def notify(recipient: str, kind: str, data: dict):
    renderer = _RENDERERS.get(kind)
    if renderer is None:
        raise ValueError(f"unknown notification kind: {kind}")
    subject, text_body, html_body = renderer(data)
    send_email(
        recipient,
        subject,
        text_body,
        html_body=html_body,
        sender_name=format_sender_name(data.get("sender_name")),
        reply_to=data.get("reply_to"),
    )


def dispatch_all(jobs: Iterable[Notification], timeout: float | None = None) -> int:
    """Deliver notifications concurrently; return how many went out.

    Waits at most ``timeout`` seconds for the whole batch. Jobs still running
    after that are abandoned and logged as timed out.
    """
    jobs = list(jobs)
    if not jobs:
        return 0
    timeout = NOTIFY_TIMEOUT_SECONDS if timeout is None else timeout
    executor = ThreadPoolExecutor(max_workers=min(8, len(jobs)), thread_name_prefix="notify")
    try:
        futures = {executor.submit(notify, job.recipient, job.kind, job.data): job for job in jobs}
        done, not_done = wait(futures, timeout=timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    delivered = 0
    for future in done:
        job = futures[future]
        exc = future.exception()
        if exc is None:
            delivered += 1
        else:
            logger.warning("Notification %s to %s failed: %s", job.kind, job.recipient, exc)
    for future in not_done:
        job = futures[future]
        logger.warning("Notification %s to %s timed out after %ss", job.kind, job.recipient, timeout)
    return delivered
