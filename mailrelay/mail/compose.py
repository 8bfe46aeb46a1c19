"""Forwarded-message composition."""

from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime

from mailrelay.mail.models import Message

FORWARD_MARKER = "---------- Forwarded message ----------"
NO_TEXT_PLACEHOLDER = "[No text content available]"


def html_to_text(markup: str) -> str:
    """Rough HTML to plain text conversion for messages without a text part."""
    text = re.sub(r"(?is)<(script|style)\b.*?</\1>", "", markup)
    text = re.sub(r"(?i)<br\s*/?>", "\n", text)
    text = re.sub(r"(?i)</?(p|div)\b[^>]*>", "\n", text)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text).replace("\u00a0", " ")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _single_line(value: str) -> str:
    return " ".join(value.split())


def _forwarded_body(original: Message, now: datetime) -> str:
    lines = [FORWARD_MARKER, f"From: {original.sender}"]
    if original.to:
        lines.append(f"To: {', '.join(original.to)}")
    if original.cc:
        lines.append(f"Cc: {', '.join(original.cc)}")
    lines.append(f"Date: {original.headers.get('Date') or format_datetime(now)}")
    lines.append(f"Subject: {original.subject}")
    lines.append(f"Message-ID: {original.id}")
    lines.append("")

    if original.body:
        lines.append(original.body)
    elif original.html_body:
        lines.append(html_to_text(original.html_body))
    else:
        lines.append(NO_TEXT_PLACEHOLDER)
    return "\n".join(lines)


def compose_forward(
    original: Message,
    from_address: str,
    target_address: str,
    now: datetime | None = None,
) -> EmailMessage:
    """Build the message sent to ``target_address`` on behalf of ``from_address``.

    The original sender and recipients are kept in ``X-Original-*`` headers
    and repeated in a forwarded-message block above the body. Attachments are
    carried over unchanged.
    """
    now = now or datetime.now(timezone.utc)

    message = EmailMessage()
    if from_address:
        message["From"] = from_address
    message["To"] = target_address
    message["Subject"] = f"Fwd: {_single_line(original.subject)}"
    message["Date"] = format_datetime(now)
    if original.sender:
        message["X-Original-From"] = original.sender
    if original.to:
        message["X-Original-To"] = ", ".join(original.to)
    if original.cc:
        message["X-Original-Cc"] = ", ".join(original.cc)
    message["X-Original-Message-ID"] = original.id
    message["X-Forwarded-At"] = now.isoformat()

    message.set_content(_forwarded_body(original, now))

    for attachment in original.attachments:
        maintype, _, subtype = attachment.mime_type.partition("/")
        message.add_attachment(
            attachment.data,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )
    return message
