"""Mail data models — Message and Attachment as seen by the relay."""

from __future__ import annotations

import base64
import email
import email.policy
from dataclasses import dataclass, field
from email.utils import getaddresses


@dataclass(frozen=True)
class Attachment:
    filename: str
    mime_type: str
    data: bytes = b""


@dataclass(frozen=True)
class Message:
    """An inbound message. ``id`` is the only idempotency key."""

    id: str
    subject: str = ""
    sender: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    body: str = ""
    html_body: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict) -> Message:
        """Parse a Gmail API message resource fetched with ``format=raw``."""
        raw = base64.urlsafe_b64decode(data.get("raw", "").encode("ascii"))
        return cls.from_rfc822(data["id"], raw)

    @classmethod
    def from_rfc822(cls, message_id: str, raw: bytes) -> Message:
        """Build a Message from raw RFC 822 bytes using the stdlib parser."""
        parsed = email.message_from_bytes(raw, policy=email.policy.default)
        headers = {k: str(v) for k, v in parsed.items()}

        body = ""
        html_body = ""
        attachments: list[Attachment] = []
        for part in parsed.walk():
            if part.is_multipart():
                continue
            if part.get_content_disposition() == "attachment" or part.get_filename():
                attachments.append(
                    Attachment(
                        filename=part.get_filename() or "attachment",
                        mime_type=part.get_content_type(),
                        data=part.get_payload(decode=True) or b"",
                    )
                )
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain" and not body:
                body = _decode_text(part)
            elif content_type == "text/html" and not html_body:
                html_body = _decode_text(part)

        return cls(
            id=message_id,
            subject=str(parsed.get("Subject", "")),
            sender=str(parsed.get("From", "")),
            to=_addresses(parsed.get_all("To", [])),
            cc=_addresses(parsed.get_all("Cc", [])),
            body=body,
            html_body=html_body,
            attachments=attachments,
            headers=headers,
        )


def _addresses(values: list) -> list[str]:
    return [addr for _, addr in getaddresses([str(v) for v in values]) if addr]


def _decode_text(part: email.message.Message) -> str:
    payload = part.get_payload(decode=True)
    if payload is None:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")
