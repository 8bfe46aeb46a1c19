"""Mail values and forwarded-message composition."""

from mailrelay.mail.compose import compose_forward, html_to_text
from mailrelay.mail.models import Attachment, Message

__all__ = ["Attachment", "Message", "compose_forward", "html_to_text"]
