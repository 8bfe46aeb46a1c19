"""Message sources — Gmail API or IMAP, chosen by configuration."""

from __future__ import annotations

from mailrelay.config import AppConfig, SourceKind
from mailrelay.gmail.client import GmailService
from mailrelay.sources.base import MessageSource
from mailrelay.sources.gmail import GmailSource
from mailrelay.sources.imap import ImapSource


def build_source(config: AppConfig, gmail_service: GmailService | None = None) -> MessageSource:
    """Create the message source selected by ``config.source.kind``."""
    if config.source.kind == SourceKind.IMAP:
        return ImapSource(config.source)
    service = gmail_service or GmailService(config)
    return GmailSource(service.client(), page_size=config.source.max_results)


__all__ = ["GmailSource", "ImapSource", "MessageSource", "build_source"]
