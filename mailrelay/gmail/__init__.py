"""Gmail API integration — OAuth/service-account auth, client, retry."""

from mailrelay.gmail.auth import GmailAuth
from mailrelay.gmail.client import GmailClient, GmailService
from mailrelay.gmail.retry import execute_with_retry, is_rate_limit_error

__all__ = [
    "GmailAuth",
    "GmailClient",
    "GmailService",
    "execute_with_retry",
    "is_rate_limit_error",
]
