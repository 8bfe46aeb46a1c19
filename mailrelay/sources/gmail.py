"""Gmail API message source."""

from __future__ import annotations

import logging
import threading
from datetime import datetime

from mailrelay.errors import FetchError
from mailrelay.gmail.client import GmailClient
from mailrelay.mail.models import Message

logger = logging.getLogger(__name__)


class GmailSource:
    """Reads new inbox messages through the Gmail API."""

    name = "gmail_api"

    def __init__(self, client: GmailClient, page_size: int = 100):
        self.client = client
        self.page_size = page_size
        # The discovery client (httplib2) is not thread-safe and cycles may overlap.
        self._lock = threading.Lock()

    def fetch(self, since: datetime) -> list[Message]:
        with self._lock:
            try:
                ids = self.client.list_message_ids_since(since, page_size=self.page_size)
            except Exception as e:
                raise FetchError(f"failed to list messages: {e}") from e

            messages = []
            for message_id in ids:
                msg = self.client.get_message(message_id)
                if msg:
                    messages.append(msg)

        dropped = len(ids) - len(messages)
        if dropped:
            # Not retried: the checkpoint moves past them once the batch completes.
            logger.warning(
                "Dropped %d unreadable Gmail message(s) since %s", dropped, since.isoformat()
            )
        logger.debug("Gmail returned %d message(s) since %s", len(messages), since.isoformat())
        return messages

    def close(self) -> None:
        # Nothing to release; HTTP connections are per-request.
        return None
