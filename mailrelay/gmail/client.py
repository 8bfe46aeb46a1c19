"""Gmail API client — the few calls the relay needs (list, get raw, send)."""

from __future__ import annotations

import base64
import logging
from datetime import datetime
from email.message import EmailMessage
from typing import Any

from googleapiclient.discovery import build

from mailrelay.config import AppConfig
from mailrelay.gmail.auth import GmailAuth
from mailrelay.gmail.retry import execute_with_retry
from mailrelay.mail.models import Message

logger = logging.getLogger(__name__)


class GmailService:
    """Builds an authenticated client for the relay mailbox."""

    def __init__(self, config: AppConfig):
        self.auth = GmailAuth(config)
        self.config = config

    def client(self) -> GmailClient:
        creds = self.auth.get_credentials()
        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        return GmailClient(service, self.config.auth.user_email or "me")


class GmailClient:
    """Gmail operations for the relay mailbox — all direct API calls."""

    def __init__(self, service: Any, user_email: str):
        self.service = service
        self.user_email = user_email
        self._gmail = service.users()

    def _exec(self, request: Any, operation: str = "API call") -> Any:
        """Execute a Google API request with retry on transient network errors."""
        return execute_with_retry(request, operation=operation)

    def list_message_ids_since(self, since: datetime, page_size: int = 100) -> list[str]:
        """Return ids of messages received after ``since`` (oldest first).

        Errors propagate; the caller decides whether a failed listing is fatal.
        """
        params: dict[str, Any] = {
            "userId": "me",
            "q": f"after:{int(since.timestamp())}",
            "maxResults": page_size,
        }
        ids: list[str] = []
        response = self._exec(self._gmail.messages().list(**params), operation="messages.list")
        ids.extend(item["id"] for item in response.get("messages", []))

        while "nextPageToken" in response:
            params["pageToken"] = response["nextPageToken"]
            response = self._exec(
                self._gmail.messages().list(**params),
                operation="messages.list (page)",
            )
            ids.extend(item["id"] for item in response.get("messages", []))

        # The API lists newest first; process in arrival order.
        ids.reverse()
        return ids

    def get_message(self, message_id: str) -> Message | None:
        """Get a single message in raw format, or None if it cannot be read."""
        try:
            data = self._exec(
                self._gmail.messages().get(userId="me", id=message_id, format="raw"),
                operation=f"messages.get({message_id})",
            )
            return Message.from_api(data)
        except Exception as e:
            logger.warning("Failed to get message %s: %s", message_id, e)
            return None

    def send(self, message: EmailMessage) -> str:
        """Send a composed message once. Returns the sent message id."""
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode("utf-8")
        result = self._gmail.messages().send(userId="me", body={"raw": raw}).execute()
        return result.get("id", "")
