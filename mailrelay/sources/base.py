"""Message source contract used by the cycle runner."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from mailrelay.mail.models import Message


class MessageSource(Protocol):
    """Yields messages received since a checkpoint.

    ``name`` keys the stored checkpoint. ``fetch`` raises ``FetchError`` when
    the source cannot be read at all; individual unreadable messages are
    dropped by the implementation.
    """

    name: str

    def fetch(self, since: datetime) -> list[Message]:
        ...

    def close(self) -> None:
        ...
