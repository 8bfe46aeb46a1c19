"""Idempotency ledger — which messages have been fully handled.

The durable part is the ``processed_emails`` table: a row is written once a
message's outcome is final and is never changed afterwards. On top of that,
an in-memory claim set keeps two overlapping cycles from both dispatching
the same message before either has written its row. Claims do not survive a
restart; a crash between a successful forward and ``mark_processed`` means
the message is forwarded again on the next cycle.
"""

from __future__ import annotations

import logging
import threading

from mailrelay.db.models import ProcessedRepository

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    def __init__(self, processed: ProcessedRepository):
        self.processed = processed
        self._claims: set[str] = set()
        self._claims_lock = threading.Lock()

    def is_processed(self, message_id: str) -> bool:
        return self.processed.exists(message_id)

    def mark_processed(self, message_id: str) -> None:
        if not self.processed.insert(message_id):
            logger.warning("Message %s was already marked processed", message_id)

    def claim(self, message_id: str) -> bool:
        """Reserve ``message_id`` for this cycle. False if another cycle holds it."""
        with self._claims_lock:
            if message_id in self._claims:
                return False
            self._claims.add(message_id)
            return True

    def release(self, message_id: str) -> None:
        with self._claims_lock:
            self._claims.discard(message_id)

    def claimed(self) -> int:
        with self._claims_lock:
            return len(self._claims)
