"""IMAP message source (imaplib, SSL)."""

from __future__ import annotations

import imaplib
import logging
import re
import threading
from datetime import datetime
from typing import Callable

from mailrelay.config import SourceConfig
from mailrelay.errors import FetchError
from mailrelay.mail.models import Message

logger = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_UIDVALIDITY_RE = re.compile(rb"UIDVALIDITY (\d+)")


def imap_date(value: datetime) -> str:
    """Format a date for IMAP SEARCH SINCE (``01-Jan-2024``), locale independent."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


class ImapSource:
    """Reads messages from one IMAP mailbox.

    SINCE has day granularity, so each fetch may return messages already seen
    in an earlier cycle; the ledger filters those out. Message ids combine the
    mailbox, UIDVALIDITY and UID, which stay stable across sessions.
    """

    name = "imap"

    def __init__(
        self,
        config: SourceConfig,
        connect: Callable[[str, int], imaplib.IMAP4] = imaplib.IMAP4_SSL,
    ):
        self.config = config
        self._connect = connect
        self._conn: imaplib.IMAP4 | None = None
        self._lock = threading.Lock()

    def _connection(self) -> imaplib.IMAP4:
        if self._conn is None:
            conn = self._connect(self.config.imap_host, self.config.imap_port)
            try:
                conn.login(self.config.imap_user, self.config.imap_password)
            except Exception:
                conn.logout()
                raise
            self._conn = conn
            logger.info("Logged in to IMAP %s as %s", self.config.imap_host, self.config.imap_user)
        return self._conn

    def _drop_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug("IMAP logout failed: %s", e)

    def fetch(self, since: datetime) -> list[Message]:
        with self._lock:
            try:
                return self._fetch(since)
            except (imaplib.IMAP4.error, OSError) as e:
                self._drop_connection()
                raise FetchError(f"IMAP fetch failed: {e}") from e

    def _fetch(self, since: datetime) -> list[Message]:
        conn = self._connection()
        mailbox = self.config.imap_mailbox

        typ, _ = conn.select(mailbox, readonly=True)
        if typ != "OK":
            raise imaplib.IMAP4.error(f"cannot select {mailbox}")
        uidvalidity = self._uidvalidity(conn)

        typ, data = conn.uid("SEARCH", None, "SINCE", imap_date(since))
        if typ != "OK":
            raise imaplib.IMAP4.error(f"search failed: {data!r}")
        uids = data[0].split() if data and data[0] else []

        messages = []
        for uid in uids:
            typ, parts = conn.uid("FETCH", uid, "(RFC822)")
            raw = _first_literal(parts) if typ == "OK" else None
            if raw is None:
                logger.warning("Failed to fetch IMAP message uid=%s", uid.decode())
                continue
            message_id = f"{mailbox}:{uidvalidity}:{uid.decode()}"
            messages.append(Message.from_rfc822(message_id, raw))
        return messages

    def _uidvalidity(self, conn: imaplib.IMAP4) -> str:
        typ, data = conn.status(self.config.imap_mailbox, "(UIDVALIDITY)")
        if typ == "OK" and data:
            match = _UIDVALIDITY_RE.search(data[0] or b"")
            if match:
                return match.group(1).decode()
        return "0"

    def close(self) -> None:
        with self._lock:
            self._drop_connection()


def _first_literal(parts: list) -> bytes | None:
    for part in parts or []:
        if isinstance(part, tuple) and len(part) == 2:
            return part[1]
    return None
