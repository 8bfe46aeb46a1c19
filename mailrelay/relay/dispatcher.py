"""Forward dispatch — bounded retry around a single-attempt message sink."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Awaitable, Callable, Protocol

from mailrelay.errors import ForwardError, SendError
from mailrelay.gmail.client import GmailClient
from mailrelay.gmail.retry import is_rate_limit_error
from mailrelay.mail.compose import compose_forward
from mailrelay.mail.models import Message

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

Sleep = Callable[[float], Awaitable[None]]


class MessageSink(Protocol):
    """Delivers one message once. Raises ``SendError`` on rejection."""

    def send(self, message: Message, target_address: str) -> None:
        ...


class GmailSink:
    """Sends forwards from the relay mailbox through the Gmail API."""

    def __init__(self, client: GmailClient, from_address: str = ""):
        self.client = client
        # Gmail fills in the authenticated address when From is left empty.
        self.from_address = from_address or (client.user_email if client.user_email != "me" else "")
        # One send at a time; the discovery client is not thread-safe.
        self._lock = threading.Lock()

    def send(self, message: Message, target_address: str) -> None:
        forward = compose_forward(message, self.from_address, target_address)
        try:
            with self._lock:
                self.client.send(forward)
        except Exception as e:
            raise SendError(str(e), rate_limited=is_rate_limit_error(e)) from e


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after rate-limited attempt number ``attempt`` (1-based)."""
    return float(attempt * attempt)


class ForwardDispatcher:
    """Forwards a message, retrying only rate-limited sends.

    Non-rate-limit errors fail on the first attempt. Every terminal failure
    is raised as ``ForwardError``; logging the outcome is the caller's job.
    """

    def __init__(
        self,
        sink: MessageSink,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.sink = sink
        self.max_attempts = max_attempts
        self._sleep = sleep

    async def forward(self, message: Message, target_address: str) -> int:
        """Deliver ``message`` to ``target_address``. Returns the attempts used."""
        last_exc: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                await asyncio.to_thread(self.sink.send, message, target_address)
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "Failed to forward %s to %s (attempt %d/%d): %s",
                    message.id,
                    target_address,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                if not (isinstance(exc, SendError) and exc.rate_limited):
                    raise ForwardError(attempt, exc) from exc
                if attempt < self.max_attempts:
                    delay = backoff_delay(attempt)
                    logger.info("Rate limited, waiting %.0fs before retry", delay)
                    await self._sleep(delay)
                continue

            logger.info("Forwarded %s to %s", message.id, target_address)
            return attempt

        assert last_exc is not None
        raise ForwardError(self.max_attempts, last_exc) from last_exc
