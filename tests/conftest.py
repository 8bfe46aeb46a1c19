"""Shared fixtures — temporary database, fake message sources and sinks."""

from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from mailrelay.config import AppConfig, DatabaseBackend, DatabaseConfig
from mailrelay.db.connection import Database
from mailrelay.errors import FetchError, SendError
from mailrelay.mail.models import Message


@pytest.fixture
def config(tmp_path) -> AppConfig:
    config = AppConfig()
    config.database = DatabaseConfig(
        backend=DatabaseBackend.SQLITE,
        sqlite_path=tmp_path / "test.db",
    )
    return config


@pytest.fixture
def db(config) -> Database:
    """Create a temporary database for testing."""
    database = Database(config)
    database.initialize_schema()
    return database


def make_message(message_id: str, subject: str = "", **kwargs) -> Message:
    kwargs.setdefault("sender", "alice@example.com")
    kwargs.setdefault("to", ["relay@example.com"])
    kwargs.setdefault("body", f"Body of {message_id}")
    return Message(id=message_id, subject=subject, **kwargs)


class FakeSource:
    """In-memory message source; returns the same batch until changed."""

    name = "fake"

    def __init__(self, messages: list[Message] | None = None):
        self.messages = list(messages or [])
        self.fail_with: Exception | None = None
        self.since_calls: list[datetime] = []
        self.closed = False

    def fetch(self, since: datetime) -> list[Message]:
        self.since_calls.append(since)
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.messages)

    def close(self) -> None:
        self.closed = True


class FakeSink:
    """Records sends; ``failures`` maps message id to errors raised in order."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.attempts: dict[str, int] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.gate: threading.Event | None = None
        self._lock = threading.Lock()

    def send(self, message: Message, target_address: str) -> None:
        with self._lock:
            self.attempts[message.id] = self.attempts.get(message.id, 0) + 1
            pending = self.failures.get(message.id)
            error = pending.pop(0) if pending else None
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if error is not None:
            raise error
        with self._lock:
            self.sent.append((message.id, target_address))


def rate_limited(text: str = "429 rate limit exceeded") -> SendError:
    return SendError(text, rate_limited=True)


def rejected(text: str = "550 mailbox unavailable") -> SendError:
    return SendError(text, rate_limited=False)


def unreachable() -> FetchError:
    return FetchError("connection refused")


FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
