"""Database model helpers — rules, processed ledger, audit log, checkpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from mailrelay.db.connection import Database

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class Rule:
    id: int
    key: str
    target_address: str
    enabled: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Rule:
        return cls(
            id=row["id"],
            key=row["keyword"],
            target_address=row["target_email"],
            enabled=bool(row["enabled"]),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class AuditEntry:
    id: int
    message_id: str
    outcome: Outcome
    rule_key: str | None = None
    detail: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AuditEntry:
        return cls(
            id=row["id"],
            message_id=row["message_id"],
            outcome=Outcome(row["status"]),
            rule_key=row.get("rule_key"),
            detail=row.get("detail"),
            created_at=row.get("created_at"),
        )


class RuleRepository:
    """Database operations for forwarding rules."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, key: str, target_address: str, enabled: bool = True) -> int:
        return self.db.execute_write(
            "INSERT INTO forward_rules (keyword, target_email, enabled) VALUES (?, ?, ?)",
            (key, target_address, int(enabled)),
        )

    def get(self, rule_id: int) -> Rule | None:
        row = self.db.execute_one("SELECT * FROM forward_rules WHERE id = ?", (rule_id,))
        return Rule.from_row(row) if row else None

    def list_all(self) -> list[Rule]:
        rows = self.db.execute("SELECT * FROM forward_rules ORDER BY id")
        return [Rule.from_row(r) for r in rows]

    def list_enabled(self) -> list[Rule]:
        rows = self.db.execute("SELECT * FROM forward_rules WHERE enabled = 1 ORDER BY id")
        return [Rule.from_row(r) for r in rows]

    def update(
        self,
        rule_id: int,
        key: str | None = None,
        target_address: str | None = None,
        enabled: bool | None = None,
    ) -> bool:
        sets = ["updated_at = CURRENT_TIMESTAMP"]
        params: list[Any] = []
        if key is not None:
            sets.append("keyword = ?")
            params.append(key)
        if target_address is not None:
            sets.append("target_email = ?")
            params.append(target_address)
        if enabled is not None:
            sets.append("enabled = ?")
            params.append(int(enabled))
        params.append(rule_id)
        return (
            self.db.execute_rowcount(
                f"UPDATE forward_rules SET {', '.join(sets)} WHERE id = ?",
                tuple(params),
            )
            > 0
        )

    def set_enabled(self, rule_id: int, enabled: bool) -> bool:
        return self.update(rule_id, enabled=enabled)

    def delete(self, rule_id: int) -> bool:
        return self.db.execute_rowcount("DELETE FROM forward_rules WHERE id = ?", (rule_id,)) > 0

    # Lookup tiers used by the matcher. Each returns the lowest-id hit.

    def find_exact(self, key: str) -> Rule | None:
        row = self.db.execute_one(
            "SELECT * FROM forward_rules WHERE keyword = ? AND enabled = 1 ORDER BY id LIMIT 1",
            (key,),
        )
        return Rule.from_row(row) if row else None

    def find_case_insensitive(self, key: str) -> Rule | None:
        row = self.db.execute_one(
            """SELECT * FROM forward_rules
               WHERE LOWER(keyword) = LOWER(?) AND enabled = 1
               ORDER BY id LIMIT 1""",
            (key,),
        )
        return Rule.from_row(row) if row else None

    def find_containing(self, key: str) -> Rule | None:
        """First enabled rule whose keyword contains ``key`` (case-insensitive).

        instr() rather than LIKE so that ``%`` and ``_`` in the key are literal.
        """
        row = self.db.execute_one(
            """SELECT * FROM forward_rules
               WHERE instr(LOWER(keyword), LOWER(?)) > 0 AND enabled = 1
               ORDER BY id LIMIT 1""",
            (key,),
        )
        return Rule.from_row(row) if row else None


class ProcessedRepository:
    """Database operations for the processed-message ledger."""

    def __init__(self, db: Database):
        self.db = db

    def exists(self, message_id: str) -> bool:
        row = self.db.execute_one(
            "SELECT 1 AS hit FROM processed_emails WHERE message_id = ?", (message_id,)
        )
        return row is not None

    def insert(self, message_id: str) -> bool:
        """Insert a ledger row. Returns False when the id was already present."""
        return (
            self.db.execute_rowcount(
                "INSERT OR IGNORE INTO processed_emails (message_id) VALUES (?)",
                (message_id,),
            )
            > 0
        )

    def count(self, message_id: str | None = None) -> int:
        if message_id is None:
            row = self.db.execute_one("SELECT COUNT(*) AS cnt FROM processed_emails")
        else:
            row = self.db.execute_one(
                "SELECT COUNT(*) AS cnt FROM processed_emails WHERE message_id = ?",
                (message_id,),
            )
        return row["cnt"] if row else 0


class AuditRepository:
    """Append-only audit log of processing attempts."""

    def __init__(self, db: Database):
        self.db = db

    def log(
        self,
        message_id: str,
        outcome: Outcome,
        rule_id: int | None = None,
        rule_key: str | None = None,
        detail: str | None = None,
    ) -> int:
        return self.db.execute_write(
            """INSERT INTO forward_logs (message_id, rule_id, rule_key, status, detail)
               VALUES (?, ?, ?, ?, ?)""",
            (message_id, rule_id, rule_key, outcome.value, detail),
        )

    def get_by_message(self, message_id: str) -> list[AuditEntry]:
        rows = self.db.execute(
            "SELECT * FROM forward_logs WHERE message_id = ? ORDER BY id",
            (message_id,),
        )
        return [AuditEntry.from_row(r) for r in rows]

    def get_recent(self, limit: int = 100) -> list[AuditEntry]:
        rows = self.db.execute(
            "SELECT * FROM forward_logs ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [AuditEntry.from_row(r) for r in rows]


class CheckpointRepository:
    """Per-source fetch checkpoints (ISO-8601 UTC timestamps)."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, source: str) -> datetime | None:
        row = self.db.execute_one(
            "SELECT checkpoint_at FROM checkpoints WHERE source = ?", (source,)
        )
        if not row:
            return None
        return datetime.fromisoformat(row["checkpoint_at"])

    def set(self, source: str, checkpoint: datetime) -> None:
        self.db.execute_write(
            """INSERT INTO checkpoints (source, checkpoint_at, updated_at)
               VALUES (?, ?, CURRENT_TIMESTAMP)
               ON CONFLICT(source) DO UPDATE SET
                   checkpoint_at = excluded.checkpoint_at,
                   updated_at = CURRENT_TIMESTAMP""",
            (source, checkpoint.isoformat()),
        )
