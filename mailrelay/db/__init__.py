"""Database layer — SQLite store for rules, ledger, audit log and checkpoints."""

from mailrelay.db.connection import Database, init_db

__all__ = ["Database", "init_db"]
