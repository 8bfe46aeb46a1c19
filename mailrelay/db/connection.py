"""Database connection management — SQLite with WAL for concurrent cycles."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from mailrelay.config import AppConfig, DatabaseBackend
from mailrelay.errors import StoreError

logger = logging.getLogger(__name__)

MIGRATIONS = [
    "001_relay_schema.sql",
]


class Database:
    """Thin SQLite wrapper; every call opens its own short-lived connection.

    Any ``sqlite3.Error`` surfaces as ``StoreError`` so callers never need to
    know about the storage engine.
    """

    def __init__(self, config: AppConfig):
        self.config = config.database
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure database directory exists."""
        if self.config.backend == DatabaseBackend.SQLITE:
            db_path = Path(self.config.sqlite_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection (context manager)."""
        try:
            conn = sqlite3.connect(
                str(self.config.sqlite_path),
                detect_types=sqlite3.PARSE_DECLTYPES,
                timeout=10.0,
            )
        except sqlite3.Error as e:
            raise StoreError(f"cannot open database: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def execute(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            if cursor.description:
                columns = [d[0] for d in cursor.description]
                return [dict(zip(columns, row)) for row in cursor.fetchall()]
            return []

    def execute_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        """Execute a query and return the first row as a dict, or None."""
        results = self.execute(sql, params)
        return results[0] if results else None

    def execute_write(self, sql: str, params: tuple = ()) -> int:
        """Execute an INSERT/UPDATE/DELETE and return lastrowid or rowcount."""
        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.lastrowid or cursor.rowcount

    def execute_rowcount(self, sql: str, params: tuple = ()) -> int:
        """Execute a write and return the number of affected rows."""
        with self.connection() as conn:
            return conn.execute(sql, params).rowcount

    def run_migration(self, sql: str) -> None:
        """Run a migration SQL script."""
        with self.connection() as conn:
            conn.executescript(sql)

    def initialize_schema(self) -> None:
        """Create the schema if tables don't exist."""
        migrations_dir = Path(__file__).parent / "migrations"
        for migration_file in MIGRATIONS:
            migration_path = migrations_dir / migration_file
            if not migration_path.exists():
                logger.warning("Migration file not found: %s", migration_path)
                continue
            self.run_migration(migration_path.read_text())
            logger.info("Applied migration: %s", migration_file)

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            self.execute_one("SELECT 1 AS ok")
            return True
        except StoreError as e:
            logger.error("Database health check failed: %s", e)
            return False


def init_db(config: AppConfig) -> Database:
    """Create a database handle and make sure the schema exists."""
    db = Database(config)
    db.initialize_schema()
    return db
