"""Application configuration — env vars, YAML files, defaults."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


def _repo_root() -> Path:
    """Find the repository root (directory containing pyproject.toml)."""
    current = Path(__file__).resolve().parent.parent
    if (current / "pyproject.toml").exists():
        return current
    return Path.cwd()


REPO_ROOT = _repo_root()


class AuthMode(str, Enum):
    SERVICE_ACCOUNT = "service_account"
    PERSONAL_OAUTH = "personal_oauth"


class DatabaseBackend(str, Enum):
    SQLITE = "sqlite"


class SourceKind(str, Enum):
    GMAIL_API = "gmail_api"
    IMAP = "imap"


class AuthConfig(BaseSettings):
    mode: AuthMode = AuthMode.PERSONAL_OAUTH
    credentials_file: Path = REPO_ROOT / "config" / "credentials.json"
    token_file: Path = REPO_ROOT / "config" / "token.json"
    service_account_file: Path = REPO_ROOT / "config" / "service-account-key.json"
    # Mailbox to impersonate in service-account mode; "me" otherwise
    user_email: str = ""
    scopes: list[str] = [
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/gmail.send",
    ]

    model_config = {"env_prefix": "RELAY_AUTH_"}


class DatabaseConfig(BaseSettings):
    backend: DatabaseBackend = DatabaseBackend.SQLITE
    sqlite_path: Path = REPO_ROOT / "data" / "relay.db"

    model_config = {"env_prefix": "RELAY_DB_"}


class SourceConfig(BaseSettings):
    """Where inbound mail is pulled from."""

    kind: SourceKind = SourceKind.GMAIL_API
    initial_lookback_hours: int = Field(default=24, gt=0)
    max_results: int = Field(default=100, gt=0)

    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    imap_user: str = ""
    imap_password: str = ""
    imap_mailbox: str = "INBOX"

    model_config = {"env_prefix": "RELAY_SOURCE_"}

    @model_validator(mode="after")
    def _check_imap_credentials(self) -> SourceConfig:
        if self.kind == SourceKind.IMAP and not (self.imap_user and self.imap_password):
            raise ValueError("IMAP credentials are required when source kind is imap")
        return self


class SchedulerConfig(BaseSettings):
    interval_minutes: int = Field(default=5, gt=0)
    stop_grace_seconds: float = Field(default=30.0, gt=0)
    autostart: bool = True

    model_config = {"env_prefix": "RELAY_SCHEDULER_"}


class ForwardConfig(BaseSettings):
    max_attempts: int = Field(default=3, gt=0)
    from_address: str = ""

    model_config = {"env_prefix": "RELAY_FORWARD_"}


class ServerConfig(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    model_config = {"env_prefix": "RELAY_SERVER_"}


class AppConfig(BaseSettings):
    """Top-level application configuration."""

    auth: AuthConfig = Field(default_factory=AuthConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    forward: ForwardConfig = Field(default_factory=ForwardConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # Environment & Sentry
    environment: str = "development"
    sentry_dsn: str = ""

    # Paths
    config_dir: Path = REPO_ROOT / "config"
    data_dir: Path = REPO_ROOT / "data"

    model_config = {"env_prefix": "RELAY_"}

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> AppConfig:
        """Load config from YAML file, with env var overrides."""
        if path is None:
            path = REPO_ROOT / "config" / "app.yml"

        values: dict[str, Any] = {}
        if path.exists():
            with open(path) as f:
                values = yaml.safe_load(f) or {}

        return cls(**values)
