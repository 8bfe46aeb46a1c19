"""Mail Relay — FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

import sentry_sdk
from fastapi import FastAPI

from mailrelay.api.scheduler import router as scheduler_router
from mailrelay.config import AppConfig
from mailrelay.db.connection import Database, init_db
from mailrelay.db.models import (
    AuditRepository,
    CheckpointRepository,
    ProcessedRepository,
    RuleRepository,
)
from mailrelay.gmail.client import GmailService
from mailrelay.relay.cycle import CycleRunner
from mailrelay.relay.dispatcher import ForwardDispatcher, GmailSink, MessageSink
from mailrelay.relay.ledger import IdempotencyLedger
from mailrelay.relay.matcher import RuleMatcher
from mailrelay.sources import build_source
from mailrelay.sources.base import MessageSource
from mailrelay.tasks.scheduler import Scheduler

logger = logging.getLogger(__name__)


def build_runner(
    config: AppConfig,
    db: Database,
    source: MessageSource | None = None,
    sink: MessageSink | None = None,
) -> CycleRunner:
    """Wire the relay components for one mailbox."""
    gmail_service = GmailService(config)
    if source is None:
        source = build_source(config, gmail_service)
    if sink is None:
        sink = GmailSink(gmail_service.client(), config.forward.from_address)

    return CycleRunner(
        source=source,
        matcher=RuleMatcher(RuleRepository(db)),
        ledger=IdempotencyLedger(ProcessedRepository(db)),
        dispatcher=ForwardDispatcher(sink, max_attempts=config.forward.max_attempts),
        audit=AuditRepository(db),
        checkpoints=CheckpointRepository(db),
        initial_lookback=timedelta(hours=config.source.initial_lookback_hours),
    )


def build_scheduler(config: AppConfig, runner: CycleRunner) -> Scheduler:
    return Scheduler(
        runner,
        interval_minutes=config.scheduler.interval_minutes,
        stop_grace_seconds=config.scheduler.stop_grace_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown lifecycle."""
    config = app.state.config
    db = app.state.db

    runner = getattr(app.state, "runner", None) or build_runner(config, db)
    scheduler = build_scheduler(config, runner)
    app.state.runner = runner
    app.state.scheduler = scheduler

    if config.scheduler.autostart:
        scheduler.start()
        logger.info("Scheduler started on startup")

    yield

    # Shutdown
    await scheduler.stop()
    runner.source.close()
    logger.info("Application shutdown complete")


def _init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK if a DSN is configured and not in development."""
    if not dsn or environment == "development":
        return
    sentry_sdk.init(
        dsn,
        environment=environment,
        traces_sample_rate=0,
        send_client_reports=False,
        auto_session_tracking=False,
    )


def create_app(config: AppConfig | None = None, runner: CycleRunner | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``runner`` replaces the Gmail/IMAP-backed runner; tests pass one built
    over fake sources and sinks.
    """
    if config is None:
        config = AppConfig.from_yaml()

    _init_sentry(config.sentry_dsn, config.environment)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, config.server.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Mail Relay",
        version="1.0.0",
        description="Keyword-routed email forwarding",
        lifespan=lifespan,
        debug=config.environment == "development",
    )

    app.state.config = config
    app.state.db = init_db(config)
    app.state.runner = runner

    app.include_router(scheduler_router)

    return app


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    config = AppConfig.from_yaml()
    app = create_app(config)

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )
