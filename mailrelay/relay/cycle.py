"""One processing cycle: fetch, match, forward, record.

All blocking I/O (source, SQLite, sink) is pushed to threads via
asyncio.to_thread so the event loop stays responsive while a cycle runs.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from mailrelay.db.models import AuditRepository, CheckpointRepository, Outcome, Rule
from mailrelay.errors import ForwardError, StoreError
from mailrelay.mail.models import Message
from mailrelay.relay.dispatcher import ForwardDispatcher
from mailrelay.relay.ledger import IdempotencyLedger
from mailrelay.relay.matcher import RuleMatcher
from mailrelay.sources.base import MessageSource

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CycleSummary:
    fetched: int = 0
    matched: int = 0
    forwarded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    duplicates: int = 0
    deferred: int = 0
    fetch_error: str | None = None
    aborted: bool = False
    started_at: datetime | None = None
    duration: timedelta = field(default_factory=timedelta)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        data["duration"] = self.duration.total_seconds()
        return data


@dataclass
class RelayCounters:
    """Cumulative process-wide counters."""

    pulls: int = 0
    fetch_failures: int = 0
    matches: int = 0
    forward_successes: int = 0
    forward_failures: int = 0


class CycleRunner:
    """Runs processing cycles against one message source.

    Outcomes per message:
        - already in the ledger: skipped silently
        - no rule: audit ``skipped``, ledgered
        - forwarded: audit ``success``, ledgered
        - forward failed: audit ``failure``, not ledgered
        - rule lookup failed: audit ``error``, not ledgered

    Un-ledgered messages are retried whenever the source returns them again,
    i.e. while they are still inside its fetch window. The checkpoint moves to
    the fetch start after every batch that was worked through to the end; it
    is held only when messages were never attempted (cancelled mid-batch or
    aborted on a ledger failure). Messages the source could not read are
    dropped there and never reach the cycle.
    """

    def __init__(
        self,
        source: MessageSource,
        matcher: RuleMatcher,
        ledger: IdempotencyLedger,
        dispatcher: ForwardDispatcher,
        audit: AuditRepository,
        checkpoints: CheckpointRepository,
        initial_lookback: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.matcher = matcher
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.audit = audit
        self.checkpoints = checkpoints
        self.initial_lookback = initial_lookback
        self.counters = RelayCounters()
        self._clock = clock

    async def run_cycle(self, cancel: asyncio.Event | None = None) -> CycleSummary:
        """Run one cycle. Never raises for fetch, store or forward failures."""
        started = self._clock()
        summary = CycleSummary(started_at=started)
        self.counters.pulls += 1
        logger.info("Starting email processing cycle")

        try:
            since = await asyncio.to_thread(self._load_checkpoint, started)
            messages = await asyncio.to_thread(self.source.fetch, since)
        except Exception as e:
            logger.error("Failed to fetch emails: %s", e)
            self.counters.fetch_failures += 1
            summary.fetch_error = str(e)
            return self._finish(summary)

        summary.fetched = len(messages)
        logger.info("Fetched %d new emails since %s", len(messages), since.isoformat())

        for index, message in enumerate(messages):
            if cancel is not None and cancel.is_set():
                summary.deferred = len(messages) - index
                logger.info("Cycle cancelled, deferring %d email(s)", summary.deferred)
                break
            try:
                await self._process(message, summary)
            except StoreError as e:
                # Without a working ledger we cannot tell what was already sent.
                logger.error("Ledger unavailable at email %s, aborting cycle: %s", message.id, e)
                await self._record(message.id, Outcome.ERROR, detail=f"ledger check failed: {e}")
                summary.errors += 1
                summary.aborted = True
                break

        if summary.deferred or summary.aborted:
            logger.info("Holding checkpoint for %s: batch left unfinished", self.source.name)
        else:
            await asyncio.to_thread(self._advance_checkpoint, started)
        return self._finish(summary)

    async def _process(self, message: Message, summary: CycleSummary) -> None:
        if not self.ledger.claim(message.id):
            logger.info("Email %s is being handled by another cycle, skipping", message.id)
            summary.duplicates += 1
            return

        try:
            if await asyncio.to_thread(self.ledger.is_processed, message.id):
                logger.debug("Email %s already processed, skipping", message.id)
                summary.duplicates += 1
                return

            try:
                rule = await asyncio.to_thread(self.matcher.match, message.subject)
            except Exception as e:
                logger.error("Failed to match email %s: %s", message.id, e)
                await self._record(message.id, Outcome.ERROR, detail=f"rule lookup failed: {e}")
                summary.errors += 1
                return

            if rule is None:
                await self._record(message.id, Outcome.SKIPPED, detail="No matching rule found")
                summary.skipped += 1
                await self._mark(message.id)
                return

            summary.matched += 1
            self.counters.matches += 1
            try:
                await self.dispatcher.forward(message, rule.target_address)
            except ForwardError as e:
                await self._record(message.id, Outcome.FAILURE, rule=rule, detail=str(e))
                summary.failed += 1
                self.counters.forward_failures += 1
                return

            await self._record(message.id, Outcome.SUCCESS, rule=rule)
            summary.forwarded += 1
            self.counters.forward_successes += 1
            logger.info("Successfully processed email %s with rule %s", message.id, rule.key)
            await self._mark(message.id)
        finally:
            self.ledger.release(message.id)

    async def _record(
        self,
        message_id: str,
        outcome: Outcome,
        rule: Rule | None = None,
        detail: str | None = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                self.audit.log,
                message_id,
                outcome,
                rule_id=rule.id if rule else None,
                rule_key=rule.key if rule else None,
                detail=detail,
            )
        except StoreError as e:
            logger.error("Failed to write %s audit entry for %s: %s", outcome.value, message_id, e)

    async def _mark(self, message_id: str) -> None:
        try:
            await asyncio.to_thread(self.ledger.mark_processed, message_id)
        except StoreError as e:
            logger.error("Failed to mark email %s as processed: %s", message_id, e)

    def _load_checkpoint(self, now: datetime) -> datetime:
        stored = self.checkpoints.get(self.source.name)
        return stored if stored is not None else now - self.initial_lookback

    def _advance_checkpoint(self, fetch_started: datetime) -> None:
        try:
            current = self.checkpoints.get(self.source.name)
            # Overlapping cycles may finish out of order; never move backwards.
            if current is None or fetch_started > current:
                self.checkpoints.set(self.source.name, fetch_started)
        except StoreError as e:
            logger.error("Failed to advance checkpoint for %s: %s", self.source.name, e)

    def _finish(self, summary: CycleSummary) -> CycleSummary:
        summary.duration = self._clock() - (summary.started_at or self._clock())
        logger.info(
            "Email processing cycle completed in %.2fs "
            "(fetched=%d forwarded=%d failed=%d skipped=%d errors=%d)",
            summary.duration.total_seconds(),
            summary.fetched,
            summary.forwarded,
            summary.failed,
            summary.skipped,
            summary.errors,
        )
        return summary
