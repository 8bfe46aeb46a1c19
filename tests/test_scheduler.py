"""Tests for the scheduler state machine — start/stop/run_once and drain."""

from __future__ import annotations

import asyncio
import gc
import logging
import threading
from unittest.mock import AsyncMock, patch

import pytest

from mailrelay.db.models import (
    AuditRepository,
    CheckpointRepository,
    ProcessedRepository,
    RuleRepository,
)
from mailrelay.errors import AlreadyRunningError
from mailrelay.relay.cycle import CycleRunner, CycleSummary, RelayCounters
from mailrelay.relay.dispatcher import ForwardDispatcher
from mailrelay.relay.ledger import IdempotencyLedger
from mailrelay.relay.matcher import RuleMatcher
from mailrelay.tasks.scheduler import Scheduler
from tests.conftest import FakeSink, FakeSource, make_message


class StubRunner:
    """Cycle runner whose cycles block until released."""

    def __init__(self, blocking: bool = False):
        self.counters = RelayCounters()
        self.calls = 0
        self.finished = 0
        self.cancel_tokens: list[asyncio.Event | None] = []
        self.release = asyncio.Event()
        self.entered = asyncio.Event()
        if not blocking:
            self.release.set()

    async def run_cycle(self, cancel=None) -> CycleSummary:
        self.calls += 1
        self.cancel_tokens.append(cancel)
        self.entered.set()
        await self.release.wait()
        self.finished += 1
        return CycleSummary(fetched=1)


class TestSchedulerLifecycle:
    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            Scheduler(StubRunner(), interval_minutes=0)

    @pytest.mark.asyncio
    async def test_start_twice_raises(self):
        scheduler = Scheduler(StubRunner(), interval_minutes=5)
        scheduler.start()
        try:
            with pytest.raises(AlreadyRunningError):
                scheduler.start()
            assert scheduler.is_running()
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_stop_start_again(self):
        scheduler = Scheduler(StubRunner(), interval_minutes=5)

        scheduler.start()
        assert scheduler.next_run_time() is not None
        await scheduler.stop()
        assert not scheduler.is_running()
        assert scheduler.next_run_time() is None

        scheduler.start()
        assert scheduler.is_running()
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self):
        scheduler = Scheduler(StubRunner(), interval_minutes=5)
        await scheduler.stop()
        assert not scheduler.is_running()

    def test_start_without_event_loop_raises(self):
        scheduler = Scheduler(StubRunner(), interval_minutes=5)
        with pytest.raises(RuntimeError):
            scheduler.start()
        assert not scheduler.is_running()


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_run_once_while_stopped(self):
        runner = StubRunner()
        scheduler = Scheduler(runner, interval_minutes=5)

        summary = await scheduler.run_once()

        assert summary.fetched == 1
        assert not scheduler.is_running()
        assert scheduler.last_run_time() is not None
        assert runner.cancel_tokens[0] is not None
        assert not runner.cancel_tokens[0].is_set()

    @pytest.mark.asyncio
    async def test_run_once_after_stop_gets_fresh_token(self):
        runner = StubRunner()
        scheduler = Scheduler(runner, interval_minutes=5)
        scheduler.start()
        await scheduler.stop()

        await scheduler.run_once()

        assert not runner.cancel_tokens[-1].is_set()


class TestDrain:
    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_cycle(self):
        runner = StubRunner(blocking=True)
        scheduler = Scheduler(runner, interval_minutes=5, stop_grace_seconds=5)
        scheduler.start()

        cycle = asyncio.create_task(scheduler.run_once())
        await runner.entered.wait()
        assert scheduler.in_flight() == 1

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.05)
        # Stopped immediately, but still draining
        assert not scheduler.is_running()
        assert not stopping.done()
        assert runner.cancel_tokens[0].is_set()

        runner.release.set()
        await stopping
        assert runner.finished == 1
        assert scheduler.in_flight() == 0
        await cycle

    @pytest.mark.asyncio
    async def test_stop_returns_after_grace_period(self):
        runner = StubRunner(blocking=True)
        scheduler = Scheduler(runner, interval_minutes=5, stop_grace_seconds=0.1)
        scheduler.start()

        cycle = asyncio.create_task(scheduler.run_once())
        await runner.entered.wait()

        await asyncio.wait_for(scheduler.stop(), timeout=2)
        assert not scheduler.is_running()
        assert runner.finished == 0

        # The abandoned cycle still runs to completion
        runner.release.set()
        summary = await cycle
        assert summary.fetched == 1
        assert scheduler.in_flight() == 0

    @pytest.mark.asyncio
    async def test_stop_mid_batch_defers_remaining_messages(self, db):
        RuleRepository(db).create("urgent", "urgent@example.com")
        source = FakeSource([make_message(f"m{i}", "urgent - x") for i in (1, 2, 3)])
        sink = FakeSink()
        sink.gate = threading.Event()
        runner = CycleRunner(
            source=source,
            matcher=RuleMatcher(RuleRepository(db)),
            ledger=IdempotencyLedger(ProcessedRepository(db)),
            dispatcher=ForwardDispatcher(sink, sleep=AsyncMock()),
            audit=AuditRepository(db),
            checkpoints=CheckpointRepository(db),
        )
        scheduler = Scheduler(runner, interval_minutes=5, stop_grace_seconds=5)
        scheduler.start()

        cycle = asyncio.create_task(scheduler.run_once())
        for _ in range(100):
            if sink.attempts:
                break
            await asyncio.sleep(0.01)

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.05)
        assert not scheduler.is_running()
        sink.gate.set()
        await stopping
        summary = await cycle

        assert summary.forwarded == 1
        assert summary.deferred == 2
        assert sink.sent == [("m1", "urgent@example.com")]
        assert AuditRepository(db).get_by_message("m2") == []
        assert AuditRepository(db).get_by_message("m3") == []


class TestTicks:
    @pytest.mark.asyncio
    async def test_timer_triggers_cycles(self):
        runner = StubRunner()
        with patch("mailrelay.tasks.scheduler._SECONDS_PER_MINUTE", 0.02):
            scheduler = Scheduler(runner, interval_minutes=1)
            scheduler.start()
            await asyncio.sleep(0.15)
            await scheduler.stop()

        assert runner.calls >= 2
        assert scheduler.last_run_time() is not None

    @pytest.mark.asyncio
    async def test_no_ticks_after_stop(self):
        runner = StubRunner()
        with patch("mailrelay.tasks.scheduler._SECONDS_PER_MINUTE", 0.02):
            scheduler = Scheduler(runner, interval_minutes=1)
            scheduler.start()
            await asyncio.sleep(0.05)
            await scheduler.stop()
            calls = runner.calls
            await asyncio.sleep(0.1)

        assert runner.calls == calls

    @pytest.mark.asyncio
    async def test_slow_cycle_does_not_block_next_tick(self):
        runner = StubRunner(blocking=True)
        with patch("mailrelay.tasks.scheduler._SECONDS_PER_MINUTE", 0.02):
            scheduler = Scheduler(runner, interval_minutes=1, stop_grace_seconds=2)
            scheduler.start()
            await asyncio.sleep(0.1)
            assert scheduler.in_flight() >= 2
            runner.release.set()
            await scheduler.stop()

        assert runner.finished == runner.calls

    @pytest.mark.asyncio
    async def test_crashing_tick_cycle_is_logged_once(self, caplog):
        class CrashingRunner(StubRunner):
            async def run_cycle(self, cancel=None) -> CycleSummary:
                self.calls += 1
                raise RuntimeError("cycle bug")

        unhandled = []
        asyncio.get_running_loop().set_exception_handler(lambda loop, ctx: unhandled.append(ctx))
        runner = CrashingRunner()

        with caplog.at_level(logging.ERROR, logger="mailrelay.tasks.scheduler"):
            with patch("mailrelay.tasks.scheduler._SECONDS_PER_MINUTE", 0.02):
                scheduler = Scheduler(runner, interval_minutes=1)
                scheduler.start()
                await asyncio.sleep(0.1)
                await scheduler.stop()
        gc.collect()

        assert runner.calls >= 2
        assert scheduler.in_flight() == 0
        assert "Email processing cycle crashed" in caplog.text
        assert unhandled == []


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_fields(self):
        runner = StubRunner()
        runner.counters.pulls = 4
        scheduler = Scheduler(runner, interval_minutes=5)
        scheduler.start()
        try:
            status = scheduler.status()
        finally:
            await scheduler.stop()

        assert status["running"] is True
        assert status["next_run"] is not None
        assert status["last_run"] is None
        assert status["in_flight"] == 0
        assert status["counters"]["pulls"] == 4
