"""Periodic scheduler — fixed-interval relay cycles with drain-on-stop.

Simple asyncio sleep-loop scheduler. Each tick starts a cycle as its own
task, so a slow cycle does not delay the next tick and cycles may overlap;
the ledger's per-message claims keep overlapping cycles from sending twice.

State (running flag, timestamps, in-flight count) lives behind one lock and
is never held across an await, so status reads stay responsive while a cycle
is fetching or backing off.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from mailrelay.errors import AlreadyRunningError
from mailrelay.relay.cycle import CycleRunner, CycleSummary

logger = logging.getLogger(__name__)

DEFAULT_STOP_GRACE_SECONDS = 30.0

# Patched in tests to get sub-second ticks.
_SECONDS_PER_MINUTE = 60.0


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SchedulerState:
    running: bool = False
    next_run: datetime | None = None
    last_run_start: datetime | None = None
    last_run_end: datetime | None = None
    in_flight: int = 0
    cancel: asyncio.Event = field(default_factory=asyncio.Event)


class Scheduler:
    """Triggers CycleRunner on a fixed interval; supports manual runs."""

    def __init__(
        self,
        runner: CycleRunner,
        interval_minutes: int,
        stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS,
    ):
        if interval_minutes <= 0:
            raise ValueError("scheduler interval must be greater than 0")
        self.runner = runner
        self.interval_minutes = interval_minutes
        self.stop_grace_seconds = stop_grace_seconds
        self._lock = threading.Lock()
        self._state = SchedulerState()
        self._idle = asyncio.Event()
        self._idle.set()
        self._timer: asyncio.Task | None = None
        self._cycles: set[asyncio.Task] = set()

    # --- control ---

    def start(self) -> None:
        """Arm the interval timer. Must be called from the event loop."""
        with self._lock:
            if self._state.running:
                raise AlreadyRunningError("scheduler is already running")
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.exception("Scheduler start failed: no running event loop")
                raise
            cancel = asyncio.Event()
            self._state.cancel = cancel
            self._state.running = True
            self._state.next_run = _now() + self._interval()
            self._timer = loop.create_task(self._timer_loop(cancel))
        logger.info("Scheduler started with interval: %d minutes", self.interval_minutes)

    async def stop(self) -> None:
        """Stop ticking and wait for in-flight cycles, up to the grace period."""
        with self._lock:
            if not self._state.running:
                return
            self._state.running = False
            self._state.next_run = None
            self._state.cancel.set()
            timer, self._timer = self._timer, None

        if timer is not None:
            timer.cancel()

        try:
            await asyncio.wait_for(self._idle.wait(), timeout=self.stop_grace_seconds)
            logger.info("Scheduler stopped gracefully")
        except asyncio.TimeoutError:
            logger.warning(
                "Scheduler stop timed out after %.0fs with %d cycle(s) still running",
                self.stop_grace_seconds,
                self.in_flight(),
            )

    async def run_once(self) -> CycleSummary:
        """Run one cycle now, whatever the scheduler state."""
        logger.info("Running email processing once")
        with self._lock:
            # A manual run while stopped must not inherit a spent cancel signal.
            cancel = self._state.cancel if self._state.running else asyncio.Event()
        return await self._run_cycle(cancel)

    # --- introspection ---

    def is_running(self) -> bool:
        with self._lock:
            return self._state.running

    def next_run_time(self) -> datetime | None:
        with self._lock:
            return self._state.next_run

    def last_run_time(self) -> datetime | None:
        with self._lock:
            return self._state.last_run_start

    def last_run_end(self) -> datetime | None:
        with self._lock:
            return self._state.last_run_end

    def in_flight(self) -> int:
        with self._lock:
            return self._state.in_flight

    def status(self) -> dict:
        with self._lock:
            state = self._state
            return {
                "running": state.running,
                "next_run": state.next_run.isoformat() if state.next_run else None,
                "last_run": state.last_run_start.isoformat() if state.last_run_start else None,
                "last_run_end": state.last_run_end.isoformat() if state.last_run_end else None,
                "in_flight": state.in_flight,
                "counters": asdict(self.runner.counters),
            }

    # --- internals ---

    def _interval(self) -> timedelta:
        return timedelta(seconds=self.interval_minutes * _SECONDS_PER_MINUTE)

    async def _timer_loop(self, cancel: asyncio.Event) -> None:
        interval = self._interval()
        while not cancel.is_set():
            await asyncio.sleep(interval.total_seconds())
            with self._lock:
                if cancel.is_set() or not self._state.running:
                    return
                self._state.next_run = _now() + interval
                # Counted before the task exists so stop() cannot miss it.
                self._enter_locked()
            task = asyncio.create_task(self._execute(cancel))
            self._cycles.add(task)
            task.add_done_callback(self._cycle_done)

    def _cycle_done(self, task: asyncio.Task) -> None:
        self._cycles.discard(task)
        # Nobody awaits ticked cycles; _execute has already logged the failure.
        if not task.cancelled():
            task.exception()

    async def _run_cycle(self, cancel: asyncio.Event) -> CycleSummary:
        with self._lock:
            self._enter_locked()
        return await self._execute(cancel)

    def _enter_locked(self) -> None:
        self._state.in_flight += 1
        self._state.last_run_start = _now()
        self._idle.clear()

    async def _execute(self, cancel: asyncio.Event) -> CycleSummary:
        try:
            return await self.runner.run_cycle(cancel)
        except Exception:
            # run_cycle handles its own failures; anything else is a bug.
            logger.exception("Email processing cycle crashed")
            raise
        finally:
            with self._lock:
                self._state.in_flight -= 1
                self._state.last_run_end = _now()
                if self._state.in_flight == 0:
                    self._idle.set()
