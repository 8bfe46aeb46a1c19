"""Scheduler control routes — start, stop, run once, status, health."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from mailrelay.errors import AlreadyRunningError
from mailrelay.tasks.scheduler import Scheduler

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")


def _scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


@router.post("/scheduler/start")
async def start_scheduler(request: Request) -> dict:
    scheduler = _scheduler(request)
    try:
        scheduler.start()
    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return scheduler.status()


@router.post("/scheduler/stop")
async def stop_scheduler(request: Request) -> dict:
    """Stop the timer and drain in-flight cycles (bounded by the grace period)."""
    scheduler = _scheduler(request)
    await scheduler.stop()
    return scheduler.status()


@router.post("/scheduler/run")
async def run_once(request: Request) -> dict:
    summary = await _scheduler(request).run_once()
    return summary.to_dict()


@router.get("/scheduler/status")
async def scheduler_status(request: Request) -> dict:
    return _scheduler(request).status()


@router.get("/health")
async def health(request: Request) -> dict:
    db_ok = request.app.state.db.ping()
    if not db_ok:
        raise HTTPException(status_code=503, detail="database unavailable")
    return {"status": "ok", "scheduler_running": _scheduler(request).is_running()}
