"""Periodic monitoring sweep driven by APScheduler."""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from metrics_relay.runner import run_sweep
from metrics_relay.settings import RelaySettings


logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "monitoring-sweep"


def build_trigger(settings: RelaySettings):
    """Cron expression ("minute hour day month day_of_week") when configured, else a fixed interval."""
    expr = (settings.sweep_cron or "").strip()
    if expr:
        parts = expr.split()
        if len(parts) != 5:
            raise ValueError(f"Invalid cron expression: {expr}")
        return CronTrigger(
            minute=parts[0],
            hour=parts[1],
            day=parts[2],
            month=parts[3],
            day_of_week=parts[4],
        )
    return IntervalTrigger(seconds=max(60, int(settings.sweep_interval_seconds)))


class SweepScheduler:
    """Owns the scheduler that runs one sweep per tick."""

    def __init__(self, settings: RelaySettings):
        self.settings = settings
        self.scheduler = AsyncIOScheduler()
        self.running = False

    async def _tick(self) -> None:
        summary = await run_sweep(self.settings)
        logger.info("Scheduled sweep tick done", checked=summary.checked, failed=summary.failed)

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        trigger = build_trigger(self.settings)
        # A slow sweep must not overlap the next tick.
        self.scheduler.add_job(
            self._tick,
            trigger=trigger,
            id=SWEEP_JOB_ID,
            name="Monitoring sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        self.running = True
        logger.info("Sweep scheduler started", trigger=str(trigger))

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Sweep scheduler stopped")

    def status(self) -> Dict[str, Any]:
        job = self.scheduler.get_job(SWEEP_JOB_ID) if self.running else None
        next_run: Optional[str] = None
        if job is not None and job.next_run_time is not None:
            next_run = job.next_run_time.isoformat()
        return {"running": self.running, "next_run": next_run}
