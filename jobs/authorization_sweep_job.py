"""
Authorization Sweep Scheduler

Background work for the card control backend:
1. Reconciliation sweep - every SWEEP_INTERVAL_SECONDS (default 60s)
2. Expiry listener - long-running task on Redis key-expiry notifications (push path)

The sweep is authoritative; the listener only shortens the time a card stays open
after its window ends.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.service_container import ServiceContainer

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "authorization_reconciliation_sweep"


async def run_authorization_sweep(container: ServiceContainer) -> Dict[str, Any]:
    """Job entry point: one sweep, never raising into the scheduler"""
    try:
        report = await container.sweeper.run_sweep()
        return report.to_dict()
    except Exception as e:
        logger.error(f"❌ SWEEP_JOB_FAILED: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


class AuthorizationSweepScheduler:
    def __init__(self, container: ServiceContainer, interval_seconds: Optional[int] = None):
        self.container = container
        self.interval_seconds = interval_seconds or Config.SWEEP_INTERVAL_SECONDS
        self.listener_task: Optional[asyncio.Task] = None

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': Config.SWEEP_MISFIRE_GRACE_SECONDS
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        self.scheduler.add_job(
            run_authorization_sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds, start_date=datetime.now().replace(microsecond=0)),
            args=[self.container],
            id=SWEEP_JOB_ID,
            name="🧹 Authorization Sweep - Expiry, Stale Timers & Lock Retries",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"✅ Authorization sweep scheduled every {self.interval_seconds} seconds")

    def start(self, start_listener: bool = True):
        """Start the sweep job and (optionally) the expiry notification listener on the running loop"""
        self.setup_jobs()
        self.scheduler.start()

        if start_listener:
            self.listener_task = asyncio.create_task(
                self.container.timers.listen_for_expiry(self.container.sweeper.expire_session),
                name="authorization_expiry_listener",
            )
            logger.info("👂 Expiry notification listener started")

    async def stop(self):
        if self.listener_task is not None:
            self.listener_task.cancel()
            try:
                await self.listener_task
            except asyncio.CancelledError:
                pass
            self.listener_task = None

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Authorization sweep scheduler stopped")
