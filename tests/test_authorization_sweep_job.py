"""
Scheduler wiring tests for the reconciliation sweep job
"""

from decimal import Decimal

import pytest

from conftest import TEST_USER_ID
from jobs.authorization_sweep_job import (
    SWEEP_JOB_ID,
    AuthorizationSweepScheduler,
    run_authorization_sweep,
)
from models import SessionStatus


class TestSweepJob:
    @pytest.mark.asyncio
    async def test_job_returns_report(self, container, instrument, clock):
        grant = await container.cards.authorize(TEST_USER_ID, Decimal("10"), None, 1)
        clock.advance(minutes=2)

        result = await run_authorization_sweep(container)

        assert result["sessions_expired"] == 1
        assert container.sessions.get(grant.session_id).status == SessionStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_job_never_raises(self, container, monkeypatch):
        async def broken():
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(container.sweeper, "run_sweep", broken)

        result = await run_authorization_sweep(container)

        assert result == {"success": False, "error": "database unavailable"}


class TestSchedulerLifecycle:
    @pytest.mark.asyncio
    async def test_start_registers_single_sweep_job(self, container):
        scheduler = AuthorizationSweepScheduler(container, interval_seconds=30)
        scheduler.start(start_listener=False)
        try:
            jobs = scheduler.scheduler.get_jobs()
            assert [job.id for job in jobs] == [SWEEP_JOB_ID]
            assert jobs[0].max_instances == 1
            assert jobs[0].coalesce is True
        finally:
            await scheduler.stop()

        assert scheduler.scheduler.running is False

    @pytest.mark.asyncio
    async def test_stop_cancels_listener(self, container):
        scheduler = AuthorizationSweepScheduler(container, interval_seconds=30)
        scheduler.start(start_listener=True)

        assert scheduler.listener_task is not None
        await scheduler.stop()
        assert scheduler.listener_task is None
