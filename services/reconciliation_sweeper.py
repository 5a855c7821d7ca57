"""
Reconciliation Sweeper - the authoritative expiry backstop

Runs on a fixed interval (see jobs/authorization_sweep_job.py):
1. Primary: expire every active session whose persisted expires_at has passed
2. Secondary: resolve ephemeral timer hints that outlived their TTL
3. Drain the lock retry outbox
4. Lock cards mirrored unlocked that have no open window and no pending retry

Each item is handled on its own; a failure is logged, recorded in the report and
retried on the next run.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from config import Config
from models import SessionStatus
from services.authorization_session_manager import AuthorizationSessionManager
from services.dual_timer_coordinator import DualTimerCoordinator
from services.instrument_state_controller import InstrumentStateController
from services.lock_retry_outbox import LockRetryOutbox
from services.session_closer import SessionCloser
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    sessions_expired: int = 0
    locks_deferred: int = 0
    stale_hints: int = 0
    hints_rearmed: int = 0
    hints_removed: int = 0
    lock_retries_attempted: int = 0
    lock_retries_succeeded: int = 0
    lock_retries_superseded: int = 0
    orphans_locked: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "sessions_expired": self.sessions_expired,
            "locks_deferred": self.locks_deferred,
            "stale_hints": self.stale_hints,
            "hints_rearmed": self.hints_rearmed,
            "hints_removed": self.hints_removed,
            "lock_retries_attempted": self.lock_retries_attempted,
            "lock_retries_succeeded": self.lock_retries_succeeded,
            "lock_retries_superseded": self.lock_retries_superseded,
            "orphans_locked": self.orphans_locked,
            "errors": list(self.errors),
        }


class ReconciliationSweeper:
    def __init__(
        self,
        sessions: AuthorizationSessionManager,
        instruments: InstrumentStateController,
        timers: DualTimerCoordinator,
        closer: SessionCloser,
        outbox: LockRetryOutbox,
        clock: Clock = get_naive_utc_now,
        batch_size: Optional[int] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        self.sessions = sessions
        self.instruments = instruments
        self.timers = timers
        self.closer = closer
        self.outbox = outbox
        self.clock = clock
        self.batch_size = batch_size or Config.SWEEP_BATCH_SIZE
        self.tolerance_seconds = (
            Config.EXPIRY_CLOCK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
        )

    async def run_sweep(self) -> SweepReport:
        report = SweepReport(started_at=self.clock())

        await self._expire_overdue_sessions(report)
        await self._reconcile_stale_hints(report)
        await self._drain_lock_retries(report)
        await self._lock_orphaned_instruments(report)

        report.finished_at = self.clock()
        if report.errors:
            logger.warning(f"⚠️ SWEEP_COMPLETE_WITH_ERRORS: {report.to_dict()}")
        elif report.sessions_expired or report.lock_retries_attempted or report.orphans_locked or report.stale_hints:
            logger.info(f"🧹 SWEEP_COMPLETE: {report.to_dict()}")
        else:
            logger.debug("Sweep complete: nothing to do")
        return report

    async def _expire(self, session_id: str, reason: str, report: SweepReport) -> bool:
        outcome = await self.closer.close(session_id, SessionStatus.EXPIRED, reason=reason)
        if outcome.applied:
            report.sessions_expired += 1
            if outcome.lock_result is not None and not outcome.lock_result.locked:
                report.locks_deferred += 1
        return outcome.applied

    async def _expire_overdue_sessions(self, report: SweepReport) -> None:
        """Primary pass over persisted expiry timestamps"""
        seen: Set[str] = set()
        while True:
            try:
                batch = await asyncio.to_thread(self.sessions.expired_active, self.clock(), self.batch_size)
            except Exception as e:
                logger.error(f"❌ SWEEP_QUERY_FAILED: expired sessions: {e}", exc_info=True)
                report.errors.append(f"expired_active: {e}")
                return

            fresh = [s for s in batch if s.id not in seen]
            if not fresh:
                return

            for session in fresh:
                seen.add(session.id)
                try:
                    await self._expire(session.id, "session_expired", report)
                except Exception as e:
                    logger.error(f"❌ SWEEP_EXPIRE_FAILED: session {session.id}: {e}", exc_info=True)
                    report.errors.append(f"session {session.id}: {e}")

            if len(batch) < self.batch_size:
                return

    async def _reconcile_stale_hints(self, report: SweepReport) -> None:
        """Secondary pass over timer hints whose TTL ran out"""
        try:
            hints = await self.timers.stale_hints()
        except Exception as e:
            logger.warning(f"⚠️ SWEEP_HINTS_UNAVAILABLE: {e}")
            report.errors.append(f"stale_hints: {e}")
            return

        report.stale_hints += len(hints)
        for hint in hints:
            session_id = (hint.payload or {}).get("session_id") or hint.session_id
            try:
                session = await asyncio.to_thread(self.sessions.get, session_id)
                if session is None or not session.is_active:
                    await self.timers.disarm(session_id)
                    report.hints_removed += 1
                elif session.expires_at <= self.clock():
                    await self._expire(session.id, "stale_timer_hint", report)
                else:
                    await self.timers.arm(session)
                    report.hints_rearmed += 1
            except Exception as e:
                logger.error(f"❌ SWEEP_HINT_FAILED: {hint.key}: {e}", exc_info=True)
                report.errors.append(f"hint {hint.key}: {e}")

    async def _drain_lock_retries(self, report: SweepReport) -> None:
        try:
            due = await asyncio.to_thread(self.outbox.due, self.batch_size)
        except Exception as e:
            logger.error(f"❌ SWEEP_QUERY_FAILED: lock retries: {e}", exc_info=True)
            report.errors.append(f"lock_retries: {e}")
            return

        for request in due:
            try:
                instrument = await asyncio.to_thread(self.instruments.get, request.instrument_id)
                if instrument is None:
                    logger.error(f"❌ LOCK_RETRY_ORPHANED: instrument {request.instrument_id} no longer exists")
                    report.errors.append(f"lock retry {request.id}: instrument missing")
                    continue

                if await asyncio.to_thread(self.sessions.active_for_instrument, instrument.id) is not None:
                    # A newer window is open; it will lock the card when it closes
                    await asyncio.to_thread(self.outbox.mark_succeeded, instrument.id)
                    report.lock_retries_superseded += 1
                    logger.info(f"ℹ️ LOCK_RETRY_SUPERSEDED: instrument {instrument.id} has a new active session")
                    continue

                report.lock_retries_attempted += 1
                result = await self.instruments.lock(
                    instrument, reason=f"retry:{request.reason}", session_id=request.session_id
                )
                if result.locked:
                    report.lock_retries_succeeded += 1
            except Exception as e:
                logger.error(f"❌ LOCK_RETRY_FAILED: request {request.id}: {e}", exc_info=True)
                report.errors.append(f"lock retry {request.id}: {e}")

    async def _lock_orphaned_instruments(self, report: SweepReport) -> None:
        """Cards mirrored unlocked with no open window and no pending retry are locked"""
        try:
            pending = await asyncio.to_thread(self.outbox.pending_instrument_ids)
            unlocked = await asyncio.to_thread(self.instruments.unlocked_instruments, self.batch_size)
        except Exception as e:
            logger.error(f"❌ SWEEP_QUERY_FAILED: orphan check: {e}", exc_info=True)
            report.errors.append(f"orphan_check: {e}")
            return

        for instrument in unlocked:
            if instrument.id in pending:
                continue
            try:
                if await asyncio.to_thread(self.sessions.active_for_instrument, instrument.id) is not None:
                    continue
                logger.warning(f"⚠️ ORPHAN_UNLOCK: instrument {instrument.id} unlocked without an active session")
                result = await self.instruments.lock(instrument, reason="orphan_unlock")
                if result.locked:
                    report.orphans_locked += 1
            except Exception as e:
                logger.error(f"❌ ORPHAN_LOCK_FAILED: instrument {instrument.id}: {e}", exc_info=True)
                report.errors.append(f"orphan {instrument.id}: {e}")

    async def expire_session(self, session_id: str) -> bool:
        """
        Push-path entry for expiry notifications.
        Expires the session only if it is active and due within the clock tolerance.
        """
        session = await asyncio.to_thread(self.sessions.get, session_id)
        if session is None or not session.is_active:
            logger.debug(f"Expiry notification for closed or unknown session {session_id}")
            return False

        deadline = self.clock() + timedelta(seconds=self.tolerance_seconds)
        if session.expires_at > deadline:
            logger.warning(
                f"⚠️ EARLY_EXPIRY_NOTIFICATION: session {session_id} expires at {session.expires_at} - leaving to sweep"
            )
            return False

        outcome = await self.closer.close(session_id, SessionStatus.EXPIRED, reason="timer_expired")
        return outcome.applied
