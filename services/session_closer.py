"""Single path for closing a session: transition, then lock and disarm only if the transition applied."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from models import AuthorizationSession, SessionStatus
from services.authorization_session_manager import AuthorizationSessionManager
from services.dual_timer_coordinator import DualTimerCoordinator
from services.instrument_state_controller import InstrumentStateController, LockResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CloseOutcome:
    session: Optional[AuthorizationSession]
    applied: bool
    lock_result: Optional[LockResult] = None


class SessionCloser:
    def __init__(
        self,
        sessions: AuthorizationSessionManager,
        instruments: InstrumentStateController,
        timers: DualTimerCoordinator,
    ):
        self.sessions = sessions
        self.instruments = instruments
        self.timers = timers

    async def close(self, session_id: str, target_status: SessionStatus, reason: str) -> CloseOutcome:
        outcome = await asyncio.to_thread(self.sessions.transition, session_id, target_status)
        if not outcome.applied:
            return CloseOutcome(outcome.session, False)

        session = outcome.session
        lock_result = None
        instrument = await asyncio.to_thread(self.instruments.get, session.instrument_id)
        if instrument is None:
            logger.error(f"❌ SESSION_CLOSE: instrument {session.instrument_id} for session {session_id} not found")
        else:
            lock_result = await self.instruments.lock(instrument, reason=reason, session_id=session_id)

        await self.timers.disarm(session_id)
        logger.info(
            f"🏁 SESSION_CLOSED: {session_id} → {target_status.value} ({reason}) "
            f"locked={lock_result.locked if lock_result else False}"
        )
        return CloseOutcome(session, True, lock_result)
