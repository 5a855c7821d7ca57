"""
Card Authorization Service
Inbound operations from the card API: authorize a spending window, lock now,
and read card status / details.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from models import AuthorizationSession, Instrument, SessionStatus
from services.authorization_session_manager import AuthorizationSessionManager
from services.dual_timer_coordinator import DualTimerCoordinator
from services.instrument_provider import InstrumentProviderError, UnlockControls
from services.instrument_state_controller import InstrumentNotFoundError, InstrumentStateController
from services.session_closer import SessionCloser
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)


class AuthorizationWindowClosedError(Exception):
    """The window was closed by another path before the card finished opening"""

    def __init__(self, session_id: str, status: Optional[str]):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Authorization session {session_id} was closed ({status}) before the card opened")


@dataclass(frozen=True)
class AuthorizationGrant:
    session_id: str
    instrument_id: str
    amount_limit: Decimal
    category_constraint: Optional[str]
    merchant_constraint: Optional[str]
    expires_at: datetime
    timer_armed: bool


@dataclass(frozen=True)
class LockConfirmation:
    instrument_id: str
    locked: bool
    cancelled_session_id: Optional[str] = None


@dataclass(frozen=True)
class CardStatus:
    instrument_id: str
    instrument_status: str
    active_session: Optional[AuthorizationSession]


@dataclass(frozen=True)
class CardDetails:
    instrument_id: str
    instrument_status: str
    provider_state: str
    masked_number: Optional[str]
    exp_month: Optional[str]
    exp_year: Optional[str]


class CardAuthorizationService:
    def __init__(
        self,
        sessions: AuthorizationSessionManager,
        instruments: InstrumentStateController,
        timers: DualTimerCoordinator,
        closer: SessionCloser,
        clock: Clock = get_naive_utc_now,
    ):
        self.sessions = sessions
        self.instruments = instruments
        self.timers = timers
        self.closer = closer
        self.clock = clock

    async def _require_instrument(self, user_id: str) -> Instrument:
        instrument = await asyncio.to_thread(self.instruments.for_user, user_id)
        if instrument is None:
            raise InstrumentNotFoundError(f"No card on record for user {user_id}")
        return instrument

    async def authorize(
        self,
        user_id: str,
        amount_limit,
        category_constraint: Optional[str] = None,
        duration_minutes: int = 30,
        merchant_constraint: Optional[str] = None,
    ) -> AuthorizationGrant:
        """
        Open the card for a bounded window.

        Raises:
            InvalidAuthorizationRequestError: bad amount, duration or constraints
            InstrumentNotFoundError: user has no card
            ActiveSessionConflictError: a window is already open (nothing is changed)
            InstrumentProviderError: provider refused to open the card (session declined, card re-locked)
            AuthorizationWindowClosedError: the window was closed while the card was being opened (card re-locked)
        """
        self.sessions.validate_amount(amount_limit)
        self.sessions.validate_duration(duration_minutes)
        self.sessions.validate_constraints(category_constraint, merchant_constraint)

        instrument = await self._require_instrument(user_id)

        # A window whose expiry passed but was not swept yet must not block the new one
        lingering = await asyncio.to_thread(self.sessions.active_for_instrument, instrument.id, True)
        if lingering is not None and lingering.expires_at <= self.clock():
            logger.info(f"🧹 STALE_SESSION: closing expired session {lingering.id} before new authorization")
            await self.closer.close(lingering.id, SessionStatus.EXPIRED, reason="expired_before_new_authorization")

        session = await asyncio.to_thread(
            self.sessions.create,
            user_id=user_id,
            instrument_id=instrument.id,
            amount_limit=amount_limit,
            category_constraint=category_constraint,
            merchant_constraint=merchant_constraint,
            duration_minutes=duration_minutes,
        )

        controls = UnlockControls(
            spend_limit=Decimal(session.amount_limit),
            category=category_constraint,
            merchant=merchant_constraint,
        )
        try:
            await self.instruments.unlock(instrument, controls)
        except InstrumentProviderError as e:
            logger.error(f"❌ UNLOCK_FAILED: session {session.id} declined, re-locking instrument {instrument.id}: {e}")
            await self.closer.close(session.id, SessionStatus.DECLINED, reason="unlock_failed")
            raise

        timer_armed = await self.timers.arm(session)

        # A lock, decline or expiry that won the transition while unfreeze was in flight
        # already froze the card; the late unfreeze reopened it, so freeze again
        current = await asyncio.to_thread(self.sessions.get, session.id)
        if current is None or not current.is_active:
            closed_status = current.status if current is not None else None
            logger.warning(
                f"⚠️ SESSION_CLOSED_DURING_UNLOCK: session {session.id} is {closed_status}, re-locking instrument {instrument.id}"
            )
            await self.instruments.lock(instrument, reason="closed_during_unlock", session_id=session.id)
            await self.timers.disarm(session.id)
            raise AuthorizationWindowClosedError(session.id, closed_status)

        logger.info(f"🎫 AUTHORIZATION_GRANTED: session {session.id} for user {user_id} until {session.expires_at}")
        return AuthorizationGrant(
            session_id=session.id,
            instrument_id=instrument.id,
            amount_limit=Decimal(session.amount_limit),
            category_constraint=session.category_constraint,
            merchant_constraint=session.merchant_constraint,
            expires_at=session.expires_at,
            timer_armed=timer_armed,
        )

    async def lock(self, user_id: str) -> LockConfirmation:
        """Cancel any open window and lock the card; raises InstrumentProviderError if the provider failed"""
        instrument = await self._require_instrument(user_id)

        cancelled_session_id = None
        session = await asyncio.to_thread(self.sessions.active_for_instrument, instrument.id, True)
        if session is not None:
            target = SessionStatus.EXPIRED if session.expires_at <= self.clock() else SessionStatus.CANCELLED
            outcome = await asyncio.to_thread(self.sessions.transition, session.id, target)
            if outcome.applied:
                cancelled_session_id = session.id
                await self.timers.disarm(session.id)

        result = await self.instruments.lock(instrument, reason="user_lock", session_id=cancelled_session_id)
        if not result.locked:
            raise InstrumentProviderError("freeze", result.error or "lock not confirmed", retryable=True)

        return LockConfirmation(
            instrument_id=instrument.id,
            locked=True,
            cancelled_session_id=cancelled_session_id,
        )

    async def status(self, user_id: str) -> CardStatus:
        instrument = await self._require_instrument(user_id)
        active = await asyncio.to_thread(self.sessions.active_for_instrument, instrument.id)
        return CardStatus(
            instrument_id=instrument.id,
            instrument_status=instrument.status,
            active_session=active,
        )

    async def details(self, user_id: str) -> CardDetails:
        instrument = await self._require_instrument(user_id)
        card = await self.instruments.refresh_mirror(instrument)
        return CardDetails(
            instrument_id=instrument.id,
            instrument_status=instrument.status,
            provider_state=card.state,
            masked_number=card.masked_number,
            exp_month=card.exp_month,
            exp_year=card.exp_year,
        )
