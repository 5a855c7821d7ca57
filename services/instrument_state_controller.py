"""
Instrument State Controller
Issues lock/unlock commands to the card provider and keeps the local mirror honest:
the mirror only ever records the last *confirmed* provider command.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from database import session_scope
from models import Instrument, InstrumentStatus
from services.instrument_provider import (
    InstrumentProvider,
    InstrumentProviderError,
    ProviderCardDetails,
    UnlockControls,
)
from services.lock_retry_outbox import LockRetryOutbox
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)


class InstrumentNotFoundError(Exception):
    """No card on record for the user or provider reference"""


@dataclass(frozen=True)
class LockResult:
    instrument_id: str
    locked: bool
    error: Optional[str] = None


class InstrumentStateController:
    def __init__(
        self,
        session_factory: sessionmaker,
        provider: InstrumentProvider,
        outbox: LockRetryOutbox,
        clock: Clock = get_naive_utc_now,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.outbox = outbox
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, instrument_id: str) -> Optional[Instrument]:
        with session_scope(self.session_factory) as db:
            return db.get(Instrument, instrument_id)

    def for_user(self, user_id: str) -> Optional[Instrument]:
        with session_scope(self.session_factory) as db:
            return db.execute(
                select(Instrument).where(Instrument.user_id == user_id).order_by(Instrument.created_at).limit(1)
            ).scalar_one_or_none()

    def by_provider_ref(self, provider_ref: str) -> Optional[Instrument]:
        with session_scope(self.session_factory) as db:
            return db.execute(
                select(Instrument).where(Instrument.provider_ref == provider_ref)
            ).scalar_one_or_none()

    def unlocked_instruments(self, limit: int = 100):
        with session_scope(self.session_factory) as db:
            return list(db.execute(
                select(Instrument).where(Instrument.status == InstrumentStatus.UNLOCKED.value).limit(limit)
            ).scalars())

    def register(self, user_id: str, provider_ref: str) -> Instrument:
        """Create the local mirror for a card already provisioned at the provider (starts locked)"""
        now = self.clock()
        instrument = Instrument(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider_ref=provider_ref,
            status=InstrumentStatus.LOCKED.value,
            created_at=now,
            updated_at=now,
        )
        with session_scope(self.session_factory) as db:
            db.add(instrument)
        logger.info(f"💳 INSTRUMENT_REGISTERED: {instrument.id} for user {user_id} (ref={provider_ref})")
        return instrument

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _set_mirror(self, instrument_id: str, status: InstrumentStatus) -> None:
        with session_scope(self.session_factory) as db:
            db.execute(
                update(Instrument)
                .where(Instrument.id == instrument_id)
                .values(status=status.value, updated_at=self.clock())
            )

    async def unlock(self, instrument: Instrument, controls: UnlockControls) -> None:
        """Open the card under the given controls; raises InstrumentProviderError on failure"""
        await self.provider.unfreeze(instrument.provider_ref, controls)
        await asyncio.to_thread(self._set_mirror, instrument.id, InstrumentStatus.UNLOCKED)
        instrument.status = InstrumentStatus.UNLOCKED.value
        logger.info(f"🔓 INSTRUMENT_UNLOCKED: {instrument.id} (limit={controls.spend_limit})")

    async def lock(self, instrument: Instrument, reason: str, session_id: Optional[str] = None) -> LockResult:
        """
        Freeze the card. Never raises for provider failures: the failure is
        written to the retry outbox and reported in the result.
        """
        try:
            await self.provider.freeze(instrument.provider_ref)
        except InstrumentProviderError as e:
            logger.error(f"❌ LOCK_FAILED: instrument {instrument.id} ({reason}): {e}")
            await asyncio.to_thread(self.outbox.record_failure, instrument.id, reason, str(e), session_id)
            return LockResult(instrument_id=instrument.id, locked=False, error=str(e))

        await asyncio.to_thread(self._set_mirror, instrument.id, InstrumentStatus.LOCKED)
        instrument.status = InstrumentStatus.LOCKED.value
        await asyncio.to_thread(self.outbox.mark_succeeded, instrument.id)
        logger.info(f"🔒 INSTRUMENT_LOCKED: {instrument.id} ({reason})")
        return LockResult(instrument_id=instrument.id, locked=True)

    async def retrieve(self, instrument: Instrument) -> ProviderCardDetails:
        return await self.provider.retrieve(instrument.provider_ref)

    async def refresh_mirror(self, instrument: Instrument) -> ProviderCardDetails:
        """Re-sync the mirror with what the provider reports"""
        details = await self.retrieve(instrument)
        status = InstrumentStatus.LOCKED if details.is_locked else InstrumentStatus.UNLOCKED
        if instrument.status != status.value:
            logger.warning(
                f"⚠️ MIRROR_DRIFT: instrument {instrument.id} mirrored {instrument.status}, provider reports {details.state}"
            )
        await asyncio.to_thread(self._set_mirror, instrument.id, status)
        instrument.status = status.value
        return details
