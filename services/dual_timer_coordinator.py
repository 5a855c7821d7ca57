"""
Dual-Timer Coordinator

Every session has two expiry signals:
1. The persisted expires_at column (authoritative, read by the reconciliation sweep)
2. An ephemeral Redis key with a TTL (a latency hint; may be evicted or never fire)

This module owns the second one. Both paths end in the same session transition.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import Config
from models import AuthorizationSession
from services.ephemeral_timer_store import TimerStore, TTL_KEY_MISSING
from utils.datetime_helpers import Clock, get_naive_utc_now, seconds_until

logger = logging.getLogger(__name__)

LISTENER_RECONNECT_DELAY_SECONDS = 5


@dataclass(frozen=True)
class StaleHint:
    """A timer key whose TTL has run out (or was never set) but still exists"""
    key: str
    session_id: str
    ttl: int
    payload: Optional[Dict[str, Any]]


class DualTimerCoordinator:
    """Arms, disarms and inspects the ephemeral expiry hints"""

    def __init__(self, store: TimerStore, clock: Clock = get_naive_utc_now, key_prefix: Optional[str] = None):
        self.store = store
        self.clock = clock
        self.key_prefix = key_prefix or Config.TIMER_KEY_PREFIX

    def key_for(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    def session_id_from_key(self, key: str) -> str:
        return key[len(self.key_prefix):] if key.startswith(self.key_prefix) else key

    async def arm(self, session: AuthorizationSession) -> bool:
        """Set the hint with the remaining session duration as TTL"""
        ttl = max(1, seconds_until(session.expires_at, self.clock()))
        payload = {
            "session_id": session.id,
            "instrument_id": session.instrument_id,
            "user_id": session.user_id,
        }
        try:
            await self.store.set_with_ttl(self.key_for(session.id), ttl, payload)
            logger.info(f"⏰ TIMER_ARMED: session {session.id} hint expires in {ttl}s")
            return True
        except Exception as e:
            logger.warning(f"⚠️ TIMER_ARM_FAILED: session {session.id}: {e} - sweep will cover expiry")
            return False

    async def disarm(self, session_id: str) -> bool:
        """Delete the hint; already absent is fine"""
        try:
            removed = await self.store.delete(self.key_for(session_id))
            if removed:
                logger.debug(f"Timer hint removed for session {session_id}")
            return True
        except Exception as e:
            logger.warning(f"⚠️ TIMER_DISARM_FAILED: session {session_id}: {e}")
            return False

    async def stale_hints(self) -> List[StaleHint]:
        """Hints with TTL <= 0; keys that vanished mid-scan are skipped"""
        stale: List[StaleHint] = []
        for key in await self.store.list_keys_by_prefix(self.key_prefix):
            ttl = await self.store.time_to_live(key)
            if ttl == TTL_KEY_MISSING or ttl > 0:
                continue
            payload = await self.store.get(key)
            stale.append(StaleHint(key=key, session_id=self.session_id_from_key(key), ttl=ttl, payload=payload))
        if stale:
            logger.info(f"🔎 STALE_HINTS: {len(stale)} timer keys without a live TTL")
        return stale

    async def listen_for_expiry(self, on_expired: Callable[[str], Awaitable[Any]]) -> None:
        """Push path: run until cancelled, resubscribing after store errors"""
        while True:
            try:
                async for key in self.store.subscribe_expired(self.key_prefix):
                    session_id = self.session_id_from_key(key)
                    logger.info(f"⏰ TIMER_FIRED: hint expired for session {session_id}")
                    try:
                        await on_expired(session_id)
                    except Exception as e:
                        logger.error(f"❌ TIMER_CALLBACK_FAILED: session {session_id}: {e}", exc_info=True)
                # Subscription ended without error (store closed)
                return
            except asyncio.CancelledError:
                logger.info("👂 Expiry listener stopped")
                raise
            except Exception as e:
                logger.warning(f"⚠️ EXPIRY_LISTENER: {e} - reconnecting in {LISTENER_RECONNECT_DELAY_SECONDS}s")
                await asyncio.sleep(LISTENER_RECONNECT_DELAY_SECONDS)
