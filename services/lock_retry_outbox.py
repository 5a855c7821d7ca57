"""
Durable outbox for lock commands the provider did not confirm.
One pending request per instrument; retried by the reconciliation sweep with
exponential backoff until the provider confirms. Requests are never abandoned.
"""

import logging
from datetime import timedelta
from typing import List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from config import Config
from database import session_scope
from models import LockRetryRequest, LockRetryStatus
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)


class LockRetryOutbox:
    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Clock = get_naive_utc_now,
        base_delay_seconds: Optional[int] = None,
        max_delay_seconds: Optional[int] = None,
        alert_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.base_delay_seconds = (
            Config.LOCK_RETRY_BASE_DELAY_SECONDS if base_delay_seconds is None else base_delay_seconds
        )
        self.max_delay_seconds = Config.LOCK_RETRY_MAX_DELAY_SECONDS if max_delay_seconds is None else max_delay_seconds
        self.alert_attempts = Config.LOCK_RETRY_ALERT_ATTEMPTS if alert_attempts is None else alert_attempts

    def backoff_delay(self, attempts: int) -> int:
        """Seconds to wait after the given number of failed attempts"""
        exponent = max(0, attempts - 1)
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** exponent))

    def record_failure(
        self,
        instrument_id: str,
        reason: str,
        error: str,
        session_id: Optional[str] = None,
    ) -> LockRetryRequest:
        """
        Record a failed lock attempt.

        The first failure creates a pending request due after the base delay;
        later failures bump attempts and push next_attempt_at out exponentially.
        """
        now = self.clock()
        with session_scope(self.session_factory) as db:
            request = db.execute(
                select(LockRetryRequest).where(
                    LockRetryRequest.instrument_id == instrument_id,
                    LockRetryRequest.status == LockRetryStatus.PENDING.value,
                ).order_by(LockRetryRequest.id).limit(1)
            ).scalar_one_or_none()

            if request is None:
                request = LockRetryRequest(
                    instrument_id=instrument_id,
                    session_id=session_id,
                    reason=reason,
                    status=LockRetryStatus.PENDING.value,
                    attempts=1,
                    last_error=error,
                    next_attempt_at=now + timedelta(seconds=self.backoff_delay(1)),
                    created_at=now,
                    updated_at=now,
                )
                db.add(request)
                db.flush()
                logger.warning(f"📮 LOCK_RETRY_ENQUEUED: instrument {instrument_id} ({reason}): {error}")
                return request

            request.attempts += 1
            request.last_error = error
            request.next_attempt_at = now + timedelta(seconds=self.backoff_delay(request.attempts))
            request.updated_at = now
            if session_id and not request.session_id:
                request.session_id = session_id

            if request.attempts > self.alert_attempts:
                logger.critical(
                    f"🚨 LOCK_RETRY_ALERT: instrument {instrument_id} still unlocked after "
                    f"{request.attempts} lock attempts - last error: {error}"
                )
            else:
                logger.warning(
                    f"🔁 LOCK_RETRY_SCHEDULED: instrument {instrument_id} attempt {request.attempts}, "
                    f"next at {request.next_attempt_at}"
                )
            return request

    def mark_succeeded(self, instrument_id: str) -> int:
        """Close every pending request for the instrument; returns how many were closed"""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(LockRetryRequest)
                .where(
                    LockRetryRequest.instrument_id == instrument_id,
                    LockRetryRequest.status == LockRetryStatus.PENDING.value,
                )
                .values(status=LockRetryStatus.SUCCEEDED.value, updated_at=now)
            )
            closed = result.rowcount or 0
        if closed:
            logger.info(f"✅ LOCK_RETRY_RESOLVED: instrument {instrument_id} ({closed} pending request(s) closed)")
        return closed

    def due(self, limit: int = 100) -> List[LockRetryRequest]:
        now = self.clock()
        with session_scope(self.session_factory) as db:
            return list(db.execute(
                select(LockRetryRequest)
                .where(
                    LockRetryRequest.status == LockRetryStatus.PENDING.value,
                    LockRetryRequest.next_attempt_at <= now,
                )
                .order_by(LockRetryRequest.next_attempt_at)
                .limit(limit)
            ).scalars())

    def pending_for(self, instrument_id: str) -> Optional[LockRetryRequest]:
        with session_scope(self.session_factory) as db:
            return db.execute(
                select(LockRetryRequest).where(
                    LockRetryRequest.instrument_id == instrument_id,
                    LockRetryRequest.status == LockRetryStatus.PENDING.value,
                ).limit(1)
            ).scalar_one_or_none()

    def pending_instrument_ids(self) -> Set[str]:
        with session_scope(self.session_factory) as db:
            return set(db.execute(
                select(LockRetryRequest.instrument_id).where(
                    LockRetryRequest.status == LockRetryStatus.PENDING.value
                )
            ).scalars())
