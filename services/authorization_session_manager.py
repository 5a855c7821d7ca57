"""
Authorization Session Manager

Owns the session lifecycle: active -> {completed, cancelled, declined, expired}.
Terminal states are final. Every closer (settlement events, explicit lock,
expiry sweep, expiry notifications) goes through transition(), a conditional
UPDATE that only one caller can win.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from config import Config
from database import session_scope
from models import AuthorizationSession, SessionStatus
from services.instrument_provider import resolve_mcc
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)

MAX_MERCHANT_LENGTH = 100


class ActiveSessionConflictError(Exception):
    """An active session already exists for this user and card"""

    def __init__(self, user_id: str, instrument_id: str, existing_session_id: Optional[str] = None):
        self.user_id = user_id
        self.instrument_id = instrument_id
        self.existing_session_id = existing_session_id
        super().__init__(f"Active authorization session already exists for user {user_id}")


class InvalidAuthorizationRequestError(ValueError):
    """Request parameters outside the accepted ranges"""


class InvalidTransitionError(Exception):
    """Requested transition is not part of the lifecycle"""


@dataclass(frozen=True)
class TransitionOutcome:
    session: Optional[AuthorizationSession]
    applied: bool


class AuthorizationSessionManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Clock = get_naive_utc_now,
        min_minutes: Optional[int] = None,
        max_minutes: Optional[int] = None,
        max_amount: Optional[Decimal] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.min_minutes = Config.MIN_AUTHORIZATION_MINUTES if min_minutes is None else min_minutes
        self.max_minutes = Config.MAX_AUTHORIZATION_MINUTES if max_minutes is None else max_minutes
        self.max_amount = Config.MAX_AUTHORIZATION_AMOUNT if max_amount is None else max_amount

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_amount(self, amount_limit) -> Decimal:
        try:
            amount = Decimal(str(amount_limit))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAuthorizationRequestError(f"Amount limit is not a number: {amount_limit!r}")
        if not amount.is_finite() or amount <= 0:
            raise InvalidAuthorizationRequestError("Amount limit must be positive")
        if amount > self.max_amount:
            raise InvalidAuthorizationRequestError(f"Amount limit cannot exceed {self.max_amount}")
        return amount.quantize(Decimal("0.01"))

    def validate_duration(self, duration_minutes) -> int:
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
            raise InvalidAuthorizationRequestError("Time limit must be a whole number of minutes")
        if not self.min_minutes <= duration_minutes <= self.max_minutes:
            raise InvalidAuthorizationRequestError(
                f"Time limit must be between {self.min_minutes} and {self.max_minutes} minutes"
            )
        return duration_minutes

    def validate_constraints(self, category_constraint: Optional[str], merchant_constraint: Optional[str]) -> None:
        if category_constraint and resolve_mcc(category_constraint) is None:
            raise InvalidAuthorizationRequestError(
                f"Unknown category {category_constraint!r}: use a 4-digit MCC or a known category"
            )
        if merchant_constraint and len(merchant_constraint) > MAX_MERCHANT_LENGTH:
            raise InvalidAuthorizationRequestError(
                f"Merchant name cannot exceed {MAX_MERCHANT_LENGTH} characters"
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[AuthorizationSession]:
        with session_scope(self.session_factory) as db:
            return db.get(AuthorizationSession, session_id)

    def active_for(self, user_id: str) -> Optional[AuthorizationSession]:
        """The user's active and unexpired session, if any"""
        with session_scope(self.session_factory) as db:
            return db.execute(
                select(AuthorizationSession)
                .where(
                    AuthorizationSession.user_id == user_id,
                    AuthorizationSession.status == SessionStatus.ACTIVE.value,
                    AuthorizationSession.expires_at > self.clock(),
                )
                .order_by(AuthorizationSession.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def active_for_instrument(self, instrument_id: str, include_expired: bool = False) -> Optional[AuthorizationSession]:
        with session_scope(self.session_factory) as db:
            query = select(AuthorizationSession).where(
                AuthorizationSession.instrument_id == instrument_id,
                AuthorizationSession.status == SessionStatus.ACTIVE.value,
            )
            if not include_expired:
                query = query.where(AuthorizationSession.expires_at > self.clock())
            return db.execute(
                query.order_by(AuthorizationSession.created_at.desc()).limit(1)
            ).scalar_one_or_none()

    def expired_active(self, now: Optional[datetime] = None, limit: int = 100) -> List[AuthorizationSession]:
        """Active sessions whose expiry has passed, oldest first"""
        cutoff = now or self.clock()
        with session_scope(self.session_factory) as db:
            return list(db.execute(
                select(AuthorizationSession)
                .where(
                    AuthorizationSession.status == SessionStatus.ACTIVE.value,
                    AuthorizationSession.expires_at <= cutoff,
                )
                .order_by(AuthorizationSession.expires_at)
                .limit(limit)
            ).scalars())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        instrument_id: str,
        amount_limit,
        category_constraint: Optional[str] = None,
        merchant_constraint: Optional[str] = None,
        duration_minutes: int = 30,
    ) -> AuthorizationSession:
        """Persist a new active session; raises ActiveSessionConflictError if one exists"""
        amount = self.validate_amount(amount_limit)
        duration = self.validate_duration(duration_minutes)
        self.validate_constraints(category_constraint, merchant_constraint)

        now = self.clock()
        session = AuthorizationSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            instrument_id=instrument_id,
            amount_limit=amount,
            category_constraint=category_constraint,
            merchant_constraint=merchant_constraint,
            status=SessionStatus.ACTIVE.value,
            created_at=now,
            expires_at=now + timedelta(minutes=duration),
            updated_at=now,
        )

        try:
            with session_scope(self.session_factory) as db:
                existing = db.execute(
                    select(AuthorizationSession.id).where(
                        AuthorizationSession.user_id == user_id,
                        AuthorizationSession.instrument_id == instrument_id,
                        AuthorizationSession.status == SessionStatus.ACTIVE.value,
                    ).limit(1)
                ).scalar_one_or_none()
                if existing is None:
                    db.add(session)
        except IntegrityError:
            # Lost a race with a concurrent create; the partial unique index rejected ours
            logger.warning(f"⚠️ SESSION_CONFLICT: concurrent create for user {user_id} rejected by index")
            raise ActiveSessionConflictError(user_id, instrument_id)

        if existing is not None:
            logger.info(f"🚫 SESSION_CONFLICT: user {user_id} already has active session {existing}")
            raise ActiveSessionConflictError(user_id, instrument_id, existing)

        logger.info(
            f"✅ SESSION_CREATED: {session.id} user={user_id} limit={amount} "
            f"category={category_constraint} expires_at={session.expires_at}"
        )
        return session

    def transition(self, session_id: str, target_status: SessionStatus) -> TransitionOutcome:
        """
        Compare-and-set from active to a terminal status.

        Returns applied=True only for the single caller whose update matched.
        Terminal sessions are returned unchanged with applied=False.
        """
        if not isinstance(target_status, SessionStatus) or not target_status.is_terminal:
            raise InvalidTransitionError(f"Cannot transition session to {target_status}")

        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(AuthorizationSession)
                .where(
                    AuthorizationSession.id == session_id,
                    AuthorizationSession.status == SessionStatus.ACTIVE.value,
                )
                .values(status=target_status.value, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            applied = (result.rowcount or 0) == 1

        session = self.get(session_id)
        if session is None:
            logger.warning(f"⚠️ SESSION_TRANSITION: unknown session {session_id}")
            return TransitionOutcome(None, False)

        if applied:
            logger.info(f"🔁 SESSION_TRANSITION: {session_id} active → {target_status.value}")
        else:
            logger.info(
                f"ℹ️ SESSION_TRANSITION_NOOP: {session_id} already {session.status}, ignoring {target_status.value}"
            )
        return TransitionOutcome(session, applied)
