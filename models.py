"""
FinLock Card Control - Database Schema
======================================

Schema for the time-bounded card authorization lifecycle:
- Authorization sessions (the temporary "unlocked" window)
- Local mirror of the card (instrument) state at the issuing provider
- Card transactions keyed by provider transaction id for replay safety
- Per-category spend ledger
- Durable lock retry outbox for failed re-lock commands

All timestamps are naive UTC (see utils/datetime_helpers.py).
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, text
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class SessionStatus(Enum):
    """Authorization session lifecycle states"""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


TERMINAL_SESSION_STATUSES = frozenset(s for s in SessionStatus if s.is_terminal)


class InstrumentStatus(Enum):
    """Mirror of the last successful provider command"""
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class CardTransactionStatus(Enum):
    PENDING = "pending"
    SETTLED = "settled"
    DECLINED = "declined"


class LockRetryStatus(Enum):
    """Outbox status for lock commands that failed at the provider"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class Instrument(Base):
    """Local mirror of a provider-issued virtual card"""
    __tablename__ = 'instruments'

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    provider_ref = Column(String(100), nullable=False, unique=True)  # Lithic card token
    status = Column(String(20), default=InstrumentStatus.LOCKED.value, nullable=False)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    sessions = relationship("AuthorizationSession", back_populates="instrument")

    def __repr__(self):
        return f"<Instrument(id={self.id}, user_id={self.user_id}, status={self.status})>"


class AuthorizationSession(Base):
    """Time-bounded grant permitting the card to be used under stated constraints"""
    __tablename__ = 'authorization_sessions'

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    instrument_id = Column(String(36), ForeignKey('instruments.id'), nullable=False, index=True)

    # Spending constraints
    amount_limit = Column(Numeric(18, 2), nullable=False)
    category_constraint = Column(String(50), nullable=True)
    merchant_constraint = Column(String(100), nullable=True)

    status = Column(String(20), default=SessionStatus.ACTIVE.value, nullable=False)

    # Timestamps
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    instrument = relationship("Instrument", back_populates="sessions")

    __table_args__ = (
        CheckConstraint('expires_at > created_at', name='ck_authorization_sessions_expiry_after_creation'),
        # At most one active session per (user, card)
        Index(
            'uq_authorization_sessions_one_active',
            'user_id', 'instrument_id',
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index('ix_authorization_sessions_status_expires', 'status', 'expires_at'),
    )

    @property
    def session_status(self) -> SessionStatus:
        return SessionStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE.value

    def __repr__(self):
        return f"<AuthorizationSession(id={self.id}, status={self.status}, expires_at={self.expires_at})>"


class CardTransaction(Base):
    """Card transaction reported by the provider, keyed by provider transaction id"""
    __tablename__ = 'card_transactions'

    id = Column(String(36), primary_key=True)
    provider_transaction_id = Column(String(100), nullable=False, unique=True)
    session_id = Column(String(36), ForeignKey('authorization_sessions.id'), nullable=True, index=True)
    instrument_id = Column(String(36), ForeignKey('instruments.id'), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    amount = Column(Numeric(18, 2), nullable=False)
    category = Column(String(50), nullable=False)
    merchant_name = Column(String(255), nullable=True)
    merchant_mcc = Column(String(10), nullable=True)
    status = Column(String(20), default=CardTransactionStatus.PENDING.value, nullable=False)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_card_transactions_user_status', 'user_id', 'status'),
    )

    def __repr__(self):
        return f"<CardTransaction(provider_id={self.provider_transaction_id}, status={self.status}, amount={self.amount})>"


class SpendLedgerEntry(Base):
    """Per-category running total of settled transaction amounts"""
    __tablename__ = 'spend_ledger'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    category = Column(String(50), nullable=False)
    spent_amount = Column(Numeric(18, 2), nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'category', name='uq_spend_ledger_user_category'),
    )

    def __repr__(self):
        return f"<SpendLedgerEntry(user_id={self.user_id}, category={self.category}, spent={self.spent_amount})>"


class LockRetryRequest(Base):
    """Outbox row for a lock command that the provider has not yet confirmed"""
    __tablename__ = 'lock_retry_requests'

    id = Column(Integer, primary_key=True, autoincrement=True)
    instrument_id = Column(String(36), ForeignKey('instruments.id'), nullable=False, index=True)
    session_id = Column(String(36), nullable=True)
    reason = Column(String(50), nullable=False)
    status = Column(String(20), default=LockRetryStatus.PENDING.value, nullable=False)

    # Error handling
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime, nullable=False)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('ix_lock_retry_requests_status_next', 'status', 'next_attempt_at'),
    )

    def __repr__(self):
        return f"<LockRetryRequest(instrument_id={self.instrument_id}, status={self.status}, attempts={self.attempts})>"
