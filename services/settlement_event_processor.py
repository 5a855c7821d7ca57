"""
Settlement Event Processor

Turns provider card events into session closures, ledger updates and card locks.

Flow:
    raw body -> parse_provider_event() -> ProviderEvent (classified EventKind)
             -> EVENT_HANDLERS[kind](event, context) -> EventPlan (commands, no I/O)
             -> SettlementEventProcessor executes the commands in order

Guard commands (settle / decline a transaction) are compare-and-set updates on the
transaction row and carry the ledger delta. If a guard does not apply the event is a
duplicate: the ledger is left alone, but the closing commands after it still run.
They are idempotent (terminal sessions do not transition twice), so a redelivery after
a failed close still completes the session and re-locks the card.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import orjson
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import session_scope
from models import (
    AuthorizationSession,
    CardTransaction,
    CardTransactionStatus,
    Instrument,
    SessionStatus,
)
from services.authorization_session_manager import AuthorizationSessionManager
from services.instrument_state_controller import InstrumentStateController
from services.session_closer import SessionCloser
from services.spend_ledger_service import SpendLedgerService, UNCATEGORIZED
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)


class MalformedEventError(ValueError):
    """Event body could not be understood; acknowledged without mutation"""


class EventKind(Enum):
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_SETTLED = "transaction_settled"
    AUTHORIZATION_DECLINED = "authorization_declined"
    IGNORED = "ignored"


# (event_type, status) -> kind; status None means the payload carried no status
_CLASSIFICATION: Dict[Tuple[str, Optional[str]], EventKind] = {
    ("transaction.created", None): EventKind.TRANSACTION_CREATED,
    ("transaction.created", "PENDING"): EventKind.TRANSACTION_CREATED,
    ("transaction.created", "SETTLED"): EventKind.TRANSACTION_SETTLED,
    ("transaction.created", "DECLINED"): EventKind.AUTHORIZATION_DECLINED,
    ("transaction.updated", "PENDING"): EventKind.TRANSACTION_CREATED,
    ("transaction.updated", "SETTLED"): EventKind.TRANSACTION_SETTLED,
    ("transaction.updated", "DECLINED"): EventKind.AUTHORIZATION_DECLINED,
    ("authorization.updated", "DECLINED"): EventKind.AUTHORIZATION_DECLINED,
}


@dataclass(frozen=True)
class ProviderEvent:
    event_type: str
    kind: EventKind
    card_ref: Optional[str] = None
    transaction_token: Optional[str] = None
    amount: Decimal = Decimal("0")
    status: Optional[str] = None
    merchant_mcc: Optional[str] = None
    merchant_name: Optional[str] = None


def classify_event(event_type: str, status: Optional[str]) -> EventKind:
    return _CLASSIFICATION.get((event_type, status.upper() if status else None), EventKind.IGNORED)


def _minor_to_major(raw_amount: Any) -> Decimal:
    if isinstance(raw_amount, bool):
        raise MalformedEventError("amount must be numeric")
    try:
        amount = Decimal(str(raw_amount))
    except (InvalidOperation, ValueError):
        raise MalformedEventError(f"amount is not numeric: {raw_amount!r}")
    if not amount.is_finite():
        raise MalformedEventError("amount must be finite")
    return (abs(amount) / Decimal(100)).quantize(Decimal("0.01"))


def parse_provider_event(body: Union[bytes, str, Dict[str, Any]]) -> ProviderEvent:
    """Parse and classify a provider webhook body; raises MalformedEventError"""
    if isinstance(body, (bytes, str)):
        try:
            data = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise MalformedEventError(f"invalid JSON: {e}")
    else:
        data = body

    if not isinstance(data, dict):
        raise MalformedEventError("event body must be an object")

    event_type = data.get("event_type")
    payload = data.get("payload")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("missing event_type")
    if not isinstance(payload, dict):
        raise MalformedEventError("missing payload")

    status = payload.get("status")
    if status is not None and not isinstance(status, str):
        raise MalformedEventError("status must be a string")

    kind = classify_event(event_type, status)
    if kind is EventKind.IGNORED:
        return ProviderEvent(event_type=event_type, kind=kind, status=status)

    card_ref = payload.get("card_token")
    if not isinstance(card_ref, str) or not card_ref:
        raise MalformedEventError("missing card_token")

    token = payload.get("token")
    if token is not None and not isinstance(token, str):
        raise MalformedEventError("token must be a string")
    if kind is not EventKind.AUTHORIZATION_DECLINED and not token:
        raise MalformedEventError("missing transaction token")

    raw_amount = payload.get("amount")
    if raw_amount is None:
        if kind is not EventKind.AUTHORIZATION_DECLINED:
            raise MalformedEventError("missing amount")
        raw_amount = 0

    merchant = payload.get("merchant") or {}
    if not isinstance(merchant, dict):
        raise MalformedEventError("merchant must be an object")

    mcc = merchant.get("mcc")
    descriptor = merchant.get("descriptor")
    return ProviderEvent(
        event_type=event_type,
        kind=kind,
        card_ref=card_ref,
        transaction_token=token or None,
        amount=_minor_to_major(raw_amount),
        status=status.upper() if status else None,
        merchant_mcc=str(mcc) if mcc else None,
        merchant_name=str(descriptor) if descriptor else None,
    )


# ============================================================================
# PLANS AND COMMANDS
# ============================================================================

@dataclass(frozen=True)
class EventContext:
    """State read before planning; handlers never touch stores"""
    instrument: Optional[Instrument]
    owning_session: Optional[AuthorizationSession]
    transaction: Optional[CardTransaction]


@dataclass(frozen=True)
class RecordPendingTransaction:
    event: ProviderEvent
    instrument_id: str
    user_id: str
    session_id: Optional[str]
    category: str
    is_guard = False


@dataclass(frozen=True)
class SettleTransaction:
    event: ProviderEvent
    instrument_id: str
    user_id: str
    session_id: Optional[str]
    category: str
    is_guard = True


@dataclass(frozen=True)
class DeclineTransaction:
    event: ProviderEvent
    instrument_id: str
    user_id: str
    session_id: Optional[str]
    category: str
    is_guard = True


@dataclass(frozen=True)
class CloseSession:
    session_id: str
    target_status: SessionStatus
    reason: str
    is_guard = False


@dataclass(frozen=True)
class LockInstrument:
    instrument_id: str
    reason: str
    is_guard = False


Command = Union[RecordPendingTransaction, SettleTransaction, DeclineTransaction, CloseSession, LockInstrument]


@dataclass(frozen=True)
class EventPlan:
    commands: Tuple[Command, ...] = ()
    note: Optional[str] = None


@dataclass
class ProcessingResult:
    kind: EventKind
    executed: List[str] = field(default_factory=list)
    duplicate: bool = False
    note: Optional[str] = None


def ledger_category(event: ProviderEvent, session: Optional[AuthorizationSession]) -> str:
    if session is not None and session.category_constraint:
        return session.category_constraint
    return event.merchant_mcc or UNCATEGORIZED


def _transaction_command(command_type, event: ProviderEvent, context: EventContext):
    session = context.owning_session
    return command_type(
        event=event,
        instrument_id=context.instrument.id,
        user_id=context.instrument.user_id,
        session_id=session.id if session else None,
        category=ledger_category(event, session),
    )


def _closing_commands(context: EventContext, target: SessionStatus, reason: str) -> Tuple[Command, ...]:
    if context.owning_session is not None:
        return (CloseSession(context.owning_session.id, target, reason),)
    return (LockInstrument(context.instrument.id, reason),)


def plan_transaction_created(event: ProviderEvent, context: EventContext) -> EventPlan:
    if context.instrument is None:
        return EventPlan(note="unknown_instrument")
    if context.transaction is not None:
        return EventPlan(note="duplicate_transaction")
    return EventPlan((_transaction_command(RecordPendingTransaction, event, context),))


def plan_transaction_settled(event: ProviderEvent, context: EventContext) -> EventPlan:
    if context.instrument is None:
        return EventPlan(note="unknown_instrument")
    return EventPlan(
        (_transaction_command(SettleTransaction, event, context),)
        + _closing_commands(context, SessionStatus.COMPLETED, "transaction_settled")
    )


def plan_authorization_declined(event: ProviderEvent, context: EventContext) -> EventPlan:
    if context.instrument is None:
        return EventPlan(note="unknown_instrument")
    guard: Tuple[Command, ...] = ()
    if event.transaction_token:
        guard = (_transaction_command(DeclineTransaction, event, context),)
    return EventPlan(guard + _closing_commands(context, SessionStatus.DECLINED, "authorization_declined"))


def plan_ignored(event: ProviderEvent, context: EventContext) -> EventPlan:
    return EventPlan(note="ignored_event_type")


EVENT_HANDLERS: Dict[EventKind, Callable[[ProviderEvent, EventContext], EventPlan]] = {
    EventKind.TRANSACTION_CREATED: plan_transaction_created,
    EventKind.TRANSACTION_SETTLED: plan_transaction_settled,
    EventKind.AUTHORIZATION_DECLINED: plan_authorization_declined,
    EventKind.IGNORED: plan_ignored,
}


# ============================================================================
# EXECUTOR
# ============================================================================

class SettlementEventProcessor:
    def __init__(
        self,
        session_factory: sessionmaker,
        sessions: AuthorizationSessionManager,
        instruments: InstrumentStateController,
        closer: SessionCloser,
        ledger: SpendLedgerService,
        clock: Clock = get_naive_utc_now,
    ):
        self.session_factory = session_factory
        self.sessions = sessions
        self.instruments = instruments
        self.closer = closer
        self.ledger = ledger
        self.clock = clock

    def _find_transaction(self, token: Optional[str]) -> Optional[CardTransaction]:
        if not token:
            return None
        with session_scope(self.session_factory) as db:
            return db.execute(
                select(CardTransaction).where(CardTransaction.provider_transaction_id == token)
            ).scalar_one_or_none()

    def load_context(self, event: ProviderEvent) -> EventContext:
        if event.kind is EventKind.IGNORED or not event.card_ref:
            return EventContext(None, None, None)

        instrument = self.instruments.by_provider_ref(event.card_ref)
        if instrument is None:
            return EventContext(None, None, None)

        transaction = self._find_transaction(event.transaction_token)
        if transaction is not None:
            # Provenance is fixed when the transaction is first recorded; no session means no owner
            owning_session = self.sessions.get(transaction.session_id) if transaction.session_id else None
        else:
            owning_session = self.sessions.active_for_instrument(instrument.id, include_expired=True)
        return EventContext(instrument, owning_session, transaction)

    async def process(self, event: Union[ProviderEvent, bytes, str, Dict[str, Any]]) -> ProcessingResult:
        if not isinstance(event, ProviderEvent):
            event = parse_provider_event(event)

        context = await asyncio.to_thread(self.load_context, event)
        plan = EVENT_HANDLERS[event.kind](event, context)
        result = ProcessingResult(kind=event.kind, note=plan.note)

        if plan.note == "unknown_instrument":
            logger.warning(f"⚠️ EVENT_UNKNOWN_INSTRUMENT: {event.event_type} for card {event.card_ref} - acknowledged")
        elif not plan.commands:
            logger.info(f"ℹ️ EVENT_NO_OP: {event.event_type} ({plan.note})")

        for command in plan.commands:
            applied = await self._execute(command)
            result.executed.append(type(command).__name__)
            if command.is_guard and not applied:
                result.duplicate = True
                result.note = "already_processed"
                logger.info(
                    f"ℹ️ EVENT_DUPLICATE: {event.event_type} txn={event.transaction_token} already processed - ledger unchanged"
                )

        return result

    async def _execute(self, command: Command) -> bool:
        if isinstance(command, RecordPendingTransaction):
            return await asyncio.to_thread(self._record_pending, command)
        if isinstance(command, SettleTransaction):
            return await asyncio.to_thread(self._finalize_transaction, command, CardTransactionStatus.SETTLED, True)
        if isinstance(command, DeclineTransaction):
            return await asyncio.to_thread(self._finalize_transaction, command, CardTransactionStatus.DECLINED, False)
        if isinstance(command, CloseSession):
            outcome = await self.closer.close(command.session_id, command.target_status, command.reason)
            return outcome.applied
        if isinstance(command, LockInstrument):
            instrument = await asyncio.to_thread(self.instruments.get, command.instrument_id)
            if instrument is None:
                return False
            active = await asyncio.to_thread(self.sessions.active_for_instrument, instrument.id)
            if active is not None:
                # An unrelated window is open; it locks the card when it closes
                logger.info(f"ℹ️ EVENT_LOCK_SKIPPED: instrument {instrument.id} has active session {active.id}")
                return False
            lock_result = await self.instruments.lock(instrument, reason=command.reason)
            return lock_result.locked
        raise TypeError(f"Unknown command {command!r}")

    def _new_transaction(self, command, status: CardTransactionStatus, now) -> CardTransaction:
        event = command.event
        return CardTransaction(
            id=str(uuid.uuid4()),
            provider_transaction_id=event.transaction_token,
            session_id=command.session_id,
            instrument_id=command.instrument_id,
            user_id=command.user_id,
            amount=event.amount,
            category=command.category,
            merchant_name=event.merchant_name[:255] if event.merchant_name else None,
            merchant_mcc=event.merchant_mcc,
            status=status.value,
            created_at=now,
            updated_at=now,
        )

    def _record_pending(self, command: RecordPendingTransaction) -> bool:
        now = self.clock()
        try:
            with session_scope(self.session_factory) as db:
                db.add(self._new_transaction(command, CardTransactionStatus.PENDING, now))
        except IntegrityError:
            logger.info(f"ℹ️ TRANSACTION_EXISTS: {command.event.transaction_token} recorded concurrently")
            return False
        logger.info(
            f"🧾 TRANSACTION_PENDING: {command.event.transaction_token} {command.event.amount} "
            f"session={command.session_id}"
        )
        return True

    def _finalize_transaction(self, command, target: CardTransactionStatus, add_to_ledger: bool) -> bool:
        """pending/absent -> settled|declined; the ledger increment commits with the status change"""
        event = command.event
        now = self.clock()
        with session_scope(self.session_factory) as db:
            existing = db.execute(
                select(CardTransaction.id).where(CardTransaction.provider_transaction_id == event.transaction_token)
            ).scalar_one_or_none()

            if existing is None:
                db.add(self._new_transaction(command, target, now))
                db.flush()
            else:
                result = db.execute(
                    update(CardTransaction)
                    .where(
                        CardTransaction.id == existing,
                        CardTransaction.status == CardTransactionStatus.PENDING.value,
                    )
                    .values(status=target.value, amount=event.amount, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if (result.rowcount or 0) == 0:
                    return False

            if add_to_ledger:
                self.ledger.increment(db, command.user_id, command.category, event.amount, now)

        logger.info(f"✅ TRANSACTION_{target.value.upper()}: {event.transaction_token} {event.amount} ({command.category})")
        return True
