"""
Settlement event tests: classification, settle / decline closure, idempotent redelivery, ordering
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import TEST_USER_ID, provider_event, timer_key
from database import session_scope
from models import CardTransaction, CardTransactionStatus, InstrumentStatus, SessionStatus
from services.settlement_event_processor import (
    EVENT_HANDLERS,
    EventContext,
    EventKind,
    MalformedEventError,
    SettleTransaction,
    CloseSession,
    LockInstrument,
    parse_provider_event,
    plan_transaction_settled,
)


def _transactions(session_factory):
    with session_scope(session_factory) as db:
        return list(db.execute(select(CardTransaction)).scalars())


class TestEventParsing:
    @pytest.mark.parametrize("event_type,status,expected", [
        ("transaction.created", None, EventKind.TRANSACTION_CREATED),
        ("transaction.created", "PENDING", EventKind.TRANSACTION_CREATED),
        ("transaction.updated", "SETTLED", EventKind.TRANSACTION_SETTLED),
        ("transaction.created", "SETTLED", EventKind.TRANSACTION_SETTLED),
        ("transaction.updated", "DECLINED", EventKind.AUTHORIZATION_DECLINED),
        ("authorization.updated", "DECLINED", EventKind.AUTHORIZATION_DECLINED),
        ("authorization.updated", "APPROVED", EventKind.IGNORED),
        ("card.created", None, EventKind.IGNORED),
    ])
    def test_classification(self, event_type, status, expected):
        event = parse_provider_event(provider_event(event_type, status=status))
        assert event.kind is expected

    def test_amount_converted_from_minor_units(self):
        event = parse_provider_event(provider_event("transaction.updated", status="SETTLED", amount=5000))
        assert event.amount == Decimal("50.00")
        assert event.merchant_mcc == "5812"
        assert event.card_ref == "card_tok_1"

    @pytest.mark.parametrize("body", [
        b"not json",
        b"[]",
        b'{"payload": {}}',
        b'{"event_type": "transaction.updated", "payload": {"status": "SETTLED", "token": "t", "amount": 10}}',
        b'{"event_type": "transaction.updated", "payload": {"status": "SETTLED", "card_token": "c", "amount": 10}}',
        b'{"event_type": "transaction.updated", "payload": {"status": "SETTLED", "card_token": "c", "token": "t", "amount": "ten"}}',
    ])
    def test_malformed_bodies(self, body):
        with pytest.raises(MalformedEventError):
            parse_provider_event(body)

    def test_dispatch_table_is_exhaustive(self):
        assert set(EVENT_HANDLERS) == set(EventKind)


class TestPlanning:
    def test_settled_with_session_plans_guard_then_close(self, container, instrument):
        session = container.sessions.create(TEST_USER_ID, instrument.id, Decimal("50"), "dining", None, 5)
        event = parse_provider_event(provider_event("transaction.updated", status="SETTLED"))

        plan = plan_transaction_settled(event, EventContext(instrument, session, None))

        assert isinstance(plan.commands[0], SettleTransaction)
        assert plan.commands[0].category == "dining"
        assert plan.commands[1] == CloseSession(session.id, SessionStatus.COMPLETED, "transaction_settled")

    def test_settled_without_session_plans_lock(self, instrument):
        event = parse_provider_event(provider_event("transaction.updated", status="SETTLED"))

        plan = plan_transaction_settled(event, EventContext(instrument, None, None))

        assert plan.commands[0].category == "5812"
        assert isinstance(plan.commands[1], LockInstrument)

    def test_unknown_instrument_plans_nothing(self):
        event = parse_provider_event(provider_event("transaction.updated", status="SETTLED"))
        plan = plan_transaction_settled(event, EventContext(None, None, None))
        assert plan.commands == ()
        assert plan.note == "unknown_instrument"


class TestSettlementLifecycle:
    @pytest.mark.asyncio
    async def test_settlement_completes_session_and_updates_ledger(self, container, instrument, provider, timer_store, clock):
        grant = await container.cards.authorize(TEST_USER_ID, Decimal("50"), "dining", 5)
        clock.advance(minutes=1)
        await container.events.process(provider_event("transaction.created", amount=5000))
        clock.advance(minutes=1)

        result = await container.events.process(provider_event("transaction.updated", status="SETTLED", amount=5000))

        assert result.duplicate is False
        assert container.sessions.get(grant.session_id).status == SessionStatus.COMPLETED.value
        assert provider.count("freeze") == 1
        assert container.instruments.get(instrument.id).status == InstrumentStatus.LOCKED.value
        assert container.ledger.totals_for(TEST_USER_ID) == {"dining": Decimal("50.00")}
        assert timer_key(grant.session_id) not in timer_store.entries

        [txn] = _transactions(container.session_factory)
        assert txn.status == CardTransactionStatus.SETTLED.value
        assert txn.session_id == grant.session_id

    @pytest.mark.asyncio
    async def test_duplicate_settlement_counted_once(self, container, instrument, provider, clock):
        grant = await container.cards.authorize(TEST_USER_ID, Decimal("50"), "dining", 5)
        settled = provider_event("transaction.updated", status="SETTLED", amount=5000)
        clock.advance(minutes=2)
        await container.events.process(settled)

        clock.advance(seconds=30)
        replay = await container.events.process(settled)

        assert replay.duplicate is True
        assert container.ledger.totals_for(TEST_USER_ID) == {"dining": Decimal("50.00")}
        assert container.sessions.get(grant.session_id).status == SessionStatus.COMPLETED.value
        assert provider.count("freeze") == 1

    @pytest.mark.asyncio
    async def test_settled_before_created(self, container, instrument, provider):
        grant = await container.cards.authorize(TEST_USER_ID, Decimal("50"), None, 5)

        await container.events.process(provider_event("transaction.updated", status="SETTLED", amount=1999))
        late_created = await container.events.process(provider_event("transaction.created", amount=1999))

        assert late_created.executed == []
        [txn] = _transactions(container.session_factory)
        assert txn.status == CardTransactionStatus.SETTLED.value
        assert container.ledger.totals_for(TEST_USER_ID) == {"5812": Decimal("19.99")}
        assert container.sessions.get(grant.session_id).status == SessionStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_created_records_pending_with_provenance(self, container, instrument, provider):
        grant = await container.cards.authorize(TEST_USER_ID, Decimal("50"), None, 5)

        await container.events.process(provider_event("transaction.created", amount=1200))
        await container.events.process(provider_event("transaction.created", amount=1200))

        [txn] = _transactions(container.session_factory)
        assert txn.status == CardTransactionStatus.PENDING.value
        assert txn.session_id == grant.session_id
        assert txn.amount == Decimal("12.00")
        assert container.sessions.get(grant.session_id).is_active
        assert provider.count("freeze") == 0

    @pytest.mark.asyncio
    async def test_settlement_after_expiry_sweep_does_not_relock(self, container, instrument, provider, clock):
        grant = await container.cards.authorize(TEST_USER_ID, Decimal("50"), "dining", 5)
        await container.events.process(provider_event("transaction.created", amount=4000))
        clock.advance(minutes=6)
        await container.sweeper.run_sweep()
        assert provider.count("freeze") == 1

        await container.events.process(provider_event("transaction.updated", status="SETTLED", amount=4000))

        assert container.sessions.get(grant.session_id).status == SessionStatus.EXPIRED.value
        assert container.ledger.totals_for(TEST_USER_ID) == {"dining": Decimal("40.00")}
        assert provider.count("freeze") == 1

    @pytest.mark.asyncio
    async def test_settlement_without_session_locks_card(self, container, instrument, provider):
        await container.events.process(provider_event("transaction.updated", status="SETTLED", amount=500, mcc=None))

        assert provider.count("freeze") == 1
        assert container.ledger.totals_for(TEST_USER_ID) == {"uncategorized": Decimal("5.00")}


class TestDeclines:
    @pytest.mark.asyncio
    async def test_decline_closes_session_without_ledger_change(self, container, instrument, provider, clock):
        grant = await container.cards.authorize(TEST_USER_ID, Decimal("50"), "dining", 5)
        clock.advance(minutes=1)

        await container.events.process(provider_event("authorization.updated", status="DECLINED", amount=9000))

        assert container.sessions.get(grant.session_id).status == SessionStatus.DECLINED.value
        assert provider.count("freeze") == 1
        assert container.ledger.totals_for(TEST_USER_ID) == {}
        [txn] = _transactions(container.session_factory)
        assert txn.status == CardTransactionStatus.DECLINED.value

    @pytest.mark.asyncio
    async def test_duplicate_decline_is_noop(self, container, instrument, provider):
        await container.cards.authorize(TEST_USER_ID, Decimal("50"), "dining", 5)
        declined = provider_event("transaction.updated", status="DECLINED")

        await container.events.process(declined)
        replay = await container.events.process(declined)

        assert replay.duplicate is True
        assert provider.count("freeze") == 1

    @pytest.mark.asyncio
    async def test_decline_without_token_still_closes(self, container, instrument, provider):
        grant = await container.cards.authorize(TEST_USER_ID, Decimal("50"), None, 5)

        await container.events.process(provider_event("authorization.updated", token=None, status="DECLINED"))

        assert container.sessions.get(grant.session_id).status == SessionStatus.DECLINED.value
        assert _transactions(container.session_factory) == []


class TestUnknownInputs:
    @pytest.mark.asyncio
    async def test_unknown_instrument_acknowledged_without_mutation(self, container, instrument, provider):
        result = await container.events.process(
            provider_event("transaction.updated", status="SETTLED", card_token="card_unknown")
        )

        assert result.note == "unknown_instrument"
        assert result.executed == []
        assert provider.calls == []
        assert _transactions(container.session_factory) == []

    @pytest.mark.asyncio
    async def test_ignored_event_type(self, container, instrument, provider):
        result = await container.events.process(provider_event("authorization.created"))
        assert result.kind is EventKind.IGNORED
        assert provider.calls == []


class TestPartialFailureAndProvenance:
    @pytest.mark.asyncio
    async def test_redelivery_after_failed_close_completes_session(self, container, instrument, provider, monkeypatch):
        grant = await container.cards.authorize(TEST_USER_ID, Decimal("50"), "dining", 5)
        real_close = container.closer.close
        attempts = []

        async def close_failing_once(session_id, target_status, reason):
            attempts.append(session_id)
            if len(attempts) == 1:
                raise RuntimeError("connection reset during close")
            return await real_close(session_id, target_status, reason)

        monkeypatch.setattr(container.closer, "close", close_failing_once)
        settled = provider_event("transaction.updated", status="SETTLED", amount=5000)

        with pytest.raises(RuntimeError):
            await container.events.process(settled)
        assert container.sessions.get(grant.session_id).is_active

        replay = await container.events.process(settled)

        assert replay.duplicate is True
        assert container.sessions.get(grant.session_id).status == SessionStatus.COMPLETED.value
        assert provider.count("freeze") == 1
        assert container.instruments.get(instrument.id).status == InstrumentStatus.LOCKED.value
        assert container.ledger.totals_for(TEST_USER_ID) == {"dining": Decimal("50.00")}

    @pytest.mark.asyncio
    async def test_unowned_transaction_does_not_adopt_later_window(self, container, instrument, provider):
        await container.events.process(provider_event("transaction.created", token="txn_old", amount=1000))
        grant = await container.cards.authorize(TEST_USER_ID, Decimal("50"), "dining", 5)

        await container.events.process(
            provider_event("transaction.updated", token="txn_old", status="SETTLED", amount=1000)
        )

        assert container.sessions.get(grant.session_id).is_active
        assert provider.count("freeze") == 0
        assert container.ledger.totals_for(TEST_USER_ID) == {"5812": Decimal("10.00")}
        [txn] = _transactions(container.session_factory)
        assert txn.session_id is None
        assert txn.status == CardTransactionStatus.SETTLED.value
