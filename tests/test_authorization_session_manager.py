"""
Session lifecycle tests: creation limits, single active session, compare-and-set transitions
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from config import Config
from conftest import TEST_USER_ID
from models import SessionStatus
from services.authorization_session_manager import (
    ActiveSessionConflictError,
    AuthorizationSessionManager,
    InvalidAuthorizationRequestError,
    InvalidTransitionError,
)
from services.lock_retry_outbox import LockRetryOutbox


class TestSessionCreation:
    def test_create_persists_active_session_with_expiry(self, container, instrument, clock):
        session = container.sessions.create(
            user_id=TEST_USER_ID,
            instrument_id=instrument.id,
            amount_limit=Decimal("50.00"),
            category_constraint="dining",
            duration_minutes=30,
        )

        stored = container.sessions.get(session.id)
        assert stored.status == SessionStatus.ACTIVE.value
        assert stored.expires_at == clock() + timedelta(minutes=30)
        assert stored.expires_at > stored.created_at
        assert stored.amount_limit == Decimal("50.00")
        assert stored.category_constraint == "dining"

    def test_second_active_session_is_rejected(self, container, instrument):
        first = container.sessions.create(TEST_USER_ID, instrument.id, Decimal("20"), duration_minutes=10)

        with pytest.raises(ActiveSessionConflictError) as exc_info:
            container.sessions.create(TEST_USER_ID, instrument.id, Decimal("30"), duration_minutes=10)

        assert exc_info.value.existing_session_id == first.id

    def test_new_session_allowed_after_previous_closed(self, container, instrument):
        first = container.sessions.create(TEST_USER_ID, instrument.id, Decimal("20"), duration_minutes=10)
        container.sessions.transition(first.id, SessionStatus.CANCELLED)

        second = container.sessions.create(TEST_USER_ID, instrument.id, Decimal("30"), duration_minutes=10)

        assert second.id != first.id
        assert container.sessions.active_for(TEST_USER_ID).id == second.id

    @pytest.mark.parametrize("minutes", [0, 1441, -5])
    def test_duration_outside_window_rejected(self, container, instrument, minutes):
        with pytest.raises(InvalidAuthorizationRequestError):
            container.sessions.create(TEST_USER_ID, instrument.id, Decimal("10"), duration_minutes=minutes)

    def test_duration_boundaries_accepted(self, container, instrument):
        short = container.sessions.create(TEST_USER_ID, instrument.id, Decimal("10"), duration_minutes=1)
        container.sessions.transition(short.id, SessionStatus.COMPLETED)
        long = container.sessions.create(TEST_USER_ID, instrument.id, Decimal("10"), duration_minutes=1440)
        assert long.expires_at - long.created_at == timedelta(hours=24)

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), "abc", "NaN"])
    def test_non_positive_or_invalid_amount_rejected(self, container, instrument, amount):
        with pytest.raises(InvalidAuthorizationRequestError):
            container.sessions.create(TEST_USER_ID, instrument.id, amount, duration_minutes=10)

    def test_unknown_category_rejected(self, container, instrument):
        with pytest.raises(InvalidAuthorizationRequestError):
            container.sessions.create(
                TEST_USER_ID, instrument.id, Decimal("10"), category_constraint="casino", duration_minutes=10
            )

    def test_mcc_code_accepted_as_category(self, container, instrument):
        session = container.sessions.create(
            TEST_USER_ID, instrument.id, Decimal("10"), category_constraint="5411", duration_minutes=10
        )
        assert session.category_constraint == "5411"

    def test_rejected_request_creates_nothing(self, container, instrument):
        with pytest.raises(InvalidAuthorizationRequestError):
            container.sessions.create(TEST_USER_ID, instrument.id, Decimal("10"), duration_minutes=0)
        assert container.sessions.active_for_instrument(instrument.id, include_expired=True) is None


class TestSessionTransitions:
    def test_transition_applies_once(self, container, instrument):
        session = container.sessions.create(TEST_USER_ID, instrument.id, Decimal("25"), duration_minutes=15)

        first = container.sessions.transition(session.id, SessionStatus.COMPLETED)
        second = container.sessions.transition(session.id, SessionStatus.EXPIRED)

        assert first.applied is True
        assert first.session.status == SessionStatus.COMPLETED.value
        assert second.applied is False
        assert second.session.status == SessionStatus.COMPLETED.value

    def test_terminal_session_unchanged_by_redelivery(self, container, instrument):
        session = container.sessions.create(TEST_USER_ID, instrument.id, Decimal("25"), duration_minutes=15)
        container.sessions.transition(session.id, SessionStatus.DECLINED)
        before = container.sessions.get(session.id)

        outcome = container.sessions.transition(session.id, SessionStatus.DECLINED)

        assert outcome.applied is False
        assert outcome.session.updated_at == before.updated_at

    def test_transition_to_active_rejected(self, container, instrument):
        session = container.sessions.create(TEST_USER_ID, instrument.id, Decimal("25"), duration_minutes=15)
        with pytest.raises(InvalidTransitionError):
            container.sessions.transition(session.id, SessionStatus.ACTIVE)

    def test_unknown_session_transition(self, container):
        outcome = container.sessions.transition("missing-session", SessionStatus.EXPIRED)
        assert outcome.session is None
        assert outcome.applied is False


class TestSessionQueries:
    def test_active_for_ignores_expired_sessions(self, container, instrument, clock):
        container.sessions.create(TEST_USER_ID, instrument.id, Decimal("25"), duration_minutes=5)
        assert container.sessions.active_for(TEST_USER_ID) is not None

        clock.advance(minutes=5)

        assert container.sessions.active_for(TEST_USER_ID) is None
        assert container.sessions.active_for_instrument(instrument.id, include_expired=True) is not None

    def test_expired_active_returns_only_overdue(self, container, clock):
        overdue_card = container.instruments.register("user-a", "card_a")
        fresh_card = container.instruments.register("user-b", "card_b")
        overdue = container.sessions.create("user-a", overdue_card.id, Decimal("10"), duration_minutes=1)
        container.sessions.create("user-b", fresh_card.id, Decimal("10"), duration_minutes=60)

        clock.advance(minutes=2)
        expired = container.sessions.expired_active()

        assert [s.id for s in expired] == [overdue.id]


class TestExplicitLimits:
    def test_explicit_zero_limits_are_kept(self, session_factory, clock):
        manager = AuthorizationSessionManager(session_factory, clock=clock, min_minutes=0, max_amount=Decimal("0"))
        assert manager.min_minutes == 0
        assert manager.max_amount == Decimal("0")
        with pytest.raises(InvalidAuthorizationRequestError):
            manager.validate_amount(Decimal("1"))

    def test_defaults_come_from_config(self, session_factory):
        manager = AuthorizationSessionManager(session_factory)
        assert manager.min_minutes == Config.MIN_AUTHORIZATION_MINUTES
        assert manager.max_minutes == Config.MAX_AUTHORIZATION_MINUTES

    def test_outbox_zero_base_delay_is_kept(self, session_factory, clock):
        outbox = LockRetryOutbox(session_factory, clock=clock, base_delay_seconds=0)
        assert outbox.backoff_delay(1) == 0
        assert outbox.max_delay_seconds == Config.LOCK_RETRY_MAX_DELAY_SECONDS
