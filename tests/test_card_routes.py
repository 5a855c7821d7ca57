"""
Card API route tests: authorize, lock, status, details and the health check
"""

import pytest
from fastapi.testclient import TestClient

from conftest import TEST_USER_ID, TEST_WEBHOOK_SECRET, timer_key
from models import InstrumentStatus, SessionStatus
from services.card_authorization_service import AuthorizationWindowClosedError
from webhook_server import create_app

USER_HEADERS = {"X-User-Id": TEST_USER_ID}


@pytest.fixture
def client(container):
    app = create_app(container, start_background=False, webhook_secret=TEST_WEBHOOK_SECRET)
    return TestClient(app)


def _authorize(client, **overrides):
    body = {"amountLimit": "50.00", "timeLimit": 15, "category": "dining"}
    body.update(overrides)
    return client.post("/card/authorize", json=body, headers=USER_HEADERS)


class TestAuthorizeRoute:
    def test_authorize_opens_card(self, client, container, instrument, provider, timer_store):
        response = _authorize(client, merchantName="Corner Bistro")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["amountLimit"] == "50.00"
        assert data["category"] == "dining"
        assert data["merchantName"] == "Corner Bistro"
        assert data["expiresAt"] == "2025-01-15T12:15:00Z"
        assert data["timerArmed"] is True
        assert provider.count("unfreeze") == 1
        assert timer_key(data["sessionId"]) in timer_store.entries

    def test_category_mcc_takes_precedence(self, client, instrument, provider):
        response = _authorize(client, categoryMcc="5411")

        assert response.status_code == 200
        assert response.json()["category"] == "5411"
        _, _, controls = provider.calls[0]
        assert controls.category == "5411"

    def test_second_window_conflicts(self, client, instrument, provider):
        assert _authorize(client).status_code == 200

        response = _authorize(client, amountLimit="20")

        assert response.status_code == 409
        assert provider.count("unfreeze") == 1

    def test_user_without_card(self, client):
        assert _authorize(client).status_code == 404

    @pytest.mark.parametrize("overrides", [
        {"timeLimit": 0},
        {"timeLimit": 100000},
        {"amountLimit": "0"},
        {"amountLimit": "-5"},
        {"categoryMcc": "12AB"},
        {"category": "casino"},
        {"merchantName": "x" * 101},
    ])
    def test_invalid_request_rejected(self, client, instrument, provider, overrides):
        response = _authorize(client, **overrides)

        assert response.status_code == 422
        assert provider.calls == []

    def test_unlock_failure_returns_502_and_card_stays_locked(self, client, container, instrument, provider):
        provider.fail_unfreeze = True

        response = _authorize(client)

        assert response.status_code == 502
        assert container.instruments.get(instrument.id).status == InstrumentStatus.LOCKED.value
        assert container.sessions.active_for(TEST_USER_ID) is None

    def test_missing_user_header(self, client, instrument):
        response = client.post("/card/authorize", json={"amountLimit": "10", "timeLimit": 5})
        assert response.status_code == 401

    def test_window_closed_during_unlock_returns_409(self, client, container, instrument, monkeypatch):
        async def closed_underneath(**kwargs):
            raise AuthorizationWindowClosedError("session-1", SessionStatus.CANCELLED.value)

        monkeypatch.setattr(container.cards, "authorize", closed_underneath)

        response = _authorize(client)

        assert response.status_code == 409
        assert "closed" in response.json()["detail"]


class TestLockRoute:
    def test_lock_cancels_open_window(self, client, container, instrument, provider, timer_store):
        session_id = _authorize(client).json()["sessionId"]

        response = client.post("/card/lock", headers=USER_HEADERS)

        assert response.status_code == 200
        assert response.json()["cancelledSessionId"] == session_id
        assert container.sessions.get(session_id).status == SessionStatus.CANCELLED.value
        assert timer_key(session_id) not in timer_store.entries
        assert provider.count("freeze") == 1

    def test_lock_without_window_still_locks(self, client, instrument, provider):
        response = client.post("/card/lock", headers=USER_HEADERS)

        assert response.status_code == 200
        assert response.json()["cancelledSessionId"] is None
        assert set(response.json()) == {"success", "message", "locked", "instrumentId", "cancelledSessionId"}
        assert provider.count("freeze") == 1

    def test_provider_failure_returns_502_and_schedules_retry(self, client, container, instrument, provider):
        _authorize(client)
        provider.freeze_failures = 1

        response = client.post("/card/lock", headers=USER_HEADERS)

        assert response.status_code == 502
        assert container.outbox.pending_for(instrument.id) is not None

    def test_lock_unknown_user(self, client):
        assert client.post("/card/lock", headers={"X-User-Id": "nobody"}).status_code == 404


class TestReadRoutes:
    def test_status_reports_active_window(self, client, instrument):
        _authorize(client)

        data = client.get("/card/status", headers=USER_HEADERS).json()

        assert data["locked"] is False
        assert data["activeSession"]["category"] == "dining"

    def test_status_when_locked(self, client, instrument):
        data = client.get("/card/status", headers=USER_HEADERS).json()

        assert data["locked"] is True
        assert data["activeSession"] is None

    def test_details_masks_card_number(self, client, instrument):
        data = client.get("/api/card/details", headers=USER_HEADERS).json()

        assert data["cardNumber"] == "****-****-****-4242"
        assert data["expYear"] == "2029"

    def test_details_resyncs_drifted_mirror(self, client, container, instrument, provider):
        provider.states[instrument.provider_ref] = "OPEN"

        data = client.get("/card/details", headers=USER_HEADERS).json()

        assert data["providerState"] == "OPEN"
        assert data["status"] == InstrumentStatus.UNLOCKED.value
        assert container.instruments.get(instrument.id).status == InstrumentStatus.UNLOCKED.value

    def test_details_provider_outage(self, client, instrument, provider):
        provider.fail_retrieve = True
        assert client.get("/card/details", headers=USER_HEADERS).status_code == 502


class TestHealth:
    def test_health_reports_components(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
