"""
Shared Test Fixtures for FinLock Card Control Testing

Key Components:
1. In-memory SQLite database with the full schema (StaticPool, one shared connection)
2. Recording fake card provider with failure injection
3. In-memory timer store that follows Redis TTL semantics (-2 missing, -1 no expiry)
4. Controllable clock injected into every service
5. Signed webhook helpers
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import orjson
import pytest

from database import build_engine, build_session_factory
from models import Base
from services.instrument_provider import InstrumentProviderError, ProviderCardDetails, UnlockControls
from services.service_container import assemble_services
from utils.webhook_signature import compute_webhook_signature

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

TEST_USER_ID = "user-1"
TEST_CARD_REF = "card_tok_1"
TEST_WEBHOOK_SECRET = "whsec_test_secret"


class FakeClock:
    """Callable clock; tests move time with advance()"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int = 0, minutes: int = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)
        return self.now


class FakeInstrumentProvider:
    """Records every provider command; failures are injected per operation"""

    def __init__(self):
        self.calls: List[Tuple[str, str, Optional[UnlockControls]]] = []
        self.states: Dict[str, str] = {}
        self.fail_unfreeze = False
        self.freeze_failures = 0
        self.fail_retrieve = False

    def count(self, operation: str) -> int:
        return sum(1 for op, _, _ in self.calls if op == operation)

    async def unfreeze(self, provider_ref: str, controls: UnlockControls) -> None:
        self.calls.append(("unfreeze", provider_ref, controls))
        if self.fail_unfreeze:
            raise InstrumentProviderError("unfreeze", "simulated provider outage")
        self.states[provider_ref] = "OPEN"

    async def freeze(self, provider_ref: str) -> None:
        self.calls.append(("freeze", provider_ref, None))
        if self.freeze_failures > 0:
            self.freeze_failures -= 1
            raise InstrumentProviderError("freeze", "simulated provider timeout")
        self.states[provider_ref] = "PAUSED"

    async def retrieve(self, provider_ref: str) -> ProviderCardDetails:
        self.calls.append(("retrieve", provider_ref, None))
        if self.fail_retrieve:
            raise InstrumentProviderError("retrieve", "simulated provider outage")
        return ProviderCardDetails(
            provider_ref=provider_ref,
            state=self.states.get(provider_ref, "PAUSED"),
            last_four="4242",
            exp_month="09",
            exp_year="2029",
        )

    async def close(self) -> None:
        return None


class InMemoryTimerStore:
    """
    TimerStore with Redis-like TTL reporting against the injected clock.
    Unlike Redis, entries are not evicted when their TTL passes, so tests can
    exercise the stale-hint path; call evict() to simulate Redis removing them.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.entries: Dict[str, Tuple[Dict[str, Any], Optional[datetime]]] = {}
        self.fail_writes = False
        self.expired_queue: "asyncio.Queue[str]" = asyncio.Queue()

    async def set_with_ttl(self, key: str, ttl_seconds: int, payload: Dict[str, Any]) -> None:
        if self.fail_writes:
            raise ConnectionError("simulated redis outage")
        self.entries[key] = (orjson.loads(orjson.dumps(payload)), self.clock() + timedelta(seconds=ttl_seconds))

    def set_without_ttl(self, key: str, payload: Dict[str, Any]) -> None:
        self.entries[key] = (payload, None)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self.entries.get(key)
        return entry[0] if entry else None

    async def delete(self, key: str) -> bool:
        if self.fail_writes:
            raise ConnectionError("simulated redis outage")
        return self.entries.pop(key, None) is not None

    async def list_keys_by_prefix(self, prefix: str) -> List[str]:
        return [key for key in self.entries if key.startswith(prefix)]

    async def time_to_live(self, key: str) -> int:
        entry = self.entries.get(key)
        if entry is None:
            return -2
        if entry[1] is None:
            return -1
        remaining = (entry[1] - self.clock()).total_seconds()
        return max(0, math.ceil(remaining))

    def ttl_of(self, key: str) -> Optional[int]:
        entry = self.entries.get(key)
        if entry is None or entry[1] is None:
            return None
        return math.ceil((entry[1] - self.clock()).total_seconds())

    def evict(self, key: str) -> None:
        self.entries.pop(key, None)

    async def subscribe_expired(self, prefix: str):
        while True:
            key = await self.expired_queue.get()
            if key is None:
                return
            if key.startswith(prefix):
                yield key

    async def close(self) -> None:
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeInstrumentProvider()


@pytest.fixture
def timer_store(clock):
    return InMemoryTimerStore(clock)


@pytest.fixture
def engine():
    test_engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def container(session_factory, provider, timer_store, clock):
    return assemble_services(session_factory, provider, timer_store, clock=clock)


@pytest.fixture
def instrument(container):
    return container.instruments.register(TEST_USER_ID, TEST_CARD_REF)


def timer_key(session_id: str) -> str:
    return f"auto_refreeze:{session_id}"


def provider_event(
    event_type: str,
    token: Optional[str] = "txn_1",
    card_token: str = TEST_CARD_REF,
    amount: int = 2500,
    status: Optional[str] = None,
    mcc: Optional[str] = "5812",
    descriptor: str = "CORNER BISTRO",
) -> Dict[str, Any]:
    """Provider webhook body in the shape the card provider delivers"""
    payload: Dict[str, Any] = {
        "card_token": card_token,
        "amount": amount,
        "merchant": {"mcc": mcc, "descriptor": descriptor},
    }
    if token is not None:
        payload["token"] = token
    if status is not None:
        payload["status"] = status
    return {"event_type": event_type, "payload": payload}


def signed_body(event: Dict[str, Any], secret: str = TEST_WEBHOOK_SECRET) -> Tuple[bytes, str]:
    body = orjson.dumps(event)
    return body, compute_webhook_signature(body, secret)
