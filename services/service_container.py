"""
Service container - builds every collaborator once at process start and injects
them explicitly. The FastAPI app keeps the container on app.state.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from config import Config
from database import create_tables, get_session_factory, init_engine
from services.authorization_session_manager import AuthorizationSessionManager
from services.card_authorization_service import CardAuthorizationService
from services.dual_timer_coordinator import DualTimerCoordinator
from services.ephemeral_timer_store import RedisTimerStore, TimerStore
from services.instrument_provider import (
    DevelopmentInstrumentProvider,
    InstrumentProvider,
    LithicInstrumentProvider,
)
from services.instrument_state_controller import InstrumentStateController
from services.lock_retry_outbox import LockRetryOutbox
from services.reconciliation_sweeper import ReconciliationSweeper
from services.session_closer import SessionCloser
from services.settlement_event_processor import SettlementEventProcessor
from services.spend_ledger_service import SpendLedgerService
from services.transaction_history_service import TransactionHistoryService
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    session_factory: sessionmaker
    provider: InstrumentProvider
    timer_store: TimerStore
    clock: Clock
    sessions: AuthorizationSessionManager
    instruments: InstrumentStateController
    outbox: LockRetryOutbox
    timers: DualTimerCoordinator
    closer: SessionCloser
    ledger: SpendLedgerService
    cards: CardAuthorizationService
    events: SettlementEventProcessor
    sweeper: ReconciliationSweeper
    transactions: TransactionHistoryService
    engine: Optional[Engine] = None

    async def close(self) -> None:
        await self.provider.close()
        await self.timer_store.close()
        if self.engine is not None:
            self.engine.dispose()
        logger.info("🛑 Service container closed")


def build_provider() -> InstrumentProvider:
    if Config.is_provider_configured():
        return LithicInstrumentProvider(
            api_key=Config.LITHIC_API_KEY,
            base_url=Config.LITHIC_BASE_URL,
            timeout_seconds=Config.PROVIDER_TIMEOUT_SECONDS,
        )
    return DevelopmentInstrumentProvider()


def build_timer_store() -> TimerStore:
    return RedisTimerStore(
        Config.REDIS_URL,
        password=Config.REDIS_PASSWORD,
        socket_timeout=Config.REDIS_SOCKET_TIMEOUT_SECONDS,
        connect_timeout=Config.REDIS_CONNECTION_TIMEOUT_SECONDS,
        enable_notifications=Config.REDIS_EXPIRY_NOTIFICATIONS_ENABLED,
    )


def assemble_services(
    session_factory: sessionmaker,
    provider: InstrumentProvider,
    timer_store: TimerStore,
    clock: Clock = get_naive_utc_now,
    engine: Optional[Engine] = None,
) -> ServiceContainer:
    """Wire the services around already-built infrastructure (used by tests with fakes)"""
    sessions = AuthorizationSessionManager(session_factory, clock=clock)
    outbox = LockRetryOutbox(session_factory, clock=clock)
    instruments = InstrumentStateController(session_factory, provider, outbox, clock=clock)
    timers = DualTimerCoordinator(timer_store, clock=clock)
    closer = SessionCloser(sessions, instruments, timers)
    ledger = SpendLedgerService(session_factory, clock=clock)

    return ServiceContainer(
        session_factory=session_factory,
        provider=provider,
        timer_store=timer_store,
        clock=clock,
        sessions=sessions,
        instruments=instruments,
        outbox=outbox,
        timers=timers,
        closer=closer,
        ledger=ledger,
        cards=CardAuthorizationService(sessions, instruments, timers, closer, clock=clock),
        events=SettlementEventProcessor(session_factory, sessions, instruments, closer, ledger, clock=clock),
        sweeper=ReconciliationSweeper(sessions, instruments, timers, closer, outbox, clock=clock),
        transactions=TransactionHistoryService(session_factory, ledger, clock=clock),
        engine=engine,
    )


def build_service_container(database_url: Optional[str] = None) -> ServiceContainer:
    """Production wiring from Config"""
    Config.validate_production_config()
    engine = init_engine(database_url)
    create_tables(engine)
    container = assemble_services(
        session_factory=get_session_factory(),
        provider=build_provider(),
        timer_store=build_timer_store(),
        engine=engine,
    )
    logger.info(f"✅ Service container ready (database={Config.DATABASE_SOURCE})")
    return container
