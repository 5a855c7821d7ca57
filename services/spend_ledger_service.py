"""Per-category running totals of settled card spend"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from database import session_scope
from models import SpendLedgerEntry
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"


class SpendLedgerService:
    def __init__(self, session_factory: sessionmaker, clock: Clock = get_naive_utc_now):
        self.session_factory = session_factory
        self.clock = clock

    def increment(self, db: Session, user_id: str, category: str, amount: Decimal, now: datetime = None) -> None:
        """
        Add amount to the category total inside the caller's transaction.
        The increment is a SQL expression so concurrent settlements never lose updates.
        """
        now = now or self.clock()
        result = db.execute(
            update(SpendLedgerEntry)
            .where(SpendLedgerEntry.user_id == user_id, SpendLedgerEntry.category == category)
            .values(spent_amount=SpendLedgerEntry.spent_amount + amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) == 0:
            # First settlement in this category; a concurrent insert fails the unique constraint and the webhook is redelivered
            db.add(SpendLedgerEntry(user_id=user_id, category=category, spent_amount=amount, updated_at=now))
            db.flush()
        logger.info(f"📒 LEDGER_INCREMENT: user {user_id} {category} +{amount}")

    def totals_for(self, user_id: str) -> Dict[str, Decimal]:
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(SpendLedgerEntry.category, SpendLedgerEntry.spent_amount)
                .where(SpendLedgerEntry.user_id == user_id)
            ).all()
        return {category: Decimal(str(spent)) for category, spent in rows}
