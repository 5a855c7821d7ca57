"""
Transaction history and spending analytics for the card API.
Read-only over CardTransaction rows written by the settlement event processor.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from database import session_scope
from models import CardTransaction, CardTransactionStatus
from services.spend_ledger_service import SpendLedgerService
from utils.datetime_helpers import Clock, get_naive_utc_now

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class TransactionPage:
    transactions: List[CardTransaction]
    total: int
    limit: int
    offset: int


@dataclass(frozen=True)
class CategorySpend:
    category: str
    total_amount: Decimal
    transaction_count: int
    average_amount: Decimal
    percentage: int


@dataclass(frozen=True)
class SpendingAnalytics:
    period_days: int
    total_spent: Decimal
    total_transactions: int
    average_transaction_amount: Decimal
    categories: List[CategorySpend]
    ledger_totals: Dict[str, Decimal]


class TransactionHistoryService:
    def __init__(self, session_factory: sessionmaker, ledger: SpendLedgerService, clock: Clock = get_naive_utc_now):
        self.session_factory = session_factory
        self.ledger = ledger
        self.clock = clock

    def list_for_user(
        self,
        user_id: str,
        category: Optional[str] = None,
        status: Optional[CardTransactionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionPage:
        """Newest first; filters apply before paging so total counts every match"""
        conditions = [CardTransaction.user_id == user_id]
        if category:
            conditions.append(CardTransaction.category == category)
        if status is not None:
            conditions.append(CardTransaction.status == status.value)

        with session_scope(self.session_factory) as db:
            total = db.execute(select(func.count(CardTransaction.id)).where(*conditions)).scalar_one()
            rows = list(db.execute(
                select(CardTransaction)
                .where(*conditions)
                .order_by(CardTransaction.created_at.desc(), CardTransaction.id)
                .limit(limit)
                .offset(offset)
            ).scalars())
        return TransactionPage(transactions=rows, total=total, limit=limit, offset=offset)

    def get_for_user(self, user_id: str, transaction_id: str) -> Optional[CardTransaction]:
        """None when the transaction does not exist or belongs to another user"""
        with session_scope(self.session_factory) as db:
            transaction = db.get(CardTransaction, transaction_id)
        if transaction is None:
            return None
        if transaction.user_id != user_id:
            logger.warning(f"⚠️ TRANSACTION_ACCESS_DENIED: user {user_id} requested transaction {transaction_id}")
            return None
        return transaction

    def spending_analytics(self, user_id: str, period_days: int = 30) -> SpendingAnalytics:
        """Settled spend per category over the trailing period, plus all-time ledger totals"""
        since = self.clock() - timedelta(days=period_days)
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(
                    CardTransaction.category,
                    func.count(CardTransaction.id),
                    func.sum(CardTransaction.amount),
                )
                .where(
                    CardTransaction.user_id == user_id,
                    CardTransaction.status == CardTransactionStatus.SETTLED.value,
                    CardTransaction.created_at >= since,
                )
                .group_by(CardTransaction.category)
            ).all()

        per_category = [
            (category, int(count), Decimal(str(amount or 0)).quantize(CENT))
            for category, count, amount in rows
        ]
        per_category.sort(key=lambda item: item[2], reverse=True)

        total_spent = sum((amount for _, _, amount in per_category), Decimal("0")).quantize(CENT)
        total_transactions = sum(count for _, count, _ in per_category)

        categories = [
            CategorySpend(
                category=category,
                total_amount=amount,
                transaction_count=count,
                average_amount=(amount / count).quantize(CENT),
                percentage=int((amount * 100 / total_spent).quantize(Decimal("1"))) if total_spent else 0,
            )
            for category, count, amount in per_category
        ]
        average = (total_spent / total_transactions).quantize(CENT) if total_transactions else Decimal("0.00")

        return SpendingAnalytics(
            period_days=period_days,
            total_spent=total_spent,
            total_transactions=total_transactions,
            average_transaction_amount=average,
            categories=categories,
            ledger_totals=self.ledger.totals_for(user_id),
        )
