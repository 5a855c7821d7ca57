"""
Transaction history routes - paged listing, per-transaction detail and spending analytics.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request

from handlers.card_routes import _require_user
from models import CardTransaction, CardTransactionStatus
from utils.datetime_helpers import to_iso

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transactions")


def _transaction_payload(transaction: CardTransaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "amount": str(transaction.amount),
        "category": transaction.category,
        "merchantName": transaction.merchant_name,
        "merchantMcc": transaction.merchant_mcc,
        "status": transaction.status,
        "createdAt": to_iso(transaction.created_at),
        "updatedAt": to_iso(transaction.updated_at),
    }


@router.get("")
async def list_transactions(
    request: Request,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    category: Optional[str] = Query(None, max_length=50),
    status: Optional[CardTransactionStatus] = Query(None),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    user_id = _require_user(x_user_id)
    history = request.app.state.container.transactions

    page = await asyncio.to_thread(history.list_for_user, user_id, category, status, limit, offset)

    return {
        "transactions": [_transaction_payload(t) for t in page.transactions],
        "pagination": {"limit": page.limit, "offset": page.offset, "total": page.total},
    }


# Registered before /{transaction_id} so "analytics" is not read as an id
@router.get("/analytics")
async def spending_analytics(
    request: Request,
    period: int = Query(30, ge=1, le=365),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    user_id = _require_user(x_user_id)
    history = request.app.state.container.transactions

    analytics = await asyncio.to_thread(history.spending_analytics, user_id, period)

    return {
        "summary": {
            "totalSpent": str(analytics.total_spent),
            "totalTransactions": analytics.total_transactions,
            "averageTransactionAmount": str(analytics.average_transaction_amount),
            "period": f"{analytics.period_days} days",
        },
        "categoryBreakdown": [
            {
                "category": c.category,
                "totalAmount": str(c.total_amount),
                "transactionCount": c.transaction_count,
                "averageAmount": str(c.average_amount),
                "percentage": c.percentage,
            }
            for c in analytics.categories
        ],
        "ledgerTotals": {category: str(spent) for category, spent in analytics.ledger_totals.items()},
    }


@router.get("/{transaction_id}")
async def transaction_details(
    transaction_id: str,
    request: Request,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    user_id = _require_user(x_user_id)
    history = request.app.state.container.transactions

    transaction = await asyncio.to_thread(history.get_for_user, user_id, transaction_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")

    payload = _transaction_payload(transaction)
    payload["providerTransactionId"] = transaction.provider_transaction_id
    payload["authorizationSessionId"] = transaction.session_id
    payload["instrumentId"] = transaction.instrument_id
    return payload
