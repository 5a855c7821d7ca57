"""
Card API routes - authorize a spending window, lock now, status and details.
User identity arrives from the upstream auth layer in the X-User-Id header.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from models import AuthorizationSession, InstrumentStatus
from services.authorization_session_manager import (
    ActiveSessionConflictError,
    InvalidAuthorizationRequestError,
)
from services.card_authorization_service import AuthorizationWindowClosedError
from services.instrument_provider import InstrumentProviderError
from services.instrument_state_controller import InstrumentNotFoundError
from utils.datetime_helpers import to_iso

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/card")


class AuthorizeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount_limit: Decimal = Field(alias="amountLimit", gt=0)
    time_limit: int = Field(alias="timeLimit")
    category_mcc: Optional[str] = Field(default=None, alias="categoryMcc", min_length=4, max_length=4)
    category: Optional[str] = Field(default=None, max_length=50)
    merchant_name: Optional[str] = Field(default=None, alias="merchantName", max_length=100)


def _require_user(x_user_id: Optional[str]) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity")
    return x_user_id.strip()


def _session_payload(session: Optional[AuthorizationSession]) -> Optional[Dict[str, Any]]:
    if session is None:
        return None
    return {
        "sessionId": session.id,
        "amountLimit": str(session.amount_limit),
        "category": session.category_constraint,
        "merchantName": session.merchant_constraint,
        "status": session.status,
        "createdAt": to_iso(session.created_at),
        "expiresAt": to_iso(session.expires_at),
    }


@router.post("/authorize")
async def authorize_card(
    payload: AuthorizeRequest,
    request: Request,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    user_id = _require_user(x_user_id)
    cards = request.app.state.container.cards

    try:
        grant = await cards.authorize(
            user_id=user_id,
            amount_limit=payload.amount_limit,
            category_constraint=payload.category_mcc or payload.category,
            duration_minutes=payload.time_limit,
            merchant_constraint=payload.merchant_name,
        )
    except InvalidAuthorizationRequestError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except InstrumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ActiveSessionConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AuthorizationWindowClosedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InstrumentProviderError:
        raise HTTPException(status_code=502, detail="Card provider did not confirm unlock; card remains locked")

    return {
        "success": True,
        "message": "Card unlocked successfully",
        "sessionId": grant.session_id,
        "instrumentId": grant.instrument_id,
        "amountLimit": str(grant.amount_limit),
        "category": grant.category_constraint,
        "merchantName": grant.merchant_constraint,
        "expiresAt": to_iso(grant.expires_at),
        "timerArmed": grant.timer_armed,
    }


@router.post("/lock")
async def lock_card(request: Request, x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    user_id = _require_user(x_user_id)
    cards = request.app.state.container.cards

    try:
        confirmation = await cards.lock(user_id)
    except InstrumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InstrumentProviderError:
        raise HTTPException(status_code=502, detail="Card provider did not confirm lock; retry scheduled")

    return {
        "success": True,
        "message": "Card locked successfully",
        "locked": confirmation.locked,
        "instrumentId": confirmation.instrument_id,
        "cancelledSessionId": confirmation.cancelled_session_id,
    }


@router.get("/status")
async def card_status(request: Request, x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    user_id = _require_user(x_user_id)
    cards = request.app.state.container.cards

    try:
        status = await cards.status(user_id)
    except InstrumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "instrumentId": status.instrument_id,
        "status": status.instrument_status,
        "locked": status.instrument_status == InstrumentStatus.LOCKED.value,
        "activeSession": _session_payload(status.active_session),
    }


@router.get("/details")
async def card_details(request: Request, x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    user_id = _require_user(x_user_id)
    cards = request.app.state.container.cards

    try:
        details = await cards.details(user_id)
    except InstrumentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InstrumentProviderError:
        raise HTTPException(status_code=502, detail="Card provider unavailable")

    return {
        "instrumentId": details.instrument_id,
        "status": details.instrument_status,
        "providerState": details.provider_state,
        "cardNumber": details.masked_number,
        "expMonth": details.exp_month,
        "expYear": details.exp_year,
    }
