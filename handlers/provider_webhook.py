"""
Card Provider Webhook Handler

Flow: Verify signature → Parse & classify event → Settlement Event Processor
- Invalid or missing signature: 401, nothing touched
- Malformed or irrelevant event: 200, acknowledged so the provider stops redelivering
- Unexpected failure: 500, the provider redelivers and idempotent processing absorbs the repeat
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from config import Config
from services.settlement_event_processor import MalformedEventError, parse_provider_event
from utils.webhook_signature import validate_webhook_signature

logger = logging.getLogger(__name__)

# Create FastAPI router
router = APIRouter()


def _webhook_secret(request: Request) -> Optional[str]:
    return getattr(request.app.state, "webhook_secret", None) or Config.LITHIC_WEBHOOK_SECRET


@router.post("/webhooks/provider")
async def provider_webhook(request: Request):
    body = await request.body()
    signature = request.headers.get(Config.PROVIDER_SIGNATURE_HEADER)

    if not validate_webhook_signature(body, signature, _webhook_secret(request)):
        logger.critical(
            f"🚨 WEBHOOK_SECURITY: Invalid or missing {Config.PROVIDER_SIGNATURE_HEADER} from "
            f"{request.client.host if request.client else 'unknown'}"
        )
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = parse_provider_event(body)
    except MalformedEventError as e:
        logger.warning(f"⚠️ WEBHOOK_MALFORMED: {e} - acknowledged without processing")
        return {"received": True, "processed": False, "reason": "malformed"}

    logger.info(f"📥 PROVIDER_WEBHOOK: {event.event_type} → {event.kind.value} (txn={event.transaction_token})")

    container = request.app.state.container
    try:
        result = await container.events.process(event)
    except Exception as e:
        logger.error(f"❌ PROVIDER_WEBHOOK: Unexpected error processing {event.event_type}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    return {
        "received": True,
        "processed": bool(result.executed) and not result.duplicate,
        "kind": result.kind.value,
        "reason": result.note,
    }
