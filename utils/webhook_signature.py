"""
Webhook signature validation for provider event delivery.
HMAC-SHA256 over the raw request body, compared in constant time.
"""

import hashlib
import hmac
import logging
from typing import Optional, Union

logger = logging.getLogger(__name__)


def compute_webhook_signature(payload: Union[bytes, str], secret: str) -> str:
    """Hex HMAC-SHA256 of the raw payload"""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def validate_webhook_signature(payload: Union[bytes, str], signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Validate webhook signature

    Args:
        payload: The raw webhook body exactly as received
        signature: The signature from the provider header (hex, optionally "sha256=" prefixed)
        secret: The shared webhook secret

    Returns:
        True if signature is valid, False otherwise (including missing signature or secret)
    """
    if not signature or not secret:
        return False

    candidate = signature.strip()
    if candidate.startswith("sha256="):
        candidate = candidate[len("sha256="):]

    try:
        expected_signature = compute_webhook_signature(payload, secret)
        # Use secure comparison
        return hmac.compare_digest(candidate.lower().encode("ascii"), expected_signature.encode("ascii"))
    except (UnicodeEncodeError, TypeError) as e:
        logger.warning(f"⚠️ WEBHOOK_SIGNATURE: Unreadable signature header: {e}")
        return False
