"""
Card issuing provider integration (Lithic)
Outbound unfreeze / freeze / retrieve calls; all are idempotent state-setting calls by contract
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Protocol

import aiohttp

logger = logging.getLogger(__name__)

# Budget categories offered by the client mapped to a representative merchant category code
CATEGORY_MCC_CODES: Dict[str, str] = {
    "groceries": "5411",
    "dining": "5812",
    "entertainment": "7832",
    "gas": "5541",
    "shopping": "5311",
}

PROVIDER_LOCKED_STATES = {"PAUSED", "CLOSED"}


class InstrumentProviderError(Exception):
    """Raised when the provider did not confirm a card command"""

    def __init__(self, operation: str, message: str, retryable: bool = True, status_code: Optional[int] = None):
        self.operation = operation
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(f"{operation} failed: {message}")


@dataclass(frozen=True)
class UnlockControls:
    """Spending constraints applied while the card is open"""
    spend_limit: Decimal
    category: Optional[str] = None
    merchant: Optional[str] = None


@dataclass(frozen=True)
class ProviderCardDetails:
    provider_ref: str
    state: str
    last_four: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        return self.state.upper() in PROVIDER_LOCKED_STATES

    @property
    def masked_number(self) -> Optional[str]:
        return f"****-****-****-{self.last_four}" if self.last_four else None


class InstrumentProvider(Protocol):
    async def unfreeze(self, provider_ref: str, controls: UnlockControls) -> None: ...

    async def freeze(self, provider_ref: str) -> None: ...

    async def retrieve(self, provider_ref: str) -> ProviderCardDetails: ...

    async def close(self) -> None: ...


def resolve_mcc(category: Optional[str]) -> Optional[str]:
    """Category name → MCC; four-digit codes pass through unchanged"""
    if not category:
        return None
    candidate = category.strip()
    if candidate.isdigit() and len(candidate) == 4:
        return candidate
    return CATEGORY_MCC_CODES.get(candidate.lower())


def to_minor_units(amount: Decimal) -> int:
    """Provider amounts are in cents"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def build_spending_controls(controls: UnlockControls) -> Dict[str, Any]:
    """Spending controls body for an unfreeze call"""
    body: Dict[str, Any] = {
        "spend_limit": to_minor_units(controls.spend_limit),
        "spend_limit_duration": "TRANSACTION",
    }
    mcc = resolve_mcc(controls.category)
    if mcc:
        body["allowed_mcc"] = [mcc]
    if controls.merchant:
        body["memo"] = f"FinLock: {controls.merchant}"[:100]
    return body


class LithicInstrumentProvider:
    """Lithic card API client over aiohttp with bounded timeouts"""

    def __init__(self, api_key: str, base_url: str, timeout_seconds: float = 10.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.session: Optional[aiohttp.ClientSession] = None
        logger.info(f"💳 Lithic provider initialized ({self.base_url})")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": self.api_key,
            "Content-Type": "application/json",
            "User-Agent": "FinLock-Backend/1.0.0",
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(headers=self._get_headers(), timeout=self.timeout)
        return self.session

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    async def _request(self, operation: str, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        session = await self._get_session()
        try:
            async with session.request(method, url, json=body) as response:
                if response.status >= 400:
                    detail = await response.text()
                    retryable = response.status >= 500 or response.status == 429
                    logger.error(f"❌ LITHIC_API_ERROR: {operation} {method} {path} → {response.status}: {detail[:300]}")
                    raise InstrumentProviderError(
                        operation, f"HTTP {response.status}", retryable=retryable, status_code=response.status
                    )
                if response.content_length == 0:
                    return {}
                return await response.json(content_type=None) or {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error_type = type(e).__name__
            logger.error(f"❌ LITHIC_NETWORK_ERROR: {operation} {method} {path} - {error_type}: {e}")
            raise InstrumentProviderError(operation, f"{error_type}: {e}", retryable=True) from e

    async def unfreeze(self, provider_ref: str, controls: UnlockControls) -> None:
        await self._request("unfreeze", "PATCH", f"/v1/cards/{provider_ref}", {"state": "OPEN"})
        await self._request(
            "unfreeze", "POST", f"/v1/cards/{provider_ref}/spending_controls", build_spending_controls(controls)
        )
        logger.info(f"🔓 LITHIC: Card {provider_ref} opened (limit={controls.spend_limit}, category={controls.category})")

    async def freeze(self, provider_ref: str) -> None:
        await self._request("freeze", "PATCH", f"/v1/cards/{provider_ref}", {"state": "PAUSED"})
        logger.info(f"🔒 LITHIC: Card {provider_ref} paused")

    async def retrieve(self, provider_ref: str) -> ProviderCardDetails:
        data = await self._request("retrieve", "GET", f"/v1/cards/{provider_ref}")
        return ProviderCardDetails(
            provider_ref=data.get("token", provider_ref),
            state=str(data.get("state", "UNKNOWN")),
            last_four=data.get("last_four"),
            exp_month=data.get("exp_month"),
            exp_year=data.get("exp_year"),
        )


class DevelopmentInstrumentProvider:
    """Stand-in used when no Lithic API key is configured: logs commands and tracks state in memory"""

    def __init__(self):
        self.states: Dict[str, str] = {}
        logger.warning("⚠️ DEV_PROVIDER: No LITHIC_API_KEY configured - card commands are simulated")

    async def unfreeze(self, provider_ref: str, controls: UnlockControls) -> None:
        self.states[provider_ref] = "OPEN"
        logger.info(f"🔓 DEV_PROVIDER: Mock card unfrozen {provider_ref} controls={build_spending_controls(controls)}")

    async def freeze(self, provider_ref: str) -> None:
        self.states[provider_ref] = "PAUSED"
        logger.info(f"🔒 DEV_PROVIDER: Mock card frozen {provider_ref}")

    async def retrieve(self, provider_ref: str) -> ProviderCardDetails:
        return ProviderCardDetails(
            provider_ref=provider_ref,
            state=self.states.get(provider_ref, "PAUSED"),
            last_four="1234",
            exp_month="12",
            exp_year="2030",
        )

    async def close(self) -> None:
        return None
