"""RevenueCat subscriber lookups used to verify purchases and renewals."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

import httpx

from config import require_billing_api_key, settings
from services.errors import BillingOracleError

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Entitlement:
    expires_date: Optional[datetime]
    purchase_date: Optional[datetime]
    product_identifier: Optional[str]


@dataclass(frozen=True)
class SubscriberInfo:
    """Subset of the RevenueCat v1 ``subscriber`` object this service relies on."""

    raw: Dict[str, Any]

    @property
    def _subscriber(self) -> Dict[str, Any]:
        subscriber = self.raw.get("subscriber")
        return subscriber if isinstance(subscriber, dict) else {}

    def entitlement(self, entitlement_id: Optional[str] = None) -> Optional[Entitlement]:
        entitlements = self._subscriber.get("entitlements") or {}
        payload = entitlements.get(entitlement_id or settings.BILLING_ENTITLEMENT_ID)
        if not isinstance(payload, dict):
            return None
        return Entitlement(
            expires_date=_parse_timestamp(payload.get("expires_date")),
            purchase_date=_parse_timestamp(payload.get("purchase_date")),
            product_identifier=payload.get("product_identifier"),
        )

    def non_subscription_ids(self, product_id: str) -> List[str]:
        purchases = (self._subscriber.get("non_subscriptions") or {}).get(product_id) or []
        return [str(row.get("id")) for row in purchases if isinstance(row, dict) and row.get("id")]

    def _subscription(self, product_id: str) -> Dict[str, Any]:
        subscription = (self._subscriber.get("subscriptions") or {}).get(product_id)
        return subscription if isinstance(subscription, dict) else {}

    def purchase_date(self, product_id: str, now: Optional[datetime] = None) -> datetime:
        entitlement = self.entitlement()
        if entitlement and entitlement.purchase_date:
            return entitlement.purchase_date
        original = _parse_timestamp(self._subscription(product_id).get("original_purchase_date"))
        return original or now or datetime.now(timezone.utc)

    def original_transaction_id(self, product_id: str) -> str:
        return str(self._subscription(product_id).get("original_purchase_date") or product_id)


class BillingOracle(Protocol):
    async def get_subscriber(self, uid: str) -> SubscriberInfo:
        ...


class RevenueCatClient:
    """Thin async client for ``GET /subscribers/{app_user_id}``."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or settings.REVENUECAT_API_URL).rstrip("/")
        self.timeout = float(timeout or settings.BILLING_ORACLE_TIMEOUT_SECONDS)
        self.transport = transport

    async def get_subscriber(self, uid: str) -> SubscriberInfo:
        try:
            api_key = self.api_key or require_billing_api_key()
        except ValueError as exc:
            raise BillingOracleError(str(exc)) from exc
        url = f"{self.base_url}/subscribers/{quote(uid, safe='')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(
                    url,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.HTTPError as exc:
            logger.error("RevenueCat request for %s failed: %s", uid, exc)
            raise BillingOracleError(f"RevenueCat request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error("RevenueCat API error for %s: %s - %s", uid, response.status_code, response.text[:500])
            raise BillingOracleError(f"RevenueCat API error: {response.status_code}", status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise BillingOracleError("RevenueCat returned a non-JSON body") from exc
        return SubscriberInfo(raw=payload if isinstance(payload, dict) else {})


def get_billing_oracle() -> BillingOracle:
    """FastAPI dependency returning the configured billing oracle."""
    return RevenueCatClient()
