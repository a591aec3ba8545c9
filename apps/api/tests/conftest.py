import os

os.environ.setdefault("ALLOW_INSECURE_DEFAULTS", "true")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SCHEDULED_JOBS_ENABLED", "false")

from datetime import datetime, timezone  # noqa: E402
from typing import Any, Dict, Iterable, List, Optional  # noqa: E402

import pytest  # noqa: E402

from main import app  # noqa: E402
from routers import rate_limit  # noqa: E402
from services.billing_oracle import SubscriberInfo  # noqa: E402
from services.ledger_store import InMemoryLedgerRepository  # noqa: E402


def iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class FakeBillingOracle:
    """Serves a canned RevenueCat subscriber body; can fail for chosen uids."""

    def __init__(
        self,
        payload: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
        failing_uids: Iterable[str] = (),
    ):
        self.payload = payload if payload is not None else {"subscriber": {}}
        self.error = error
        self.failing_uids = set(failing_uids)
        self.calls: List[str] = []

    async def get_subscriber(self, uid: str) -> SubscriberInfo:
        self.calls.append(uid)
        if self.error is not None and (not self.failing_uids or uid in self.failing_uids):
            raise self.error
        return SubscriberInfo(raw=self.payload)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def repo():
    return InMemoryLedgerRepository()


@pytest.fixture
def make_oracle():
    """Build a fake billing oracle from entitlement / top-up fixtures."""

    def _make(
        *,
        expires_date: Optional[datetime] = None,
        purchase_date: Optional[datetime] = None,
        product_id: str = "premium_monthly",
        non_subscriptions: Optional[Dict[str, List[str]]] = None,
        error: Optional[Exception] = None,
        failing_uids: Iterable[str] = (),
    ) -> FakeBillingOracle:
        subscriber: Dict[str, Any] = {"entitlements": {}, "non_subscriptions": {}, "subscriptions": {}}
        if expires_date is not None:
            entitlement = {"expires_date": iso(expires_date), "product_identifier": product_id}
            if purchase_date is not None:
                entitlement["purchase_date"] = iso(purchase_date)
            subscriber["entitlements"]["Pro"] = entitlement
        for product, ids in (non_subscriptions or {}).items():
            subscriber["non_subscriptions"][product] = [{"id": tx_id} for tx_id in ids]
        return FakeBillingOracle({"subscriber": subscriber}, error=error, failing_uids=failing_uids)

    return _make
