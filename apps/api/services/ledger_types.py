"""Plain ledger records passed between transaction bodies and the store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, TypeVar


SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_EXPIRED = "expired"
SUBSCRIPTION_CANCELLED = "cancelled"

T = TypeVar("T")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class UserLedger:
    """Per-identity ledger document. Credit fields stay None until initialized."""

    uid: str
    plan: Optional[str] = None
    credits: Optional[int] = None
    max_credits: Optional[int] = None
    last_monthly_grant: Optional[datetime] = None
    active_generations: int = 0
    last_generation_at: Optional[datetime] = None
    last_slot_acquired_at: Optional[datetime] = None
    used_free_onboarding_generation: bool = False
    created_at: Optional[datetime] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    version: int = 0

    @property
    def is_initialized(self) -> bool:
        return self.credits is not None and self.plan is not None

    @property
    def balance(self) -> int:
        return max(int(self.credits or 0), 0)


@dataclass(frozen=True)
class SubscriptionRecord:
    uid: str
    product_id: str
    plan: str
    purchase_date: datetime
    expires_date: datetime
    original_transaction_id: str
    last_credit_grant: datetime
    status: str = SUBSCRIPTION_ACTIVE
    version: int = 0


@dataclass(frozen=True)
class ProcessedTransaction:
    transaction_id: str
    uid: str
    product_id: str
    credits_granted: int
    processed_at: datetime


@dataclass(frozen=True)
class Identity:
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class LedgerSnapshot:
    """Consistent read of everything a single-user transaction may touch."""

    uid: str
    ledger: Optional[UserLedger] = None
    subscription: Optional[SubscriptionRecord] = None
    processed_transaction: Optional[ProcessedTransaction] = None


@dataclass
class LedgerWrites:
    """Documents to persist when a transaction body commits."""

    ledger: Optional[UserLedger] = None
    subscription: Optional[SubscriptionRecord] = None
    processed_transaction: Optional[ProcessedTransaction] = None

    @property
    def is_empty(self) -> bool:
        return self.ledger is None and self.subscription is None and self.processed_transaction is None


TransactionBody = Callable[[LedgerSnapshot], Tuple[LedgerWrites, T]]
