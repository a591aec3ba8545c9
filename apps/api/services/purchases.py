"""Purchase validation: billing-oracle verification followed by an atomic ledger credit.

The oracle is always queried outside the ledger transaction. When it cannot be
reached nothing is credited.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, Optional, Tuple

from config import settings
from services.billing_oracle import BillingOracle, Entitlement, SubscriberInfo
from services.credits import free_tier_ledger, require_ledger
from services.errors import (
    AlreadyExistsError,
    BillingOracleError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
)
from services.grants import apply_grant, get_plan_config
from services.ledger_store import LedgerRepository
from services.ledger_types import (
    SUBSCRIPTION_ACTIVE,
    LedgerSnapshot,
    LedgerWrites,
    ProcessedTransaction,
    SubscriptionRecord,
    UserLedger,
)

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = (
    "This purchase has already been processed. If you believe this is an error, please contact support."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _fetch_subscriber(oracle: BillingOracle, uid: str, failure_message: str) -> SubscriberInfo:
    try:
        return await oracle.get_subscriber(uid)
    except BillingOracleError as exc:
        logger.error("Billing oracle unavailable for user %s: %s", uid, exc)
        raise InternalError(failure_message) from exc


def _top_up_amount(product_id: Any) -> int:
    amount = settings.TOPUP_PRODUCTS.get(product_id) if isinstance(product_id, str) else None
    if not amount or amount <= 0:
        raise InvalidArgumentError("Invalid credit top-up product ID")
    return int(amount)


def _credit_top_up(snapshot: LedgerSnapshot, *, transaction_id: str, product_id: str, amount: int, now: datetime):
    if snapshot.processed_transaction is not None:
        raise AlreadyExistsError(ALREADY_PROCESSED, transaction_id=transaction_id)
    ledger = require_ledger(snapshot)
    if not ledger.is_initialized:
        ledger = free_tier_ledger(ledger, snapshot.uid, now)
    previous = ledger.balance
    # Top-ups are exempt from the plan cap.
    new_balance = previous + amount
    writes = LedgerWrites(
        ledger=replace(ledger, credits=new_balance),
        processed_transaction=ProcessedTransaction(
            transaction_id=transaction_id,
            uid=snapshot.uid,
            product_id=product_id,
            credits_granted=amount,
            processed_at=now,
        ),
    )
    return writes, {"credits_added": amount, "new_balance": new_balance, "previous_balance": previous}


async def purchase_top_up(
    uid: str,
    repo: LedgerRepository,
    oracle: BillingOracle,
    product_id: Any,
    transaction_id: Any,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Verify a one-time purchase and add its credits exactly once."""
    amount = _top_up_amount(product_id)
    if not isinstance(transaction_id, str) or not transaction_id.strip():
        raise InvalidArgumentError("Transaction ID is required for purchase verification")
    transaction_id = transaction_id.strip()

    logger.info("Processing top-up for user %s, transaction: %s", uid, transaction_id)
    if await repo.get_processed_transaction(transaction_id) is not None:
        logger.warning("Transaction %s already processed", transaction_id)
        raise AlreadyExistsError(ALREADY_PROCESSED, transaction_id=transaction_id)

    subscriber = await _fetch_subscriber(oracle, uid, "Failed to process credit top-up")
    if transaction_id not in subscriber.non_subscription_ids(product_id):
        logger.error("Transaction %s not found for product %s (user %s)", transaction_id, product_id, uid)
        raise FailedPreconditionError(
            "Purchase verification failed. Please try again or contact support.",
            reason="verification_failed",
        )

    result = await repo.run_transaction(
        uid,
        partial(
            _credit_top_up,
            transaction_id=transaction_id,
            product_id=product_id,
            amount=amount,
            now=now or _utcnow(),
        ),
        transaction_id=transaction_id,
    )
    logger.info(
        "User %s purchased credit top-up. Added %s credits. Balance: %s -> %s",
        uid,
        result["credits_added"],
        result["previous_balance"],
        result["new_balance"],
    )
    return {"credits_added": result["credits_added"], "new_balance": result["new_balance"]}


@dataclass(frozen=True)
class VerifiedSubscription:
    product_id: str
    plan: str
    purchase_date: datetime
    expires_date: datetime
    original_transaction_id: str


def _subscription_plan(product_id: Any) -> str:
    plan = settings.SUBSCRIPTION_PRODUCTS.get(product_id) if isinstance(product_id, str) else None
    if not plan:
        raise InvalidArgumentError(f"Invalid product ID: {product_id}")
    return plan


async def _verify_subscription(
    uid: str,
    oracle: BillingOracle,
    product_id: str,
    plan: str,
    now: datetime,
    *,
    missing_message: str,
    expired_message: str,
    failure_message: str,
) -> VerifiedSubscription:
    subscriber = await _fetch_subscriber(oracle, uid, failure_message)
    entitlement: Optional[Entitlement] = subscriber.entitlement()
    if entitlement is None or entitlement.expires_date is None:
        logger.error("No active subscription found for user %s", uid)
        raise FailedPreconditionError(missing_message, reason="no_active_subscription")
    if entitlement.expires_date <= now:
        logger.error("Subscription expired for user %s: %s", uid, entitlement.expires_date.isoformat())
        raise FailedPreconditionError(expired_message, reason="expired")
    return VerifiedSubscription(
        product_id=product_id,
        plan=plan,
        purchase_date=subscriber.purchase_date(product_id, now),
        expires_date=entitlement.expires_date,
        original_transaction_id=subscriber.original_transaction_id(product_id),
    )


def _is_replayed_purchase(existing: Optional[SubscriptionRecord], verified: VerifiedSubscription) -> bool:
    return (
        existing is not None
        and existing.status == SUBSCRIPTION_ACTIVE
        and existing.original_transaction_id == verified.original_transaction_id
        and existing.expires_date == verified.expires_date
    )


def _activate_subscription(
    snapshot: LedgerSnapshot,
    *,
    verified: VerifiedSubscription,
    bonus: int,
    now: datetime,
) -> Tuple[LedgerWrites, int]:
    ledger = snapshot.ledger or UserLedger(uid=snapshot.uid, created_at=now)
    config = get_plan_config(verified.plan)
    current = ledger.balance
    replayed = _is_replayed_purchase(snapshot.subscription, verified)
    new_credits = current if replayed else apply_grant(current, bonus, config.max_credits)
    updated = replace(
        ledger,
        plan=verified.plan,
        credits=new_credits,
        max_credits=config.max_credits,
        last_monthly_grant=ledger.last_monthly_grant if replayed else now,
    )
    record = SubscriptionRecord(
        uid=snapshot.uid,
        product_id=verified.product_id,
        plan=verified.plan,
        purchase_date=verified.purchase_date,
        expires_date=verified.expires_date,
        original_transaction_id=verified.original_transaction_id,
        last_credit_grant=snapshot.subscription.last_credit_grant if replayed else now,
        status=SUBSCRIPTION_ACTIVE,
    )
    return LedgerWrites(ledger=updated, subscription=record), new_credits - current


async def purchase_subscription(
    uid: str,
    repo: LedgerRepository,
    oracle: BillingOracle,
    product_id: Any,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Verify a new subscription, switch the plan and grant the purchase bonus."""
    plan = _subscription_plan(product_id)
    current = now or _utcnow()
    logger.info("Processing purchase for user %s: %s", uid, product_id)
    verified = await _verify_subscription(
        uid,
        oracle,
        product_id,
        plan,
        current,
        missing_message="No active subscription found. Please try again.",
        expired_message="Subscription has expired. Please renew your subscription.",
        failure_message="Failed to process purchase. Please try again.",
    )
    granted = await repo.run_transaction(
        uid,
        partial(
            _activate_subscription,
            verified=verified,
            bonus=max(int(settings.SUBSCRIPTION_PURCHASE_BONUS), 0),
            now=current,
        ),
    )
    logger.info(
        "Purchase validated for %s: %s, granted %s credits, expires: %s",
        uid,
        plan,
        granted,
        verified.expires_date.isoformat(),
    )
    return {"plan": plan, "credits_granted": granted, "expires_date": verified.expires_date.isoformat()}


def _restore_subscription(snapshot: LedgerSnapshot, *, verified: VerifiedSubscription, now: datetime):
    ledger = snapshot.ledger or UserLedger(uid=snapshot.uid, credits=0, created_at=now)
    config = get_plan_config(verified.plan)
    # Balance and grant cursors are carried over untouched.
    updated = replace(ledger, plan=verified.plan, credits=ledger.balance, max_credits=config.max_credits)
    existing = snapshot.subscription
    record = SubscriptionRecord(
        uid=snapshot.uid,
        product_id=verified.product_id,
        plan=verified.plan,
        purchase_date=verified.purchase_date,
        expires_date=verified.expires_date,
        original_transaction_id=verified.original_transaction_id,
        last_credit_grant=existing.last_credit_grant if existing is not None else now,
        status=SUBSCRIPTION_ACTIVE,
    )
    return LedgerWrites(ledger=updated, subscription=record), updated.balance


async def restore_subscription(
    uid: str,
    repo: LedgerRepository,
    oracle: BillingOracle,
    product_id: Any,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Sync plan and subscription status from the oracle. Never grants credits."""
    plan = _subscription_plan(product_id)
    current = now or _utcnow()
    logger.info("Processing restore for user %s: %s", uid, product_id)
    verified = await _verify_subscription(
        uid,
        oracle,
        product_id,
        plan,
        current,
        missing_message="No active subscription found to restore.",
        expired_message="Subscription has expired.",
        failure_message="Failed to restore purchase. Please try again.",
    )
    await repo.run_transaction(uid, partial(_restore_subscription, verified=verified, now=current))
    logger.info(
        "Restore validated for %s: %s, credits unchanged, expires: %s",
        uid,
        plan,
        verified.expires_date.isoformat(),
    )
    return {"plan": plan, "expires_date": verified.expires_date.isoformat()}
