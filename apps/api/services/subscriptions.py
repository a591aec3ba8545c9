"""Daily subscription reconciliation against the billing oracle."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from functools import partial
from typing import Dict, Optional

from services.billing_oracle import BillingOracle
from services.grants import PLAN_FREE, apply_grant, get_plan_config
from services.ledger_store import LedgerRepository
from services.ledger_types import (
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_EXPIRED,
    LedgerSnapshot,
    LedgerWrites,
)

logger = logging.getLogger(__name__)

OUTCOME_RENEWED = "renewed"
OUTCOME_EXPIRED = "expired"
OUTCOME_SKIPPED = "skipped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_due(snapshot: LedgerSnapshot, now: datetime) -> bool:
    record = snapshot.subscription
    return record is not None and record.status == SUBSCRIPTION_ACTIVE and record.expires_date <= now


def _renew(snapshot: LedgerSnapshot, *, new_expires_date: datetime, now: datetime):
    if not _is_due(snapshot, now):
        # Already handled by a concurrent run or a retried job.
        return LedgerWrites(), OUTCOME_SKIPPED
    record = snapshot.subscription
    writes = LedgerWrites(
        subscription=replace(record, expires_date=new_expires_date, last_credit_grant=now),
    )
    ledger = snapshot.ledger
    if ledger is not None:
        config = get_plan_config(record.plan)
        cap = ledger.max_credits if ledger.max_credits is not None else config.max_credits
        writes.ledger = replace(
            ledger,
            credits=apply_grant(ledger.balance, config.monthly_credits, cap),
            last_monthly_grant=now,
        )
    return writes, OUTCOME_RENEWED


def _expire(snapshot: LedgerSnapshot, *, now: datetime):
    if not _is_due(snapshot, now):
        return LedgerWrites(), OUTCOME_SKIPPED
    writes = LedgerWrites(subscription=replace(snapshot.subscription, status=SUBSCRIPTION_EXPIRED))
    if snapshot.ledger is not None:
        # The balance is left as is; future free-tier grants simply stop adding to it.
        writes.ledger = replace(
            snapshot.ledger,
            plan=PLAN_FREE,
            max_credits=get_plan_config(PLAN_FREE).max_credits,
        )
    return writes, OUTCOME_EXPIRED


async def reconcile_subscription(
    uid: str,
    repo: LedgerRepository,
    oracle: BillingOracle,
    now: Optional[datetime] = None,
) -> str:
    """Renew or expire one due subscription. Returns the outcome."""
    current = now or _utcnow()
    subscriber = await oracle.get_subscriber(uid)
    entitlement = subscriber.entitlement()
    if entitlement is not None and entitlement.expires_date is not None and entitlement.expires_date > current:
        outcome = await repo.run_transaction(
            uid,
            partial(_renew, new_expires_date=entitlement.expires_date, now=current),
        )
        if outcome == OUTCOME_RENEWED:
            logger.info(
                "Renewal processed for %s, expires: %s",
                uid,
                entitlement.expires_date.isoformat(),
            )
        return outcome

    outcome = await repo.run_transaction(uid, partial(_expire, now=current))
    if outcome == OUTCOME_EXPIRED:
        logger.info("Subscription expired for %s, downgraded to free plan", uid)
    return outcome


async def reconcile_subscriptions(
    repo: LedgerRepository,
    oracle: BillingOracle,
    now: Optional[datetime] = None,
    page_size: int = 200,
) -> Dict[str, int]:
    """Process every active subscription whose expiry has passed.

    Per-subscription failures are counted and logged. Failing to list due
    subscriptions at all propagates so the job queue can retry the run.
    """
    current = now or _utcnow()
    summary = {"processed": 0, "renewed": 0, "expired": 0, "errors": 0}
    after: Optional[str] = None
    logger.info("Starting subscription renewal processing")
    while True:
        page = await repo.list_due_subscriptions(current, page_size, after=after)
        if not page:
            break
        logger.info("Found %s subscriptions to check", len(page))
        for record in page:
            summary["processed"] += 1
            try:
                outcome = await reconcile_subscription(record.uid, repo, oracle, current)
            except Exception:
                summary["errors"] += 1
                logger.exception("Error processing subscription for user %s", record.uid)
                continue
            if outcome in (OUTCOME_RENEWED, OUTCOME_EXPIRED):
                summary[outcome] += 1
        after = page[-1].uid
    logger.info(
        "Subscription renewal processing complete. processed=%s renewed=%s expired=%s errors=%s",
        summary["processed"],
        summary["renewed"],
        summary["expired"],
        summary["errors"],
    )
    return summary
