"""Credit ledger operations: initialization, reads, direct consumption, plan changes."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Dict, Optional

from config import settings
from services.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    RateLimitedError,
)
from services.grants import (
    PAID_PLANS,
    PLAN_FREE,
    VALID_PLANS,
    apply_plan_grant,
    get_plan_config,
    has_cycle_elapsed,
    is_valid_plan,
)
from services.ledger_store import LedgerRepository
from services.ledger_types import LedgerSnapshot, LedgerWrites, UserLedger

logger = logging.getLogger(__name__)

# Reported for documents written before maxCredits existed.
LEGACY_DEFAULT_MAX_CREDITS = 5
PROFILE_NOT_FOUND = "User profile not found. Please try signing out and back in."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def free_tier_ledger(base: Optional[UserLedger], uid: str, now: datetime) -> UserLedger:
    """Return ``base`` (or a fresh document) carrying free-plan credit fields.

    A balance already on the document (e.g. a top-up that landed before the
    credit fields were filled in) is kept as is.
    """
    config = get_plan_config(PLAN_FREE)
    ledger = base or UserLedger(uid=uid)
    return replace(
        ledger,
        plan=PLAN_FREE,
        credits=ledger.credits if ledger.credits is not None else config.monthly_credits,
        max_credits=config.max_credits,
        last_monthly_grant=now,
        created_at=ledger.created_at or now,
    )


def require_ledger(snapshot: LedgerSnapshot) -> UserLedger:
    if snapshot.ledger is None:
        raise NotFoundError(PROFILE_NOT_FOUND)
    return snapshot.ledger


def _initialize(snapshot: LedgerSnapshot, *, now: datetime):
    ledger = snapshot.ledger
    if ledger is not None and ledger.is_initialized:
        return LedgerWrites(), {
            "already_initialized": True,
            "credits": ledger.credits,
            "max_credits": ledger.max_credits,
            "plan": ledger.plan,
        }
    initialized = free_tier_ledger(ledger, snapshot.uid, now)
    return LedgerWrites(ledger=initialized), {
        "already_initialized": False,
        "credits": initialized.credits,
        "max_credits": initialized.max_credits,
        "plan": initialized.plan,
    }


async def initialize_credits(uid: str, repo: LedgerRepository, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Give a new user free-tier credits. Never resets an initialized ledger."""
    result = await repo.run_transaction(uid, partial(_initialize, now=now or _utcnow()))
    if result["already_initialized"]:
        logger.info("Credits already initialized for user %s", uid)
    else:
        logger.info("Credits initialized for user %s", uid)
    return result


async def get_credits(uid: str, repo: LedgerRepository) -> Dict[str, Any]:
    ledger = await repo.get_ledger(uid)
    if ledger is None:
        raise NotFoundError(PROFILE_NOT_FOUND)
    return {
        "credits": ledger.balance,
        "max_credits": ledger.max_credits if ledger.max_credits is not None else LEGACY_DEFAULT_MAX_CREDITS,
        "plan": ledger.plan or PLAN_FREE,
    }


def validate_consume_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidArgumentError("Amount must be a positive integer")
    limit = max(int(settings.MAX_CONSUME_PER_CALL), 1)
    if amount > limit:
        raise InvalidArgumentError(f"Cannot consume more than {limit} credits at once")
    return amount


def _consume(snapshot: LedgerSnapshot, *, amount: int):
    ledger = require_ledger(snapshot)
    current = ledger.balance
    if current < amount:
        raise RateLimitedError(
            f"Insufficient credits. You have {current} credits but need {amount}.",
            reason="insufficient_credits",
            current_credits=current,
        )
    remaining = current - amount
    return LedgerWrites(ledger=replace(ledger, credits=remaining)), {"remaining_credits": remaining}


async def consume_credit(uid: str, repo: LedgerRepository, amount: Any) -> Dict[str, Any]:
    """Atomically deduct ``amount`` credits (1..MAX_CONSUME_PER_CALL)."""
    debit = validate_consume_amount(amount)
    result = await repo.run_transaction(uid, partial(_consume, amount=debit))
    logger.info("User %s consumed %s credit(s). Remaining: %s", uid, debit, result["remaining_credits"])
    return result


def _set_plan(snapshot: LedgerSnapshot, *, plan: str):
    ledger = require_ledger(snapshot)
    config = get_plan_config(plan)
    updated = replace(
        ledger,
        plan=plan,
        max_credits=config.max_credits,
        credits=min(ledger.balance, config.max_credits),
    )
    return LedgerWrites(ledger=updated), {"plan": plan, "max_credits": config.max_credits}


async def set_plan(uid: str, repo: LedgerRepository, plan: Any) -> Dict[str, Any]:
    """Switch plan and cap the balance to the new maximum; never tops it up."""
    if not isinstance(plan, str) or not is_valid_plan(plan):
        raise InvalidArgumentError(f"Invalid plan. Must be one of: {', '.join(VALID_PLANS)}")
    result = await repo.run_transaction(uid, partial(_set_plan, plan=plan))
    logger.info("User %s plan updated to: %s", uid, plan)
    return result


def _update_profile(snapshot: LedgerSnapshot, *, email: Optional[str], display_name: Optional[str], now: datetime):
    ledger = snapshot.ledger or UserLedger(uid=snapshot.uid, created_at=now)
    updated = replace(
        ledger,
        email=email if email is not None else ledger.email,
        display_name=display_name if display_name is not None else ledger.display_name,
    )
    return LedgerWrites(ledger=updated), {
        "uid": snapshot.uid,
        "email": updated.email,
        "display_name": updated.display_name,
        "credits_initialized": updated.is_initialized,
    }


async def update_profile(
    uid: str,
    repo: LedgerRepository,
    *,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Client profile write. Credit fields are left exactly as stored."""
    return await repo.run_transaction(
        uid,
        partial(_update_profile, email=email, display_name=display_name, now=now or _utcnow()),
    )


def _claim_onboarding(snapshot: LedgerSnapshot):
    ledger = require_ledger(snapshot)
    if ledger.used_free_onboarding_generation:
        raise FailedPreconditionError(
            "Free onboarding generation already used. Please use regular generation.",
            reason="onboarding_used",
        )
    return LedgerWrites(ledger=replace(ledger, used_free_onboarding_generation=True)), True


async def claim_free_onboarding_generation(uid: str, repo: LedgerRepository) -> bool:
    """Consume the one-shot onboarding generation. Marked before any generation runs."""
    return await repo.run_transaction(uid, _claim_onboarding)


def _reset_slots(snapshot: LedgerSnapshot, *, cutoff: Optional[datetime] = None):
    ledger = require_ledger(snapshot)
    if cutoff is not None:
        acquired_at = ledger.last_slot_acquired_at
        if ledger.active_generations <= 0 or acquired_at is None or acquired_at >= cutoff:
            return LedgerWrites(), False
    return LedgerWrites(ledger=replace(ledger, active_generations=0)), True


async def reset_active_generations(uid: str, repo: LedgerRepository) -> Dict[str, Any]:
    """Admin repair for a counter left behind by a crashed worker."""
    await repo.run_transaction(uid, _reset_slots)
    logger.warning("Admin: reset active generations for user %s", uid)
    return {"uid": uid, "active_generations": 0}


async def recover_stuck_slots(
    repo: LedgerRepository,
    now: Optional[datetime] = None,
    max_age_minutes: Optional[int] = None,
    limit: int = 500,
) -> Dict[str, int]:
    """Zero out generation counters whose last slot acquisition is older than ``max_age_minutes``."""
    age = max(int(max_age_minutes or settings.STUCK_SLOT_MAX_AGE_MINUTES), 1)
    cutoff = (now or _utcnow()) - timedelta(minutes=age)
    recovered = 0
    errors = 0
    for ledger in await repo.list_stuck_ledgers(cutoff, limit):
        try:
            if await repo.run_transaction(ledger.uid, partial(_reset_slots, cutoff=cutoff)):
                recovered += 1
        except Exception:
            errors += 1
            logger.exception("Stuck slot recovery failed for user %s", ledger.uid)
    if recovered:
        logger.warning("Recovered %s stuck generation counters (older than %s min)", recovered, age)
    return {"recovered": recovered, "errors": errors}


def _monthly_grant(snapshot: LedgerSnapshot, *, now: datetime):
    ledger = snapshot.ledger
    if ledger is None:
        return LedgerWrites(), "skipped"
    if not ledger.is_initialized:
        return LedgerWrites(ledger=free_tier_ledger(ledger, snapshot.uid, now)), "initialized"
    # Paid plans are only granted after the billing oracle confirms a renewal.
    if ledger.plan in PAID_PLANS:
        return LedgerWrites(), "skipped"
    if not has_cycle_elapsed(ledger.last_monthly_grant, now):
        return LedgerWrites(), "skipped"
    config = get_plan_config(ledger.plan)
    new_credits = apply_plan_grant(ledger.balance, config)
    outcome = "granted" if new_credits > ledger.balance else "cursor_refreshed"
    return LedgerWrites(ledger=replace(ledger, credits=new_credits, last_monthly_grant=now)), outcome


async def grant_monthly_credits(
    repo: LedgerRepository,
    now: Optional[datetime] = None,
    page_size: int = 500,
) -> Dict[str, int]:
    """Scheduled free-tier grant. Safe to re-run: each user is granted once per cycle."""
    current = now or _utcnow()
    summary = {"processed": 0, "granted": 0, "skipped": 0, "errors": 0}
    after: Optional[str] = None
    logger.info("Starting monthly credit grant job")
    while True:
        page = await repo.list_ledgers(after, page_size)
        if not page:
            break
        for ledger in page:
            summary["processed"] += 1
            try:
                outcome = await repo.run_transaction(ledger.uid, partial(_monthly_grant, now=current))
            except Exception:
                summary["errors"] += 1
                logger.exception("Error processing monthly grant for user %s", ledger.uid)
                continue
            if outcome == "skipped":
                summary["skipped"] += 1
            else:
                summary["granted"] += 1
        after = page[-1].uid
    logger.info(
        "Monthly credit grant complete. processed=%s granted=%s skipped=%s errors=%s",
        summary["processed"],
        summary["granted"],
        summary["skipped"],
        summary["errors"],
    )
    return summary
