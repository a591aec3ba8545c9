"""Generation slots: cooldown, concurrency cap, and pay-on-success credit accounting.

A slot is acquired before the metered call and released exactly once after it.
Credits are only deducted on a successful release.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

from config import settings
from services.credits import require_ledger
from services.errors import InternalError, InvalidArgumentError, LedgerError, RateLimitedError
from services.ledger_store import LedgerRepository
from services.ledger_types import LedgerSnapshot, LedgerWrites

logger = logging.getLogger(__name__)

REASON_COOLDOWN = "cooldown"
REASON_CONCURRENT_LIMIT = "concurrent_limit"
REASON_INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class SlotHandle:
    uid: str
    credits_to_consume: int
    acquired_at: datetime


@dataclass(frozen=True)
class ReleaseResult:
    """Outcome of a release. Failures are reported here, never raised."""

    released: bool
    remaining_credits: Optional[int] = None
    error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _acquire(snapshot: LedgerSnapshot, *, credits_required: int, now: datetime):
    ledger = require_ledger(snapshot)
    cooldown = max(int(settings.GENERATION_COOLDOWN_SECONDS), 0)
    max_concurrent = max(int(settings.MAX_CONCURRENT_GENERATIONS), 1)

    if ledger.last_generation_at is not None:
        elapsed = (now - ledger.last_generation_at).total_seconds()
        if elapsed < cooldown:
            raise RateLimitedError(
                "Please wait a moment before generating again",
                reason=REASON_COOLDOWN,
                retry_after_seconds=math.ceil(cooldown - elapsed),
            )

    if ledger.active_generations >= max_concurrent:
        raise RateLimitedError("Too many requests in progress", reason=REASON_CONCURRENT_LIMIT)

    current = ledger.balance
    if current < credits_required:
        raise RateLimitedError(
            f"Insufficient credits. You have {current} credits but need {credits_required}.",
            reason=REASON_INSUFFICIENT_CREDITS,
            current_credits=current,
        )

    updated = replace(
        ledger,
        active_generations=ledger.active_generations + 1,
        last_slot_acquired_at=now,
    )
    return LedgerWrites(ledger=updated), updated.active_generations


async def acquire_slot(
    uid: str,
    repo: LedgerRepository,
    credits_required: int = 1,
    now: Optional[datetime] = None,
) -> SlotHandle:
    """Run the cooldown, concurrency and credit checks and reserve a slot.

    Credits are not deducted here. Callers must pair every handle with exactly
    one :func:`release_slot`.
    """
    if isinstance(credits_required, bool) or not isinstance(credits_required, int) or credits_required < 1:
        raise InvalidArgumentError("credits_required must be a positive integer")
    acquired_at = now or _utcnow()
    try:
        active = await repo.run_transaction(
            uid,
            partial(_acquire, credits_required=credits_required, now=acquired_at),
        )
    except LedgerError as exc:
        if isinstance(exc, RateLimitedError):
            logger.info("Rate limit: user %s rejected (%s)", uid, exc.reason)
        raise
    except Exception as exc:
        logger.exception("Error acquiring generation slot for user %s", uid)
        raise InternalError("Failed to process request. Please try again.") from exc

    logger.info(
        "Rate limit: user %s acquired generation slot. Active: %s/%s",
        uid,
        active,
        settings.MAX_CONCURRENT_GENERATIONS,
    )
    return SlotHandle(uid=uid, credits_to_consume=credits_required, acquired_at=acquired_at)


def _release(snapshot: LedgerSnapshot, *, credits_to_consume: int, success: bool, now: datetime):
    ledger = snapshot.ledger
    if ledger is None:
        return LedgerWrites(), None
    active = max(ledger.active_generations - 1, 0)
    if success:
        updated = replace(
            ledger,
            active_generations=active,
            credits=max(ledger.balance - credits_to_consume, 0),
            last_generation_at=now,
        )
    else:
        updated = replace(ledger, active_generations=active)
    return LedgerWrites(ledger=updated), updated.balance


async def release_slot(
    handle: SlotHandle,
    repo: LedgerRepository,
    success: bool,
    now: Optional[datetime] = None,
) -> ReleaseResult:
    """Give the slot back and, on success, charge the reserved credits."""
    try:
        remaining = await repo.run_transaction(
            handle.uid,
            partial(
                _release,
                credits_to_consume=handle.credits_to_consume,
                success=success,
                now=now or _utcnow(),
            ),
        )
    except Exception as exc:
        # Must not mask the error that ended the generation.
        logger.exception("Error releasing generation slot for user %s", handle.uid)
        return ReleaseResult(released=False, error=str(exc))

    if remaining is None:
        logger.warning("User %s ledger not found when releasing slot", handle.uid)
        return ReleaseResult(released=False, error="ledger_missing")

    if success:
        logger.info(
            "Generation success: user %s consumed %s credit(s). Remaining: %s",
            handle.uid,
            handle.credits_to_consume,
            remaining,
        )
    else:
        logger.info("Generation failed: user %s credits NOT consumed. Current: %s", handle.uid, remaining)
    return ReleaseResult(released=True, remaining_credits=remaining)


async def execute_with_rate_limiting(
    uid: str,
    repo: LedgerRepository,
    credits_required: int,
    fn: Callable[[], Awaitable[Dict[str, Any]]],
) -> Dict[str, Any]:
    """Acquire, run ``fn``, release. The slot is released on every exit path."""
    handle = await acquire_slot(uid, repo, credits_required)
    succeeded = False
    try:
        result = await fn()
        succeeded = True
    finally:
        released = await release_slot(handle, repo, success=succeeded)
    return {**result, "remaining_credits": released.remaining_credits}
