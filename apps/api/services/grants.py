"""Plan catalog and recurring-grant arithmetic."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from config import settings


PLAN_FREE = "free"
PLAN_MONTHLY_PRO = "monthly_pro"
PLAN_ANNUAL_PRO = "annual_pro"
VALID_PLANS = (PLAN_FREE, PLAN_MONTHLY_PRO, PLAN_ANNUAL_PRO)
PAID_PLANS = (PLAN_MONTHLY_PRO, PLAN_ANNUAL_PRO)


@dataclass(frozen=True)
class PlanConfig:
    monthly_credits: int
    max_credits: int


def _plan_catalog() -> Dict[str, PlanConfig]:
    pro = PlanConfig(
        monthly_credits=max(int(settings.PRO_MONTHLY_CREDITS), 0),
        max_credits=max(int(settings.PRO_MAX_CREDITS), 0),
    )
    return {
        PLAN_FREE: PlanConfig(
            monthly_credits=max(int(settings.FREE_MONTHLY_CREDITS), 0),
            max_credits=max(int(settings.FREE_MAX_CREDITS), 0),
        ),
        # Annual only differs in billing cadence.
        PLAN_MONTHLY_PRO: pro,
        PLAN_ANNUAL_PRO: pro,
    }


def is_valid_plan(plan: Optional[str]) -> bool:
    return plan in VALID_PLANS


def get_plan_config(plan: Optional[str]) -> PlanConfig:
    """Return the plan's grant config. Unknown plans fall back to the free tier."""
    catalog = _plan_catalog()
    return catalog.get(plan or "", catalog[PLAN_FREE])


def grant_cycle() -> timedelta:
    return timedelta(days=max(int(settings.GRANT_CYCLE_DAYS), 1))


def has_cycle_elapsed(last_grant: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True once a fixed-length grant cycle has passed since ``last_grant``."""
    if last_grant is None:
        return True
    current = now or datetime.now(timezone.utc)
    return current - last_grant >= grant_cycle()


def apply_grant(current_credits: int, amount: int, cap: int) -> int:
    """Add ``amount`` up to ``cap`` without ever lowering a balance already above it."""
    current = max(int(current_credits), 0)
    if current < cap:
        return min(current + max(int(amount), 0), cap)
    return current


def apply_plan_grant(current_credits: int, config: PlanConfig) -> int:
    return apply_grant(current_credits, config.monthly_credits, config.max_credits)
