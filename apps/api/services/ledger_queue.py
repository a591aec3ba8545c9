"""Durable ledger job queue helpers (Redis/RQ) and the scheduled job entrypoints."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from database import async_session_maker
from services.billing_oracle import RevenueCatClient
from services.credits import grant_monthly_credits, recover_stuck_slots
from services.ledger_store import SqlLedgerRepository
from services.subscriptions import reconcile_subscriptions

logger = logging.getLogger(__name__)

LEDGER_QUEUE_NAME = "ledger_jobs"
JOB_TIMEOUT_SECONDS = 3600
# Whole-run failures only; per-user errors are counted inside the run.
JOB_RETRY_INTERVALS = [60, 300, 900]

MONTHLY_GRANT_JOB = "services.ledger_queue.run_monthly_grant_job"
SUBSCRIPTION_RENEWAL_JOB = "services.ledger_queue.run_subscription_renewal_job"
STUCK_SLOT_RECOVERY_JOB = "services.ledger_queue.run_stuck_slot_recovery_job"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_ledger_queue() -> Queue:
    """Return the configured ledger job queue."""
    return Queue(
        name=LEDGER_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=JOB_TIMEOUT_SECONDS,
    )


def _enqueue(func_path: str, job_prefix: str, now: Optional[datetime] = None) -> Job:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S")
    return get_ledger_queue().enqueue(
        func_path,
        job_id=f"{job_prefix}:{stamp}",
        retry=Retry(max=3, interval=JOB_RETRY_INTERVALS),
        job_timeout=JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=7 * 86400,
    )


def enqueue_monthly_grant_job(now: Optional[datetime] = None) -> Job:
    return _enqueue(MONTHLY_GRANT_JOB, "ledger:monthly-grants", now)


def enqueue_subscription_renewal_job(now: Optional[datetime] = None) -> Job:
    return _enqueue(SUBSCRIPTION_RENEWAL_JOB, "ledger:subscription-renewals", now)


def enqueue_stuck_slot_recovery_job(now: Optional[datetime] = None) -> Job:
    return _enqueue(STUCK_SLOT_RECOVERY_JOB, "ledger:stuck-slots", now)


def enqueue_daily_jobs(now: Optional[datetime] = None) -> Dict[str, str]:
    """Queue both daily ledger jobs and return their ids."""
    return {
        "monthly_grants": enqueue_monthly_grant_job(now).id,
        "subscription_renewals": enqueue_subscription_renewal_job(now).id,
    }


def enqueue_slot_recovery_jobs(now: Optional[datetime] = None) -> Dict[str, str]:
    """Queue stuck-slot recovery; scheduled more often than the daily jobs."""
    return {"stuck_slots": enqueue_stuck_slot_recovery_job(now).id}


async def run_monthly_grant_job_async() -> Dict[str, int]:
    async with async_session_maker() as db:
        return await grant_monthly_credits(SqlLedgerRepository(db))


async def run_subscription_renewal_job_async() -> Dict[str, int]:
    async with async_session_maker() as db:
        return await reconcile_subscriptions(SqlLedgerRepository(db), RevenueCatClient())


async def run_stuck_slot_recovery_job_async() -> Dict[str, int]:
    async with async_session_maker() as db:
        return await recover_stuck_slots(SqlLedgerRepository(db))


def run_monthly_grant_job() -> Dict[str, int]:
    """RQ worker entrypoint for the free-tier recurring grant."""
    return asyncio.run(run_monthly_grant_job_async())


def run_subscription_renewal_job() -> Dict[str, int]:
    """RQ worker entrypoint for subscription reconciliation."""
    return asyncio.run(run_subscription_renewal_job_async())


def run_stuck_slot_recovery_job() -> Dict[str, int]:
    """RQ worker entrypoint for stuck generation counter recovery."""
    return asyncio.run(run_stuck_slot_recovery_job_async())
