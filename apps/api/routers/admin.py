"""Admin router: identity hook, backfill, job triggers and slot repair. Requires X-Admin-Key."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from services.bootstrap import backfill_all, on_identity_created
from services.credits import reset_active_generations
from services.errors import NotFoundError, ServiceUnavailableError
from services.ledger_queue import (
    enqueue_monthly_grant_job,
    enqueue_stuck_slot_recovery_job,
    enqueue_subscription_renewal_job,
)
from services.ledger_store import LedgerRepository, get_ledger_repository
from services.ledger_types import Identity
from routers.auth_scope import require_admin_key

router = APIRouter(dependencies=[Depends(require_admin_key)])
logger = logging.getLogger(__name__)

JOB_ENQUEUERS = {
    "monthly-grants": enqueue_monthly_grant_job,
    "subscription-renewals": enqueue_subscription_renewal_job,
    "stuck-slots": enqueue_stuck_slot_recovery_job,
}


class IdentityCreatedRequest(BaseModel):
    uid: str = Field(min_length=1, max_length=128)
    email: Optional[str] = Field(default=None, max_length=320)
    display_name: Optional[str] = Field(default=None, max_length=200)


class BackfillRequest(BaseModel):
    page_size: int = Field(default=1000, ge=1, le=1000)


@router.post("/identities", status_code=201)
async def identity_created(
    request: IdentityCreatedRequest,
    repo: LedgerRepository = Depends(get_ledger_repository),
):
    identity = Identity(uid=request.uid, email=request.email, display_name=request.display_name)
    await repo.save_identity(identity)
    result = await on_identity_created(repo, identity)
    # A failed bootstrap is reported, never raised: the backfill will pick the identity up.
    return {"uid": result.uid, "bootstrap": result.status, "error": result.error}


@router.post("/backfill")
async def backfill(
    request: Optional[BackfillRequest] = None,
    repo: LedgerRepository = Depends(get_ledger_repository),
):
    page_size = request.page_size if request is not None else 1000
    return await backfill_all(repo, page_size=page_size)


@router.post("/jobs/{job_name}", status_code=202)
async def trigger_job(job_name: str):
    enqueue = JOB_ENQUEUERS.get(job_name)
    if enqueue is None:
        raise NotFoundError(f"Unknown job: {job_name}")
    try:
        job = enqueue()
    except Exception as exc:
        logger.error("Failed to enqueue %s: %s", job_name, exc)
        raise ServiceUnavailableError(
            "Job queue unavailable. Ensure Redis and ledger worker are running.",
            job=job_name,
        ) from exc
    return {"job": job_name, "queue_job_id": job.id, "status": "queued"}


@router.post("/ledgers/{uid}/reset-slots")
async def reset_slots(
    uid: str,
    repo: LedgerRepository = Depends(get_ledger_repository),
):
    return await reset_active_generations(uid, repo)
