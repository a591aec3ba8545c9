"""Credits router: ledger reads, initialization, direct consumption and plan changes."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from routers.auth_scope import AuthContext, get_auth_context
from services.credits import consume_credit, get_credits, initialize_credits, set_plan
from services.ledger_store import LedgerRepository, get_ledger_repository

router = APIRouter()


class ConsumeRequest(BaseModel):
    # Range and type are checked by the ledger so the error code stays invalid_argument.
    amount: Any = None


class PlanRequest(BaseModel):
    plan: Optional[str] = None


@router.post("/initialize")
async def initialize(
    auth: AuthContext = Depends(get_auth_context),
    repo: LedgerRepository = Depends(get_ledger_repository),
):
    return await initialize_credits(auth.uid, repo)


@router.get("")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    repo: LedgerRepository = Depends(get_ledger_repository),
):
    return await get_credits(auth.uid, repo)


@router.post("/consume")
async def consume(
    request: ConsumeRequest,
    auth: AuthContext = Depends(get_auth_context),
    repo: LedgerRepository = Depends(get_ledger_repository),
):
    return await consume_credit(auth.uid, repo, request.amount)


@router.post("/plan")
async def update_plan(
    request: PlanRequest,
    auth: AuthContext = Depends(get_auth_context),
    repo: LedgerRepository = Depends(get_ledger_repository),
):
    return await set_plan(auth.uid, repo, request.plan)
