"""Purchases router: top-ups, subscription purchases and restores verified with the billing oracle."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.billing_oracle import BillingOracle, get_billing_oracle
from services.ledger_store import LedgerRepository, get_ledger_repository
from services.purchases import purchase_subscription, purchase_top_up, restore_subscription

router = APIRouter()


class TopUpRequest(BaseModel):
    product_id: Optional[str] = None
    transaction_id: Optional[str] = None


class SubscriptionRequest(BaseModel):
    product_id: Optional[str] = None


@router.post("/topup")
async def top_up(
    request: TopUpRequest,
    _rate_limit: None = Depends(rate_limit("purchase_topup", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    repo: LedgerRepository = Depends(get_ledger_repository),
    oracle: BillingOracle = Depends(get_billing_oracle),
):
    return await purchase_top_up(auth.uid, repo, oracle, request.product_id, request.transaction_id)


@router.post("/subscription")
async def subscription(
    request: SubscriptionRequest,
    _rate_limit: None = Depends(rate_limit("purchase_subscription", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    repo: LedgerRepository = Depends(get_ledger_repository),
    oracle: BillingOracle = Depends(get_billing_oracle),
):
    return await purchase_subscription(auth.uid, repo, oracle, request.product_id)


@router.post("/restore")
async def restore(
    request: SubscriptionRequest,
    _rate_limit: None = Depends(rate_limit("purchase_restore", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    repo: LedgerRepository = Depends(get_ledger_repository),
    oracle: BillingOracle = Depends(get_billing_oracle),
):
    return await restore_subscription(auth.uid, repo, oracle, request.product_id)
