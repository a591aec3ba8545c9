"""Profile router: client-writable profile fields. Credit fields are server-owned."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from routers.auth_scope import AuthContext, get_auth_context
from services.credits import update_profile
from services.ledger_store import LedgerRepository, get_ledger_repository

router = APIRouter()


class ProfileUpdateRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    display_name: Optional[str] = Field(default=None, max_length=200)


@router.put("")
async def put_profile(
    request: ProfileUpdateRequest,
    auth: AuthContext = Depends(get_auth_context),
    repo: LedgerRepository = Depends(get_ledger_repository),
):
    return await update_profile(
        auth.uid,
        repo,
        email=request.email if request.email is not None else auth.email,
        display_name=request.display_name,
    )
