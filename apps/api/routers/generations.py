"""Generation router: metered and free-onboarding image generation."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from routers.auth_scope import AuthContext, get_auth_context
from services.generation import (
    ImageGenerator,
    get_image_generator,
    run_metered_operation,
    run_onboarding_generation,
)
from services.ledger_store import LedgerRepository, get_ledger_repository

router = APIRouter()


class GenerationRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


@router.post("")
async def generate(
    request: GenerationRequest,
    auth: AuthContext = Depends(get_auth_context),
    repo: LedgerRepository = Depends(get_ledger_repository),
    generator: ImageGenerator = Depends(get_image_generator),
):
    return await run_metered_operation(auth.uid, repo, generator, request.payload)


@router.post("/onboarding")
async def generate_onboarding(
    request: GenerationRequest,
    auth: AuthContext = Depends(get_auth_context),
    repo: LedgerRepository = Depends(get_ledger_repository),
    generator: ImageGenerator = Depends(get_image_generator),
):
    return await run_onboarding_generation(auth.uid, repo, generator, request.payload)
