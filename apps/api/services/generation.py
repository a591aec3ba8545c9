"""Metered image generation: the opaque backend call plus its ledger accounting."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from config import settings
from services.credits import claim_free_onboarding_generation
from services.errors import GenerationError
from services.ledger_store import LedgerRepository
from services.rate_limiter import execute_with_rate_limiting

logger = logging.getLogger(__name__)

CREDITS_PER_GENERATION = 1


class ImageGenerator(Protocol):
    async def generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...


def _image_from_response(data: Any) -> Optional[str]:
    """Pull base64 image data from a native ``candidates`` response or a flat body."""
    if not isinstance(data, dict):
        return None
    flat = data.get("image_base64")
    if isinstance(flat, str) and flat:
        return flat
    candidates = data.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    for part in parts:
        if not isinstance(part, dict):
            continue
        inline = part.get("inlineData") or part.get("inline_data") or {}
        image = inline.get("data") if isinstance(inline, dict) else None
        if image:
            return str(image)
    return None


class HttpImageGenerator:
    """POSTs an opaque payload to the configured image backend."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url if api_url is not None else settings.IMAGE_API_URL).strip()
        self.api_key = (api_key if api_key is not None else settings.IMAGE_API_KEY).strip()
        self.timeout = float(timeout or settings.GENERATION_TIMEOUT_SECONDS)
        self.transport = transport

    async def generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_url:
            raise GenerationError("Image generation backend is not configured")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await asyncio.wait_for(
                    client.post(self.api_url, json=payload, headers=headers),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError as exc:
            logger.error("Image generation timed out after %ss", self.timeout)
            raise GenerationError("Image generation timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("Image generation request failed: %s", exc)
            raise GenerationError("Image generation request failed") from exc

        if response.status_code >= 400:
            logger.error("Image API error: %s %s", response.status_code, response.text[:500])
            raise GenerationError(f"API request failed: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationError("Could not extract image from API response") from exc
        image = _image_from_response(data)
        if not image:
            logger.error("Could not extract image from response: %s", json.dumps(data)[:500])
            raise GenerationError("Could not extract image from API response")
        return {"image_base64": image}


def get_image_generator() -> ImageGenerator:
    """FastAPI dependency returning the configured image backend."""
    return HttpImageGenerator()


async def run_metered_operation(
    uid: str,
    repo: LedgerRepository,
    generator: ImageGenerator,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    """One credit-metered generation, charged only if the backend succeeds."""
    return await execute_with_rate_limiting(
        uid,
        repo,
        CREDITS_PER_GENERATION,
        lambda: generator.generate(payload),
    )


async def run_onboarding_generation(
    uid: str,
    repo: LedgerRepository,
    generator: ImageGenerator,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    """The one free generation. The flag is consumed before the backend is called."""
    await claim_free_onboarding_generation(uid, repo)
    logger.info("User %s using FREE onboarding generation (no credits consumed)", uid)
    result = await generator.generate(payload)
    logger.info("User %s successfully completed FREE onboarding generation", uid)
    return {**result, "free_generation": True}
