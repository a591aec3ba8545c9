"""Ledger bootstrap for new identities and backfill for existing ones."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional

from services.credits import free_tier_ledger
from services.ledger_store import LedgerRepository
from services.ledger_types import Identity, LedgerSnapshot, LedgerWrites, UserLedger

logger = logging.getLogger(__name__)

STATUS_CREATED = "created"
STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"

MAX_ERROR_DETAILS = 10


@dataclass(frozen=True)
class BootstrapResult:
    """Outcome of a best-effort bootstrap. ``failed`` results are logged, not raised."""

    uid: str
    status: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != STATUS_FAILED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _bootstrap(snapshot: LedgerSnapshot, *, identity: Identity, now: datetime):
    ledger = snapshot.ledger
    if ledger is None:
        base = UserLedger(
            uid=snapshot.uid,
            email=identity.email or "",
            display_name=identity.display_name or "",
            created_at=now,
        )
        return LedgerWrites(ledger=free_tier_ledger(base, snapshot.uid, now)), STATUS_CREATED
    if ledger.credits is None:
        # Profile-only document written by the client: add the credit fields, keep the rest.
        return LedgerWrites(ledger=free_tier_ledger(ledger, snapshot.uid, now)), STATUS_COMPLETED
    return LedgerWrites(), STATUS_SKIPPED


async def ensure_ledger(repo: LedgerRepository, identity: Identity, now: Optional[datetime] = None) -> str:
    """Create or complete the identity's ledger. Idempotent; raises on store errors."""
    return await repo.run_transaction(
        identity.uid,
        partial(_bootstrap, identity=identity, now=now or _utcnow()),
    )


async def on_identity_created(
    repo: LedgerRepository,
    identity: Identity,
    now: Optional[datetime] = None,
) -> BootstrapResult:
    """Identity-creation hook. Never raises so sign-up is never blocked."""
    logger.info("Identity created: %s (%s)", identity.uid, identity.email or "no email")
    try:
        status = await ensure_ledger(repo, identity, now)
    except Exception as exc:
        logger.exception("Bootstrap failed for %s", identity.uid)
        return BootstrapResult(uid=identity.uid, status=STATUS_FAILED, error=str(exc))

    if status == STATUS_CREATED:
        logger.info("Created ledger for %s", identity.uid)
    elif status == STATUS_COMPLETED:
        logger.info("Added missing credit fields for %s", identity.uid)
    return BootstrapResult(uid=identity.uid, status=status)


async def backfill_all(
    repo: LedgerRepository,
    page_size: int = 1000,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Ensure every known identity has a complete ledger. Safe to re-run."""
    current = now or _utcnow()
    created = 0
    skipped = 0
    errors = 0
    error_details: List[Dict[str, str]] = []
    after: Optional[str] = None

    while True:
        page = await repo.list_identities(after, page_size)
        if not page:
            break
        logger.info("Processing batch of %s identities", len(page))
        for identity in page:
            try:
                status = await ensure_ledger(repo, identity, current)
            except Exception as exc:
                errors += 1
                error_details.append({"uid": identity.uid, "error": str(exc)})
                logger.exception("Error processing identity %s", identity.uid)
                continue
            # Completed documents count as fixes.
            if status in (STATUS_CREATED, STATUS_COMPLETED):
                created += 1
            else:
                skipped += 1
        after = page[-1].uid

    logger.info("Backfill complete: created=%s, skipped=%s, errors=%s", created, skipped, errors)
    return {
        "created": created,
        "skipped": skipped,
        "errors": errors,
        "error_details": error_details[:MAX_ERROR_DETAILS],
    }
