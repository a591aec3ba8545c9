import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from services.credits import (
    claim_free_onboarding_generation,
    consume_credit,
    get_credits,
    grant_monthly_credits,
    initialize_credits,
    recover_stuck_slots,
    reset_active_generations,
    set_plan,
    update_profile,
)
from services.errors import (
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    RateLimitedError,
)
from services.ledger_types import UserLedger


NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
UID = "user-1"


def _free_ledger(**overrides):
    values = dict(uid=UID, plan="free", credits=2, max_credits=2, last_monthly_grant=NOW - timedelta(days=1))
    values.update(overrides)
    return UserLedger(**values)


@pytest.mark.asyncio
async def test_initialize_new_identity_grants_free_tier(repo):
    result = await initialize_credits(UID, repo, now=NOW)

    assert result == {"already_initialized": False, "credits": 2, "max_credits": 2, "plan": "free"}
    stored = repo.ledgers[UID]
    assert stored.last_monthly_grant == NOW
    assert stored.created_at == NOW
    assert stored.active_generations == 0


@pytest.mark.asyncio
async def test_initialize_twice_is_idempotent(repo):
    first = await initialize_credits(UID, repo, now=NOW)
    await consume_credit(UID, repo, 1)
    second = await initialize_credits(UID, repo, now=NOW + timedelta(days=40))

    assert second["already_initialized"] is True
    assert second["credits"] == 1
    assert (second["max_credits"], second["plan"]) == (first["max_credits"], first["plan"])
    assert repo.ledgers[UID].last_monthly_grant == NOW


@pytest.mark.asyncio
async def test_initialize_keeps_profile_fields_and_created_at(repo):
    created = NOW - timedelta(days=3)
    repo.seed_ledger(UserLedger(uid=UID, email="a@example.com", display_name="Ada", created_at=created))

    result = await initialize_credits(UID, repo, now=NOW)

    assert result["already_initialized"] is False
    stored = repo.ledgers[UID]
    assert stored.email == "a@example.com"
    assert stored.display_name == "Ada"
    assert stored.created_at == created
    assert stored.credits == 2


@pytest.mark.asyncio
async def test_get_credits_defaults_for_legacy_documents(repo):
    repo.seed_ledger(UserLedger(uid=UID, credits=3))

    assert await get_credits(UID, repo) == {"credits": 3, "max_credits": 5, "plan": "free"}


@pytest.mark.asyncio
async def test_get_credits_without_ledger_is_not_found(repo):
    with pytest.raises(NotFoundError):
        await get_credits(UID, repo)


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -1, 11, 1.5, "1", True, None])
async def test_consume_rejects_invalid_amounts_before_touching_the_ledger(repo, amount):
    repo.seed_ledger(_free_ledger())

    with pytest.raises(InvalidArgumentError):
        await consume_credit(UID, repo, amount)
    assert repo.ledgers[UID].version == 1


@pytest.mark.asyncio
async def test_consume_reports_insufficient_credits(repo):
    repo.seed_ledger(_free_ledger(credits=1))

    with pytest.raises(RateLimitedError) as exc_info:
        await consume_credit(UID, repo, 2)

    assert exc_info.value.reason == "insufficient_credits"
    assert exc_info.value.to_detail()["current_credits"] == 1
    assert repo.ledgers[UID].credits == 1


@pytest.mark.asyncio
async def test_consume_without_ledger_is_not_found(repo):
    with pytest.raises(NotFoundError):
        await consume_credit(UID, repo, 1)


@pytest.mark.asyncio
async def test_concurrent_consumes_never_double_spend(repo):
    repo.seed_ledger(_free_ledger(credits=1))

    results = await asyncio.gather(
        consume_credit(UID, repo, 1),
        consume_credit(UID, repo, 1),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, dict)]
    failures = [r for r in results if isinstance(r, RateLimitedError)]
    assert successes == [{"remaining_credits": 0}]
    assert len(failures) == 1
    assert repo.ledgers[UID].credits == 0
    assert repo.conflicts >= 1


@pytest.mark.asyncio
async def test_set_plan_caps_balance_but_never_tops_up(repo):
    repo.seed_ledger(_free_ledger(plan="monthly_pro", credits=80, max_credits=100))

    assert await set_plan(UID, repo, "free") == {"plan": "free", "max_credits": 2}
    assert repo.ledgers[UID].credits == 2

    assert await set_plan(UID, repo, "annual_pro") == {"plan": "annual_pro", "max_credits": 100}
    assert repo.ledgers[UID].credits == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("plan", ["enterprise", "", None, 3])
async def test_set_plan_rejects_unknown_plans(repo, plan):
    repo.seed_ledger(_free_ledger())

    with pytest.raises(InvalidArgumentError):
        await set_plan(UID, repo, plan)


@pytest.mark.asyncio
async def test_monthly_grant_refills_free_tier_after_cycle(repo):
    repo.seed_ledger(_free_ledger(credits=0, last_monthly_grant=NOW - timedelta(days=35)))

    summary = await grant_monthly_credits(repo, now=NOW)

    assert summary == {"processed": 1, "granted": 1, "skipped": 0, "errors": 0}
    assert repo.ledgers[UID].credits == 2
    assert repo.ledgers[UID].last_monthly_grant == NOW


@pytest.mark.asyncio
async def test_monthly_grant_preserves_purchased_credits_above_cap(repo):
    repo.seed_ledger(_free_ledger(credits=120, max_credits=100, last_monthly_grant=NOW - timedelta(days=31)))

    await grant_monthly_credits(repo, now=NOW)

    assert repo.ledgers[UID].credits == 120
    assert repo.ledgers[UID].last_monthly_grant == NOW


@pytest.mark.asyncio
async def test_monthly_grant_skips_recent_and_paid_and_initializes_bare_documents(repo):
    repo.seed_ledger(_free_ledger(uid="recent", credits=0, last_monthly_grant=NOW - timedelta(days=10)))
    repo.seed_ledger(
        _free_ledger(uid="paid", plan="monthly_pro", credits=0, max_credits=100, last_monthly_grant=NOW - timedelta(days=40))
    )
    repo.seed_ledger(UserLedger(uid="bare", email="bare@example.com"))

    summary = await grant_monthly_credits(repo, now=NOW, page_size=1)

    assert summary == {"processed": 3, "granted": 1, "skipped": 2, "errors": 0}
    assert repo.ledgers["recent"].credits == 0
    assert repo.ledgers["paid"].credits == 0
    assert repo.ledgers["bare"].credits == 2
    assert repo.ledgers["bare"].email == "bare@example.com"


@pytest.mark.asyncio
async def test_monthly_grant_rerun_in_same_cycle_grants_nothing(repo):
    repo.seed_ledger(_free_ledger(credits=0, last_monthly_grant=NOW - timedelta(days=35)))

    await grant_monthly_credits(repo, now=NOW)
    await consume_credit(UID, repo, 2)
    summary = await grant_monthly_credits(repo, now=NOW + timedelta(hours=1))

    assert summary["skipped"] == 1
    assert repo.ledgers[UID].credits == 0


@pytest.mark.asyncio
async def test_onboarding_generation_is_one_shot(repo):
    repo.seed_ledger(_free_ledger())

    assert await claim_free_onboarding_generation(UID, repo) is True
    with pytest.raises(FailedPreconditionError) as exc_info:
        await claim_free_onboarding_generation(UID, repo)

    assert exc_info.value.reason == "onboarding_used"
    assert repo.ledgers[UID].used_free_onboarding_generation is True


@pytest.mark.asyncio
async def test_onboarding_generation_requires_ledger(repo):
    with pytest.raises(NotFoundError):
        await claim_free_onboarding_generation(UID, repo)


@pytest.mark.asyncio
async def test_update_profile_never_touches_credit_fields(repo):
    created = await update_profile(UID, repo, email="new@example.com", now=NOW)
    assert created["credits_initialized"] is False
    assert repo.ledgers[UID].credits is None

    await initialize_credits(UID, repo, now=NOW)
    updated = await update_profile(UID, repo, display_name="Grace")

    assert updated == {
        "uid": UID,
        "email": "new@example.com",
        "display_name": "Grace",
        "credits_initialized": True,
    }
    assert repo.ledgers[UID].credits == 2


@pytest.mark.asyncio
async def test_reset_active_generations(repo):
    repo.seed_ledger(_free_ledger(active_generations=3))

    assert await reset_active_generations(UID, repo) == {"uid": UID, "active_generations": 0}
    assert repo.ledgers[UID].active_generations == 0


@pytest.mark.asyncio
async def test_recover_stuck_slots_only_resets_old_acquisitions(repo):
    repo.seed_ledger(_free_ledger(uid="stuck", active_generations=2, last_slot_acquired_at=NOW - timedelta(hours=2)))
    repo.seed_ledger(_free_ledger(uid="busy", active_generations=1, last_slot_acquired_at=NOW - timedelta(minutes=1)))

    result = await recover_stuck_slots(repo, now=NOW, max_age_minutes=30)

    assert result == {"recovered": 1, "errors": 0}
    assert repo.ledgers["stuck"].active_generations == 0
    assert repo.ledgers["busy"].active_generations == 1
