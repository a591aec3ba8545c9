import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from services.credits import grant_monthly_credits, initialize_credits, update_profile
from services.errors import (
    AlreadyExistsError,
    BillingOracleError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
)
from services.ledger_types import SubscriptionRecord, UserLedger
from services.purchases import purchase_subscription, purchase_top_up, restore_subscription


NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
UID = "buyer-1"


def _seed(repo, **overrides):
    values = dict(uid=UID, plan="free", credits=2, max_credits=2, last_monthly_grant=NOW - timedelta(days=3))
    values.update(overrides)
    return repo.seed_ledger(UserLedger(**values))


@pytest.mark.asyncio
async def test_top_up_adds_uncapped_credits_and_records_transaction(repo, make_oracle):
    _seed(repo)
    oracle = make_oracle(non_subscriptions={"credits_15pack": ["tx-1"]})

    result = await purchase_top_up(UID, repo, oracle, "credits_15pack", "tx-1", now=NOW)

    assert result == {"credits_added": 15, "new_balance": 17}
    assert repo.ledgers[UID].credits == 17
    assert repo.ledgers[UID].max_credits == 2
    record = repo.processed_transactions["tx-1"]
    assert (record.uid, record.product_id, record.credits_granted, record.processed_at) == (
        UID,
        "credits_15pack",
        15,
        NOW,
    )


@pytest.mark.asyncio
async def test_top_up_replay_is_rejected_without_calling_oracle(repo, make_oracle):
    _seed(repo)
    oracle = make_oracle(non_subscriptions={"credits_5pack": ["tx-5"]})
    await purchase_top_up(UID, repo, oracle, "credits_5pack", "tx-5", now=NOW)

    with pytest.raises(AlreadyExistsError):
        await purchase_top_up(UID, repo, oracle, "credits_5pack", "tx-5", now=NOW)

    assert repo.ledgers[UID].credits == 7
    assert oracle.calls == [UID]


@pytest.mark.asyncio
async def test_concurrent_replays_credit_once(repo, make_oracle):
    _seed(repo)
    oracle = make_oracle(non_subscriptions={"credits_15pack": ["tx-race"]})

    results = await asyncio.gather(
        purchase_top_up(UID, repo, oracle, "credits_15pack", "tx-race", now=NOW),
        purchase_top_up(UID, repo, oracle, "credits_15pack", "tx-race", now=NOW),
        return_exceptions=True,
    )

    assert sum(isinstance(r, dict) for r in results) == 1
    assert sum(isinstance(r, AlreadyExistsError) for r in results) == 1
    assert repo.ledgers[UID].credits == 17


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "product_id,transaction_id",
    [("credits_1000pack", "tx-1"), (None, "tx-1"), ("credits_15pack", ""), ("credits_15pack", None)],
)
async def test_top_up_validates_input_before_oracle(repo, make_oracle, product_id, transaction_id):
    _seed(repo)
    oracle = make_oracle()

    with pytest.raises(InvalidArgumentError):
        await purchase_top_up(UID, repo, oracle, product_id, transaction_id, now=NOW)

    assert oracle.calls == []


@pytest.mark.asyncio
async def test_top_up_unknown_transaction_fails_verification(repo, make_oracle):
    _seed(repo)
    oracle = make_oracle(non_subscriptions={"credits_15pack": ["someone-elses-tx"]})

    with pytest.raises(FailedPreconditionError) as exc_info:
        await purchase_top_up(UID, repo, oracle, "credits_15pack", "tx-forged", now=NOW)

    assert exc_info.value.reason == "verification_failed"
    assert repo.ledgers[UID].credits == 2
    assert repo.processed_transactions == {}


@pytest.mark.asyncio
async def test_top_up_fails_closed_when_oracle_unreachable(repo, make_oracle):
    _seed(repo)
    oracle = make_oracle(error=BillingOracleError("RevenueCat API error: 503", status_code=503))

    with pytest.raises(InternalError):
        await purchase_top_up(UID, repo, oracle, "credits_15pack", "tx-1", now=NOW)

    assert repo.ledgers[UID].credits == 2
    assert repo.processed_transactions == {}


@pytest.mark.asyncio
async def test_top_up_without_ledger_records_nothing(repo, make_oracle):
    oracle = make_oracle(non_subscriptions={"credits_15pack": ["tx-1"]})

    with pytest.raises(NotFoundError):
        await purchase_top_up(UID, repo, oracle, "credits_15pack", "tx-1", now=NOW)

    assert repo.processed_transactions == {}


@pytest.mark.asyncio
async def test_subscription_purchase_upgrades_plan_and_grants_bonus(repo, make_oracle):
    _seed(repo)
    expires = NOW + timedelta(days=30)
    oracle = make_oracle(expires_date=expires, purchase_date=NOW - timedelta(minutes=5))

    result = await purchase_subscription(UID, repo, oracle, "premium_monthly", now=NOW)

    assert result == {"plan": "monthly_pro", "credits_granted": 50, "expires_date": expires.isoformat()}
    ledger = repo.ledgers[UID]
    assert (ledger.plan, ledger.credits, ledger.max_credits) == ("monthly_pro", 52, 100)
    record = repo.subscriptions[UID]
    assert record.status == "active"
    assert record.expires_date == expires
    assert record.purchase_date == NOW - timedelta(minutes=5)
    assert record.last_credit_grant == NOW


@pytest.mark.asyncio
async def test_subscription_bonus_is_capped_at_plan_max(repo, make_oracle):
    _seed(repo, credits=80)
    oracle = make_oracle(expires_date=NOW + timedelta(days=30))

    result = await purchase_subscription(UID, repo, oracle, "premium_monthly", now=NOW)

    assert result["credits_granted"] == 20
    assert repo.ledgers[UID].credits == 100


@pytest.mark.asyncio
async def test_repeated_purchase_call_for_same_period_grants_nothing(repo, make_oracle):
    _seed(repo)
    oracle = make_oracle(expires_date=NOW + timedelta(days=30))

    await purchase_subscription(UID, repo, oracle, "premium_monthly", now=NOW)
    again = await purchase_subscription(UID, repo, oracle, "premium_monthly", now=NOW + timedelta(minutes=1))

    assert again["credits_granted"] == 0
    assert repo.ledgers[UID].credits == 52


@pytest.mark.asyncio
async def test_subscription_purchase_requires_entitlement(repo, make_oracle):
    _seed(repo)

    with pytest.raises(FailedPreconditionError) as missing:
        await purchase_subscription(UID, repo, make_oracle(), "premium_monthly", now=NOW)
    with pytest.raises(FailedPreconditionError) as expired:
        await purchase_subscription(
            UID, repo, make_oracle(expires_date=NOW - timedelta(days=1)), "premium_monthly", now=NOW
        )

    assert missing.value.reason == "no_active_subscription"
    assert expired.value.reason == "expired"
    assert repo.ledgers[UID].plan == "free"
    assert UID not in repo.subscriptions


@pytest.mark.asyncio
async def test_subscription_purchase_rejects_unknown_product(repo, make_oracle):
    with pytest.raises(InvalidArgumentError):
        await purchase_subscription(UID, repo, make_oracle(), "premium_lifetime", now=NOW)


@pytest.mark.asyncio
async def test_restore_never_mints_credits(repo, make_oracle):
    _seed(repo, credits=10)
    expires = NOW + timedelta(days=12)
    oracle = make_oracle(expires_date=expires)

    result = await restore_subscription(UID, repo, oracle, "premium_monthly", now=NOW)

    assert result == {"plan": "monthly_pro", "expires_date": expires.isoformat()}
    ledger = repo.ledgers[UID]
    assert (ledger.plan, ledger.credits, ledger.max_credits) == ("monthly_pro", 10, 100)
    assert ledger.last_monthly_grant == NOW - timedelta(days=3)
    assert repo.subscriptions[UID].status == "active"


@pytest.mark.asyncio
async def test_restore_preserves_last_credit_grant(repo, make_oracle):
    _seed(repo, plan="monthly_pro", credits=40, max_credits=100)
    granted_at = NOW - timedelta(days=20)
    repo.seed_subscription(
        SubscriptionRecord(
            uid=UID,
            product_id="premium_monthly",
            plan="monthly_pro",
            purchase_date=NOW - timedelta(days=50),
            expires_date=NOW - timedelta(days=1),
            original_transaction_id="premium_monthly",
            last_credit_grant=granted_at,
            status="expired",
        )
    )
    oracle = make_oracle(expires_date=NOW + timedelta(days=29))

    await restore_subscription(UID, repo, oracle, "premium_monthly", now=NOW)
    await restore_subscription(UID, repo, oracle, "premium_monthly", now=NOW)

    assert repo.ledgers[UID].credits == 40
    record = repo.subscriptions[UID]
    assert record.last_credit_grant == granted_at
    assert record.status == "active"


@pytest.mark.asyncio
async def test_restore_fails_closed_when_oracle_unreachable(repo, make_oracle):
    _seed(repo, credits=10)
    oracle = make_oracle(error=BillingOracleError("timeout"))

    with pytest.raises(InternalError):
        await restore_subscription(UID, repo, oracle, "premium_monthly", now=NOW)

    assert repo.ledgers[UID].plan == "free"


@pytest.mark.asyncio
async def test_top_up_on_profile_only_ledger_survives_later_grant_and_init(repo, make_oracle):
    await update_profile(UID, repo, email="buyer@example.com", now=NOW)
    oracle = make_oracle(non_subscriptions={"credits_15pack": ["tx-early"]})

    result = await purchase_top_up(UID, repo, oracle, "credits_15pack", "tx-early", now=NOW)

    assert result == {"credits_added": 15, "new_balance": 17}
    ledger = repo.ledgers[UID]
    assert (ledger.plan, ledger.credits, ledger.max_credits) == ("free", 17, 2)

    await grant_monthly_credits(repo, now=NOW + timedelta(days=31))
    init = await initialize_credits(UID, repo, now=NOW + timedelta(days=31))

    assert init["already_initialized"] is True
    assert repo.ledgers[UID].credits == 17


@pytest.mark.asyncio
async def test_balance_without_plan_is_kept_when_credit_fields_are_filled(repo):
    repo.seed_ledger(UserLedger(uid="half", credits=15))
    repo.seed_ledger(UserLedger(uid="half-2", credits=15))

    init = await initialize_credits("half", repo, now=NOW)
    await grant_monthly_credits(repo, now=NOW)

    assert init == {"already_initialized": False, "credits": 15, "max_credits": 2, "plan": "free"}
    assert repo.ledgers["half"].credits == 15
    assert (repo.ledgers["half-2"].plan, repo.ledgers["half-2"].credits) == ("free", 15)
