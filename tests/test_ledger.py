"""Tests for the usage ledger."""

import asyncio

import pytest
from sqlalchemy import select

from src.db.models import Subscription, SubscriptionStatus
from src.services.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from src.services.ledger import USAGE_LIMIT_REACHED, UsageLedger
from src.services.tiers import DAY_MS
from tests.conftest import make_user


async def _stored(db, subscription_id: str) -> Subscription:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class RacingLedger(UsageLedger):
    """Lets a competing writer commit between this ledger's read and its write."""

    def __init__(self, competitor, rounds: int, **kwargs):
        super().__init__(**kwargs)
        self.competitor = competitor
        self.rounds = rounds

    async def _load(self, db, subscription_id):
        subscription = await super()._load(db, subscription_id)
        if self.rounds > 0:
            self.rounds -= 1
            await self.competitor()
        return subscription


@pytest.mark.asyncio
async def test_reservations_stop_at_limit(db_session, clock):
    """Three reservations fit a limit of three; the fourth is refused."""
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="alpha", ledger=ledger)
    sub_id = subscription.id

    results = [await ledger.reserve_credit(db_session, sub_id) for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert results[2].remaining == 0
    refused = results[3]
    assert refused.code == USAGE_LIMIT_REACHED
    assert refused.reason == "Usage limit reached"
    assert refused.consumed == 3
    assert refused.remaining == 0
    assert (await _stored(db_session, sub_id)).consumed_credits == 3


@pytest.mark.asyncio
async def test_successes_never_exceed_limit(db_session, clock):
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="free", ledger=ledger)

    results = [await ledger.reserve_credit(db_session, subscription.id) for _ in range(10)]

    assert sum(r.allowed for r in results) == 7


@pytest.mark.asyncio
async def test_refusal_does_not_write(db_session, clock):
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="alpha", ledger=ledger)
    sub_id = subscription.id
    for _ in range(3):
        await ledger.reserve_credit(db_session, sub_id)
    version = (await _stored(db_session, sub_id)).version

    result = await ledger.reserve_credit(db_session, sub_id)

    assert not result.allowed
    assert (await _stored(db_session, sub_id)).version == version


@pytest.mark.asyncio
async def test_weekly_period_rolls_over_with_reservation(db_session, clock):
    """A full weekly allowance renews once the period has elapsed."""
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="weekly", ledger=ledger)
    sub_id = subscription.id
    for _ in range(25):
        assert (await ledger.reserve_credit(db_session, sub_id)).allowed
    assert not (await ledger.reserve_credit(db_session, sub_id)).allowed

    clock.advance(8 * DAY_MS)
    result = await ledger.reserve_credit(db_session, sub_id)

    assert result.allowed
    assert result.consumed == 1
    assert result.period_start == clock.now
    stored = await _stored(db_session, sub_id)
    assert stored.consumed_credits == 1
    assert stored.period_start == clock.now


@pytest.mark.asyncio
async def test_rollover_one_ms_after_period_end(db_session, clock):
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="weekly", ledger=ledger)
    sub_id = subscription.id
    for _ in range(20):
        await ledger.reserve_credit(db_session, sub_id)

    clock.advance(7 * DAY_MS + 1)
    result = await ledger.reserve_credit(db_session, sub_id)

    assert result.allowed
    assert result.consumed == 1
    assert result.remaining == 24
    assert result.period_start == clock.now


@pytest.mark.asyncio
async def test_no_rollover_exactly_at_period_end(db_session, clock):
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="weekly", ledger=ledger)
    sub_id = subscription.id
    start = clock.now
    await ledger.reserve_credit(db_session, sub_id)

    clock.advance(7 * DAY_MS)
    result = await ledger.reserve_credit(db_session, sub_id)

    assert result.consumed == 2
    assert result.period_start == start


@pytest.mark.asyncio
async def test_refused_reservation_does_not_persist_rollover(db_session, clock):
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="free", ledger=ledger)
    sub_id = subscription.id
    start = clock.now

    stored = await _stored(db_session, sub_id)
    stored.custom_credit_limit = 0
    await db_session.commit()

    clock.advance(31 * DAY_MS)
    result = await ledger.reserve_credit(db_session, sub_id)

    assert not result.allowed
    assert (await _stored(db_session, sub_id)).period_start == start


@pytest.mark.asyncio
async def test_refund_never_goes_below_zero(db_session, clock):
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, ledger=ledger)
    sub_id = subscription.id
    await ledger.reserve_credit(db_session, sub_id)

    assert await ledger.refund_credit(db_session, sub_id, 3) == 0
    assert await ledger.refund_credit(db_session, sub_id, 1) == 0
    assert (await _stored(db_session, sub_id)).consumed_credits == 0


@pytest.mark.asyncio
async def test_refund_for_missing_subscription_is_noop(db_session, clock):
    ledger = UsageLedger(clock=clock)
    assert await ledger.refund_credit(db_session, "missing") is None
    assert await ledger.refund_credit_for_user(db_session, "missing") is None


@pytest.mark.asyncio
async def test_reserve_for_missing_subscription_raises(db_session, clock):
    ledger = UsageLedger(clock=clock)
    with pytest.raises(NotFoundError):
        await ledger.reserve_credit(db_session, "missing")
    with pytest.raises(NotFoundError):
        await ledger.reserve_credit_for_user(db_session, "missing")


@pytest.mark.asyncio
async def test_snapshot_reports_stale_period_without_writing(db_session, clock):
    ledger = UsageLedger(clock=clock)
    user, subscription = await make_user(db_session, tier="weekly", ledger=ledger)
    user_id, sub_id = user.id, subscription.id
    for _ in range(5):
        await ledger.reserve_credit(db_session, sub_id)
    version = (await _stored(db_session, sub_id)).version

    clock.advance(10 * DAY_MS)
    snapshot = await ledger.get_usage_snapshot(db_session, user_id)

    assert snapshot.consumed == 5
    assert snapshot.remaining == 20
    assert snapshot.period_end == snapshot.period_start + 7 * DAY_MS
    assert (await _stored(db_session, sub_id)).version == version


@pytest.mark.asyncio
async def test_create_free_subscription_is_idempotent(db_session, clock):
    ledger = UsageLedger(clock=clock)
    user, subscription = await make_user(db_session, ledger=ledger)

    again = await ledger.create_free_subscription(db_session, user.id)

    assert again.id == subscription.id


@pytest.mark.asyncio
async def test_tier_change_resets_credits(db_session, clock):
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="free", ledger=ledger)
    sub_id = subscription.id
    for _ in range(7):
        await ledger.reserve_credit(db_session, sub_id)

    clock.advance(DAY_MS)
    change = await ledger.apply_tier_change(
        db_session, sub_id, "monthly", SubscriptionStatus.ACTIVE, "premium_monthly"
    )

    assert change.reset
    stored = await _stored(db_session, sub_id)
    assert stored.tier == "monthly"
    assert stored.consumed_credits == 0
    assert stored.period_start == clock.now
    assert stored.custom_credit_limit is None


@pytest.mark.asyncio
async def test_same_tier_update_does_not_reset(db_session, clock):
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="monthly", ledger=ledger)
    sub_id = subscription.id
    for _ in range(4):
        await ledger.reserve_credit(db_session, sub_id)

    change = await ledger.apply_tier_change(
        db_session,
        sub_id,
        "monthly",
        SubscriptionStatus.ACTIVE,
        "premium_monthly",
        platform="play_store",
    )

    assert not change.reset
    stored = await _stored(db_session, sub_id)
    assert stored.consumed_credits == 4
    assert stored.platform == "play_store"


@pytest.mark.asyncio
async def test_yearly_tier_change_stores_monthly_limit(db_session, clock):
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, ledger=ledger)

    await ledger.apply_tier_change(
        db_session, subscription.id, "yearly", SubscriptionStatus.ACTIVE, "premium_annual"
    )

    stored = await _stored(db_session, subscription.id)
    assert stored.custom_credit_limit == 84


@pytest.mark.asyncio
async def test_concurrent_reservations_succeed_min_n_l(db_session, session_maker, clock):
    """Ten simultaneous reservations against a limit of seven: exactly seven win."""
    ledger = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="free", ledger=ledger)
    sub_id = subscription.id

    async def reserve():
        async with session_maker() as session:
            return await ledger.reserve_credit(session, sub_id)

    results = await asyncio.gather(*(reserve() for _ in range(10)))

    assert sum(r.allowed for r in results) == 7
    assert (await _stored(db_session, sub_id)).consumed_credits == 7


@pytest.mark.asyncio
async def test_lost_race_rereads_and_respects_limit(db_session, session_maker, clock):
    """A reservation that loses a race re-reads the counter before deciding."""
    base = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="alpha", ledger=base)
    sub_id = subscription.id
    await base.reserve_credit(db_session, sub_id)
    await base.reserve_credit(db_session, sub_id)

    async def competitor():
        async with session_maker() as other:
            result = await base.reserve_credit(other, sub_id)
            assert result.allowed

    racing = RacingLedger(competitor, rounds=1, clock=clock)
    result = await racing.reserve_credit(db_session, sub_id)

    assert not result.allowed
    assert result.consumed == 3
    assert (await _stored(db_session, sub_id)).consumed_credits == 3


@pytest.mark.asyncio
async def test_lost_race_retries_and_succeeds(db_session, session_maker, clock):
    base = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="free", ledger=base)
    sub_id = subscription.id

    async def competitor():
        async with session_maker() as other:
            await base.reserve_credit(other, sub_id)

    racing = RacingLedger(competitor, rounds=2, clock=clock)
    result = await racing.reserve_credit(db_session, sub_id)

    assert result.allowed
    assert result.consumed == 3
    assert (await _stored(db_session, sub_id)).consumed_credits == 3


@pytest.mark.asyncio
async def test_endless_contention_raises_conflict(db_session, session_maker, clock):
    base = UsageLedger(clock=clock)
    _, subscription = await make_user(db_session, tier="free", ledger=base)
    sub_id = subscription.id

    async def competitor():
        async with session_maker() as other:
            await base.refund_credit(other, sub_id)

    racing = RacingLedger(competitor, rounds=10, clock=clock, max_attempts=3)
    with pytest.raises(ConcurrencyConflictError):
        await racing.reserve_credit(db_session, sub_id)


@pytest.mark.asyncio
@pytest.mark.parametrize("cost", [0, -5])
async def test_non_positive_cost_is_rejected(db_session, clock, cost):
    ledger = UsageLedger(clock=clock)
    user, subscription = await make_user(db_session, tier="alpha", ledger=ledger)
    user_id, sub_id = user.id, subscription.id

    with pytest.raises(ValidationError):
        await ledger.reserve_credit(db_session, sub_id, cost=cost)
    with pytest.raises(ValidationError):
        await ledger.refund_credit(db_session, sub_id, cost=cost)
    with pytest.raises(ValidationError):
        await ledger.refund_credit_for_user(db_session, user_id, cost=cost)

    stored = await _stored(db_session, sub_id)
    assert stored.consumed_credits == 0
    assert stored.version == subscription.version
