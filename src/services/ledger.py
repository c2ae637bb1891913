"""Usage ledger: per-subscription credit counters.

Every write to ``Subscription.consumed_credits`` goes through this module.
Writes are optimistic: the row is read together with its ``version``, the
new counters are computed in Python, and the row is updated only if the
version is still the one that was read. A writer that loses the race rolls
back, re-reads and tries again. Concurrent reservations on one subscription
are therefore linearized by the database, and a period rollover is always
part of the same conditional write as the limit check that follows it.

Each ledger operation ends its own transaction (commit on success, rollback
on a lost race), so call it with a session that carries no unrelated
pending work.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.db.models import Subscription, SubscriptionStatus, User
from src.services.clock import Clock, now_ms
from src.services.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from src.services.tiers import (
    custom_limit_for_tier,
    effective_credit_limit,
    get_tier_policy,
    normalize_tier,
)

logger = logging.getLogger(__name__)

USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"


def _check_cost(cost: int) -> None:
    if cost <= 0:
        raise ValidationError(f"cost must be positive, got {cost}")


@dataclass
class ReservationResult:
    """Outcome of a credit reservation."""

    allowed: bool
    consumed: int
    limit: int
    remaining: int
    tier: str
    status: str
    period_start: int
    period_end: int
    code: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UsageSnapshot:
    """Stored counters of a subscription, without any rollover applied."""

    subscription_id: str
    tier: str
    status: str
    consumed: int
    limit: int
    remaining: int
    period_start: int
    period_end: int


@dataclass
class TierChangeResult:
    subscription_id: str
    previous_tier: str
    tier: str
    reset: bool


class UsageLedger:
    """Reserve and refund credits against a subscription's tier policy."""

    def __init__(self, clock: Clock = now_ms, max_attempts: Optional[int] = None):
        self._clock = clock
        self._max_attempts = max_attempts or get_settings().ledger_max_attempts

    async def _load(self, db: AsyncSession, subscription_id: str) -> Optional[Subscription]:
        result = await db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _write_if_unchanged(
        self, db: AsyncSession, subscription: Subscription, **values
    ) -> bool:
        """Apply ``values`` only if nobody wrote the row since it was read."""
        result = await db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.version == subscription.version,
            )
            .values(version=subscription.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await db.commit()
            return True

        await db.rollback()
        return False

    async def active_subscription_id(self, db: AsyncSession, user_id: str) -> str:
        """Resolve a user's active subscription, raising NotFoundError if missing."""
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        if not user.active_subscription_id:
            raise NotFoundError(f"User {user_id} has no active subscription")
        return user.active_subscription_id

    async def reserve_credit(
        self,
        db: AsyncSession,
        subscription_id: str,
        cost: int = 1,
    ) -> ReservationResult:
        """
        Consume ``cost`` credits if the subscription is below its limit.

        A call succeeds iff the consumed count before it is below the limit,
        so the call that reaches the limit exactly still succeeds and the
        next one is refused. A refusal is returned, never raised.

        Raises:
            NotFoundError: if the subscription does not exist.
            ValidationError: if ``cost`` is not positive.
            ConcurrencyConflictError: if the write lost every retry.
        """
        _check_cost(cost)
        for _ in range(self._max_attempts):
            subscription = await self._load(db, subscription_id)
            if subscription is None:
                raise NotFoundError(f"Subscription {subscription_id} not found")

            now = self._clock()
            policy = get_tier_policy(subscription.tier)
            consumed = subscription.consumed_credits
            period_start = subscription.period_start

            if now > period_start + policy.period_duration_ms:
                consumed = 0
                period_start = now

            limit = effective_credit_limit(subscription.tier, subscription.custom_credit_limit)
            status = subscription.status.value
            period_end = period_start + policy.period_duration_ms

            if consumed >= limit:
                return ReservationResult(
                    allowed=False,
                    code=USAGE_LIMIT_REACHED,
                    reason="Usage limit reached",
                    consumed=consumed,
                    limit=limit,
                    remaining=0,
                    tier=policy.tier,
                    status=status,
                    period_start=period_start,
                    period_end=period_end,
                )

            new_consumed = consumed + cost
            written = await self._write_if_unchanged(
                db,
                subscription,
                consumed_credits=new_consumed,
                period_start=period_start,
                last_verified_at=now,
            )
            if not written:
                continue

            if period_start != subscription.period_start:
                logger.info(f"Subscription {subscription_id} rolled over to a new period")

            return ReservationResult(
                allowed=True,
                consumed=new_consumed,
                limit=limit,
                remaining=max(0, limit - new_consumed),
                tier=policy.tier,
                status=status,
                period_start=period_start,
                period_end=period_end,
            )

        raise ConcurrencyConflictError(
            f"Could not reserve credit on subscription {subscription_id}"
        )

    async def reserve_credit_for_user(
        self, db: AsyncSession, user_id: str, cost: int = 1
    ) -> ReservationResult:
        subscription_id = await self.active_subscription_id(db, user_id)
        return await self.reserve_credit(db, subscription_id, cost)

    async def refund_credit(
        self,
        db: AsyncSession,
        subscription_id: str,
        cost: int = 1,
    ) -> Optional[int]:
        """
        Return ``cost`` credits, never letting the counter drop below zero.

        Returns the new consumed count, or None if the subscription is gone.
        """
        _check_cost(cost)
        for _ in range(self._max_attempts):
            subscription = await self._load(db, subscription_id)
            if subscription is None:
                logger.warning(f"Refund skipped, subscription {subscription_id} not found")
                return None

            new_consumed = max(0, subscription.consumed_credits - cost)
            written = await self._write_if_unchanged(
                db,
                subscription,
                consumed_credits=new_consumed,
                last_verified_at=self._clock(),
            )
            if written:
                logger.info(
                    f"Refunded {cost} credit(s) on subscription {subscription_id}, "
                    f"consumed now {new_consumed}"
                )
                return new_consumed

        raise ConcurrencyConflictError(
            f"Could not refund credit on subscription {subscription_id}"
        )

    async def refund_credit_for_user(
        self, db: AsyncSession, user_id: str, cost: int = 1
    ) -> Optional[int]:
        _check_cost(cost)
        user = await db.get(User, user_id)
        if user is None or not user.active_subscription_id:
            logger.warning(f"Refund skipped, user {user_id} has no active subscription")
            return None
        return await self.refund_credit(db, user.active_subscription_id, cost)

    async def get_usage_snapshot(self, db: AsyncSession, user_id: str) -> UsageSnapshot:
        """
        Read the stored counters without writing.

        A period that has already elapsed is reported as-is until the next
        reservation rolls it over.
        """
        subscription_id = await self.active_subscription_id(db, user_id)
        subscription = await self._load(db, subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")

        policy = get_tier_policy(subscription.tier)
        limit = effective_credit_limit(subscription.tier, subscription.custom_credit_limit)
        return UsageSnapshot(
            subscription_id=subscription.id,
            tier=policy.tier,
            status=subscription.status.value,
            consumed=subscription.consumed_credits,
            limit=limit,
            remaining=max(0, limit - subscription.consumed_credits),
            period_start=subscription.period_start,
            period_end=subscription.period_start + policy.period_duration_ms,
        )

    async def create_subscription(
        self,
        db: AsyncSession,
        user_id: str,
        tier: str = "free",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        product_id: str = "free-tier",
        platform: Optional[str] = None,
        expires_at: Optional[int] = None,
    ) -> Subscription:
        """Create a fresh subscription and make it the user's active one."""
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        now = self._clock()
        tier = normalize_tier(tier)
        subscription = Subscription(
            user_id=user_id,
            tier=tier,
            status=status,
            product_id=product_id,
            platform=platform,
            consumed_credits=0,
            period_start=now,
            custom_credit_limit=custom_limit_for_tier(tier),
            last_verified_at=now,
            expires_at=expires_at,
            version=1,
        )
        db.add(subscription)
        await db.flush()

        user.active_subscription_id = subscription.id
        await db.commit()

        logger.info(f"Created {tier} subscription {subscription.id} for user {user_id}")
        return subscription

    async def create_free_subscription(self, db: AsyncSession, user_id: str) -> Subscription:
        """Return the user's active subscription, creating a free one if needed."""
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")

        if user.active_subscription_id:
            existing = await self._load(db, user.active_subscription_id)
            if existing is not None:
                return existing

        return await self.create_subscription(db, user_id)

    async def apply_tier_change(
        self,
        db: AsyncSession,
        subscription_id: str,
        tier: str,
        status: SubscriptionStatus,
        product_id: str,
        platform: Optional[str] = None,
        expires_at: Optional[int] = None,
    ) -> TierChangeResult:
        """
        Record a billing-driven update of a subscription.

        When the resolved tier differs from the stored one the period
        restarts with a full allowance (no prorating) and the custom limit
        is replaced by the new tier's. An update that keeps the tier
        (renewal, platform change) never resets the counters.
        """
        tier = normalize_tier(tier)
        for _ in range(self._max_attempts):
            subscription = await self._load(db, subscription_id)
            if subscription is None:
                raise NotFoundError(f"Subscription {subscription_id} not found")

            now = self._clock()
            previous_tier = subscription.tier
            values: dict[str, Any] = {
                "tier": tier,
                "status": status,
                "product_id": product_id,
                "last_verified_at": now,
            }
            if platform:
                values["platform"] = platform
            if expires_at is not None:
                values["expires_at"] = expires_at

            reset = previous_tier != tier
            if reset:
                values.update(
                    consumed_credits=0,
                    period_start=now,
                    custom_credit_limit=custom_limit_for_tier(tier),
                )

            if await self._write_if_unchanged(db, subscription, **values):
                if reset:
                    logger.info(
                        f"Subscription {subscription_id} moved {previous_tier} -> {tier}, "
                        f"credits reset"
                    )
                return TierChangeResult(
                    subscription_id=subscription_id,
                    previous_tier=previous_tier,
                    tier=tier,
                    reset=reset,
                )

        raise ConcurrencyConflictError(
            f"Could not update tier on subscription {subscription_id}"
        )


# Singleton instance
usage_ledger = UsageLedger()
