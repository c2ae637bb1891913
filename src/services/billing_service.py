"""Apply billing-provider subscription events to the usage ledger."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import Subscription, SubscriptionEvent, SubscriptionStatus, User
from src.schemas.schemas import BillingEvent
from src.services.clock import Clock, now_ms
from src.services.ledger import UsageLedger, usage_ledger
from src.services.tiers import (
    ACTIVE_EVENT_TYPES,
    SIGNIFICANT_EVENT_TYPES,
    effective_tier,
    platform_for_store,
    status_for_event,
    tier_for_product,
)

logger = logging.getLogger(__name__)


@dataclass
class BillingOutcome:
    status: str  # "ok" or "ignored"
    reason: Optional[str] = None
    tier: Optional[str] = None
    subscription_status: Optional[str] = None
    tier_reset: bool = False
    logged: bool = False

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status}
        if self.reason:
            body["reason"] = self.reason
        return body


def parse_billing_event(body: Any) -> Optional[BillingEvent]:
    """
    Pull the event out of a billing webhook body.

    Accepts the provider's ``{"event": {...}}`` envelope as well as a flat
    object. Returns None when the body is not an object or its fields
    have the wrong types.
    """
    if not isinstance(body, dict):
        return None
    payload = body.get("event") if isinstance(body.get("event"), dict) else body
    try:
        return BillingEvent.model_validate(payload)
    except PydanticValidationError as e:
        logger.warning(f"Unreadable billing event: {e.error_count()} invalid field(s)")
        return None


class BillingService:
    """Keeps a user's subscription in step with the billing provider."""

    def __init__(self, ledger: UsageLedger = usage_ledger, clock: Clock = now_ms):
        self._ledger = ledger
        self._clock = clock

    async def process_billing_event(
        self, db: AsyncSession, event: BillingEvent
    ) -> BillingOutcome:
        """
        Update the user's subscription from one billing event.

        Events without a user or product id, or for unknown users, are
        ignored rather than rejected so the provider does not keep retrying
        them. Replaying an event is harmless: once the stored tier matches,
        no further credit reset happens.
        """
        if not event.app_user_id or not event.product_id:
            logger.warning(f"Billing event {event.event_type} missing user or product id")
            return BillingOutcome(status="ignored", reason="Missing required fields")

        user_id = event.app_user_id
        user = await db.get(User, user_id)
        if user is None:
            logger.warning(f"Billing event for unknown user {user_id}")
            return BillingOutcome(status="ignored", reason="Unknown user")

        event_type = event.event_type or ""
        entitlement_ids = event.entitlement_id_list()
        if event_type == "PRODUCT_CHANGE":
            is_active = len(entitlement_ids) > 0
        else:
            is_active = event_type in ACTIVE_EVENT_TYPES

        status = status_for_event(event_type, is_active)
        tier = effective_tier(tier_for_product(event.product_id), status)
        platform = platform_for_store(event.store)
        expires_at = event.expiration_ms()

        current: Optional[Subscription] = None
        if user.active_subscription_id:
            current = await db.get(
                Subscription, user.active_subscription_id, populate_existing=True
            )

        state_changed = (
            current is None
            or current.status.value != status
            or current.product_id != event.product_id
            or current.tier != tier
        )

        tier_reset = False
        if current is None:
            await self._ledger.create_subscription(
                db,
                user_id,
                tier=tier,
                status=SubscriptionStatus(status),
                product_id=event.product_id,
                platform=platform,
                expires_at=expires_at,
            )
        else:
            change = await self._ledger.apply_tier_change(
                db,
                current.id,
                tier=tier,
                status=SubscriptionStatus(status),
                product_id=event.product_id,
                platform=platform,
                expires_at=expires_at,
            )
            tier_reset = change.reset

        should_log = state_changed or event_type in SIGNIFICANT_EVENT_TYPES
        if should_log:
            db.add(
                SubscriptionEvent(
                    user_id=user_id,
                    event_type=event_type or "UNKNOWN",
                    product_id=event.product_id,
                    tier=tier,
                    status=status,
                    store=event.store,
                    entitlement_ids=entitlement_ids,
                    expires_at=expires_at,
                    tier_reset=tier_reset,
                    recorded_at=self._clock(),
                )
            )
            await db.commit()

        logger.info(
            f"Billing event {event_type} for user {user_id}: tier={tier} status={status}"
        )
        return BillingOutcome(
            status="ok",
            tier=tier,
            subscription_status=status,
            tier_reset=tier_reset,
            logged=should_log,
        )


# Singleton instance
billing_service = BillingService()
