"""Subscription tier policy.

Pure lookups from a tier name to its credit limit and renewal period, plus
the billing-product mappings used when a billing event changes a tier.
Nothing here touches the database.
"""

import math
from dataclasses import dataclass
from typing import Optional

DAY_MS = 24 * 60 * 60 * 1000

# Tiers without a renewal period never roll over in practice.
NO_PERIOD_MS = 100 * 365 * DAY_MS

DEFAULT_TIER = "free"

PLAN_CONFIG: dict[str, dict] = {
    "alpha": {
        "credit_limit": 3,
        "period_days": None,
        "price": 0.0,
        "description": "Legacy alpha access",
    },
    "free": {
        "credit_limit": 7,
        "period_days": 30,
        "price": 0.0,
        "description": "Free plan with limited generations",
    },
    "weekly": {
        "credit_limit": 25,
        "period_days": 7,
        "price": 3.99,
        "description": "Weekly access with expanded quota",
    },
    "monthly": {
        "credit_limit": 90,
        "period_days": 30,
        "price": 9.99,
        "description": "Monthly plan",
    },
    "yearly": {
        # Billed annually, credits renew monthly at the monthly equivalent.
        "annual_credit_limit": 1000,
        "period_days": 30,
        "price": 99.99,
        "description": "Yearly plan",
    },
}

PRODUCT_TO_TIER: dict[str, str] = {
    "premium_weekly": "weekly",
    "premium_monthly": "monthly",
    "premium_annual": "yearly",
    "free-tier": "free",
}

STORE_TO_PLATFORM: dict[str, str] = {
    "APP_STORE": "app_store",
    "PLAY_STORE": "play_store",
    "STRIPE": "stripe",
}

ACTIVE_EVENT_TYPES = frozenset(
    {
        "INITIAL_PURCHASE",
        "RENEWAL",
        "UNCANCELLATION",
        "SUBSCRIPTION_UNPAUSED",
        "SUBSCRIPTION_RESUMED",
    }
)

SIGNIFICANT_EVENT_TYPES = frozenset(
    {
        "INITIAL_PURCHASE",
        "RENEWAL",
        "CANCELLATION",
        "UNCANCELLATION",
        "PRODUCT_CHANGE",
        "EXPIRATION",
    }
)


@dataclass(frozen=True)
class TierPolicy:
    """Credit allowance of one tier."""

    tier: str
    credit_limit: int
    period_duration_ms: int
    price: float
    description: str = ""


def _monthly_equivalent(annual_limit: int) -> int:
    return math.ceil(annual_limit / 12)


def normalize_tier(tier: Optional[str]) -> str:
    """Map unknown or empty tier names to the default tier."""
    if tier and tier in PLAN_CONFIG:
        return tier
    return DEFAULT_TIER


def get_tier_policy(tier: Optional[str]) -> TierPolicy:
    """Return the policy for ``tier``; unknown tiers get the default tier's policy."""
    name = normalize_tier(tier)
    config = PLAN_CONFIG[name]

    if "annual_credit_limit" in config:
        credit_limit = _monthly_equivalent(config["annual_credit_limit"])
    else:
        credit_limit = config["credit_limit"]

    period_days = config["period_days"]
    period_ms = NO_PERIOD_MS if period_days is None else period_days * DAY_MS

    return TierPolicy(
        tier=name,
        credit_limit=credit_limit,
        period_duration_ms=period_ms,
        price=config["price"],
        description=config.get("description", ""),
    )


def period_duration_ms(tier: Optional[str]) -> int:
    return get_tier_policy(tier).period_duration_ms


def effective_credit_limit(tier: Optional[str], custom_limit: Optional[int] = None) -> int:
    """Custom per-subscription limit wins over the tier default."""
    if custom_limit is not None:
        return custom_limit
    return get_tier_policy(tier).credit_limit


def custom_limit_for_tier(tier: Optional[str]) -> Optional[int]:
    """Limit stored on a subscription when it moves to ``tier``.

    Annual tiers store their monthly equivalent; every other tier stores
    ``None`` and falls back to the tier default.
    """
    config = PLAN_CONFIG[normalize_tier(tier)]
    if "annual_credit_limit" in config:
        return _monthly_equivalent(config["annual_credit_limit"])
    return None


def tier_for_product(product_id: Optional[str]) -> str:
    if not product_id:
        return DEFAULT_TIER
    return PRODUCT_TO_TIER.get(product_id, DEFAULT_TIER)


def platform_for_store(store: Optional[str]) -> Optional[str]:
    return STORE_TO_PLATFORM.get(store) if store else None


def status_for_event(event_type: str, is_active: bool) -> str:
    """Subscription status implied by a billing event."""
    if event_type in ACTIVE_EVENT_TYPES:
        return "active"
    if event_type == "PRODUCT_CHANGE":
        return "active" if is_active else "expired"
    if event_type == "CANCELLATION":
        return "canceled"
    if event_type == "EXPIRATION":
        return "expired"
    if event_type == "BILLING_ISSUE":
        return "in_grace"
    return "active" if is_active else "expired"


def effective_tier(tier: str, status: str) -> str:
    """Inactive subscriptions are metered at the default tier."""
    if status in ("active", "in_grace"):
        return normalize_tier(tier)
    return DEFAULT_TIER


def list_plans() -> list[TierPolicy]:
    return [get_tier_policy(name) for name in PLAN_CONFIG]
