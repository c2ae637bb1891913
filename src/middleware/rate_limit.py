"""Per-user request throttling for the public API (slowapi)."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.config import get_settings

settings = get_settings()


def get_owner_or_ip(request: Request) -> str:
    """Bucket by the key owner once identity has resolved, else by client IP."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_remote_address(request)}"


# memory:// in tests, Redis otherwise
limiter = Limiter(
    key_func=get_owner_or_ip,
    storage_uri=settings.limiter_storage_uri,
    strategy="fixed-window",
)


def _per_minute(multiplier: int = 1):
    return limiter.limit(
        f"{settings.rate_limit_per_minute * multiplier}/minute",
        key_func=get_owner_or_ip,
    )


def rate_limit_generations():
    """Budget for credit-spending generation starts."""
    return _per_minute()


def rate_limit_general():
    return _per_minute(2)
