"""Usage and plan routes."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.security import resolve_owner_identity
from src.db.models import User
from src.db.session import get_db
from src.middleware.rate_limit import rate_limit_general
from src.schemas.schemas import PlanInfo, UsageResponse
from src.services.ledger import usage_ledger
from src.services.tiers import list_plans

router = APIRouter(prefix="/v1", tags=["Usage"])


@router.get(
    "/usage",
    response_model=UsageResponse,
    summary="Get credit usage",
    description="Stored credit counters of your subscription. Read-only: an elapsed "
    "period is reported as-is until your next generation rolls it over.",
)
@rate_limit_general()
async def get_usage(
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(resolve_owner_identity),
):
    snapshot = await usage_ledger.get_usage_snapshot(db, user.id)
    return UsageResponse(
        subscription_id=snapshot.subscription_id,
        tier=snapshot.tier,
        status=snapshot.status,
        consumed=snapshot.consumed,
        limit=snapshot.limit,
        remaining=snapshot.remaining,
        period_start=snapshot.period_start,
        period_end=snapshot.period_end,
    )


@router.get(
    "/plans",
    response_model=list[PlanInfo],
    summary="List plans",
    description="Credit allowance and renewal period of every subscription tier.",
)
async def get_plans():
    return [
        PlanInfo(
            tier=plan.tier,
            credit_limit=plan.credit_limit,
            period_duration_ms=plan.period_duration_ms,
            price=plan.price,
            description=plan.description,
        )
        for plan in list_plans()
    ]
