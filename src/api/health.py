"""Liveness, dependency status and public service metadata."""

import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.db.models import ProviderType, QueueEntry, QueueStatus
from src.db.session import get_db
from src.schemas.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["System"])

settings = get_settings()

VERSION = "1.0.0"


async def _redis_status() -> str:
    client = aioredis.from_url(settings.redis_url, socket_connect_timeout=1)
    try:
        await client.ping()
        return "ok"
    except (aioredis.RedisError, OSError) as e:
        logger.warning(f"Redis health check failed: {e}")
        return "error"
    finally:
        await client.aclose()


async def _queue_depths(db: AsyncSession) -> dict[str, dict[str, int]]:
    """Waiting and in-flight entries per provider."""
    depths = {
        provider.value: {"pending": 0, "in_flight": 0} for provider in ProviderType
    }
    result = await db.execute(
        select(QueueEntry.provider_type, QueueEntry.status, func.count())
        .where(QueueEntry.status.in_([QueueStatus.PENDING, QueueStatus.IN_FLIGHT]))
        .group_by(QueueEntry.provider_type, QueueEntry.status)
    )
    for provider, entry_status, count in result.all():
        key = "pending" if entry_status == QueueStatus.PENDING else "in_flight"
        depths[ProviderType(provider).value][key] = count
    return depths


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Database and broker reachability plus dispatch queue depth.",
)
async def health_check(db: AsyncSession = Depends(get_db)):
    queues: dict[str, dict[str, int]] = {}
    try:
        await db.execute(text("SELECT 1"))
        queues = await _queue_depths(db)
        db_status = "ok"
    except SQLAlchemyError as e:
        logger.warning(f"Database health check failed: {e}")
        db_status = "error"

    redis_status = await _redis_status()

    return HealthResponse(
        status="healthy" if db_status == redis_status == "ok" else "degraded",
        version=VERSION,
        database=db_status,
        redis=redis_status,
        queues=queues,
    )


@router.get(
    "/v1/info",
    summary="Service information",
    description="Credit costs and provider dispatch limits.",
)
async def service_info():
    return {
        "name": settings.app_name,
        "version": VERSION,
        "environment": settings.app_env,
        "generation_kinds": ["music", "video"],
        "credit_costs": {
            "music": settings.music_credit_cost,
            "video": settings.video_credit_cost,
        },
        "dispatch_limits": {
            "music": {
                "concurrency": settings.music_concurrency_limit,
                "window_ms": settings.music_rate_limit_window_ms,
                "max_requests": settings.music_rate_limit_max_requests,
            },
            "video": {"concurrency": settings.video_concurrency_limit},
        },
        "documentation": "/docs",
    }
