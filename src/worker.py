"""Celery worker configuration and tasks."""

import asyncio
import logging

from celery import Celery, Task
from celery.signals import worker_ready
from redis import Redis

from src.config import get_settings
from src.db.models import ProviderType
from src.services.tiers import DAY_MS

settings = get_settings()

logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "media_credits_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=120,
    task_soft_time_limit=100,
    worker_prefetch_multiplier=1,  # Fetch one task at a time
    task_acks_late=True,  # Ack after task completes
    task_reject_on_worker_lost=True,
    task_default_queue="default",
    task_queues={
        "default": {"exchange": "default", "routing_key": "default"},
        "dispatch": {"exchange": "dispatch", "routing_key": "dispatch"},
    },
    task_routes={
        "src.worker.pump_queue": {"queue": "dispatch"},
        "src.worker.pump_all_queues": {"queue": "dispatch"},
    },
    beat_schedule={
        "pump-all-queues": {
            "task": "src.worker.pump_all_queues",
            "schedule": settings.pump_interval_seconds,
        },
        "recover-stalled-queue-entries": {
            "task": "src.worker.recover_stalled_entries",
            "schedule": 60.0,
        },
        "cleanup-finished-queue-entries": {
            "task": "src.worker.cleanup_finished_entries",
            "schedule": 3600.0,  # Every hour
        },
    },
)


class BaseTask(Task):
    """Base task with retry configuration."""

    autoretry_for = (Exception,)
    retry_backoff = True
    retry_backoff_max = 60
    retry_jitter = True
    max_retries = 3


def _pump_lock(provider_type: str):
    """Cross-worker lock so only one pump per provider type runs at a time."""
    client = Redis.from_url(settings.redis_url)
    return client.lock(
        f"dispatch-pump:{provider_type}",
        timeout=settings.pump_time_limit_seconds,
        blocking_timeout=0,
    )


@celery_app.task(
    bind=True,
    base=BaseTask,
    name="src.worker.pump_queue",
    time_limit=settings.pump_time_limit_seconds,
    soft_time_limit=settings.pump_time_limit_seconds - 30,
)
def pump_queue(self, provider_type: str) -> dict:
    """
    Submit pending queue entries of one provider type.

    Args:
        provider_type: "music" or "video"

    Returns:
        Dict with processed/failed counts, or skipped with a reason
    """
    from src.db.session import async_session_maker, engine
    from src.services.generation_service import generation_service
    from src.services.providers import get_provider_registry

    ptype = ProviderType(provider_type)

    async def do_pump():
        try:
            async with async_session_maker() as db:
                return await generation_service.pump(db, ptype, get_provider_registry())
        finally:
            # Pooled connections belong to this event loop
            await engine.dispose()

    lock = _pump_lock(provider_type)
    if not lock.acquire():
        logger.info(f"Pump for {provider_type} already running, skipping")
        return {"skipped": True, "reason": "locked"}

    try:
        result = asyncio.run(do_pump())
    finally:
        lock.release()

    return {
        "processed": result.processed,
        "failed": result.failed,
        "skipped": result.skipped,
        "reason": result.reason,
    }


@celery_app.task(name="src.worker.pump_all_queues")
def pump_all_queues():
    """Periodic task fanning out one pump per provider type."""
    for provider_type in ProviderType:
        pump_queue.apply_async(args=[provider_type.value])


@celery_app.task(name="src.worker.cleanup_finished_entries")
def cleanup_finished_entries():
    """Periodic task to delete old completed and failed queue entries."""
    from src.db.session import async_session_maker, engine
    from src.services.dispatch_queue import dispatch_queue

    async def do_cleanup():
        try:
            async with async_session_maker() as db:
                return await dispatch_queue.cleanup_finished(
                    db, settings.queue_retention_days * DAY_MS
                )
        finally:
            await engine.dispose()

    deleted = asyncio.run(do_cleanup())
    logger.info(f"Cleaned up {deleted} finished queue entries")
    return deleted


@celery_app.task(name="src.worker.recover_stalled_entries")
def recover_stalled_entries():
    """Periodic task failing and refunding entries a dead pump left in flight."""
    from src.db.session import async_session_maker, engine
    from src.services.generation_service import generation_service

    async def do_recover():
        try:
            async with async_session_maker() as db:
                return await generation_service.recover_stalled(
                    db, int(settings.stalled_entry_after_seconds * 1000)
                )
        finally:
            await engine.dispose()

    recovered = asyncio.run(do_recover())
    if recovered:
        logger.warning(f"Recovered {recovered} stalled queue entries")
        pump_all_queues.delay()
    return recovered


@worker_ready.connect
def drain_queues_on_startup(sender=None, **kwargs):
    """Drain entries that were queued while no worker was running."""
    logger.info("Worker ready, pumping all dispatch queues")
    pump_all_queues.delay()
