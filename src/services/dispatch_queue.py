"""Per-provider dispatch queue.

Generation requests wait here until their provider has a free slot.
Each provider type has a fixed concurrency limit (entries in flight) and
optionally a sliding-window rate limit (entries started within the last
window, whatever their current status). Entries leave the queue in FIFO
order by ``(created_at, id)``.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from src.config import get_settings
from src.db.models import ProviderType, QueueEntry, QueueStatus
from src.services.clock import Clock, now_ms

logger = logging.getLogger(__name__)

settings = get_settings()

# Submits one claimed entry and returns the provider's task id
Submit = Callable[[QueueEntry], Awaitable[str]]

STALLED_ERROR = "Submission did not finish"


@dataclass(frozen=True)
class ProviderLimits:
    concurrency_limit: int
    rate_window_ms: Optional[int] = None
    rate_max_requests: Optional[int] = None

    @property
    def rate_limited(self) -> bool:
        return bool(self.rate_window_ms and self.rate_max_requests)


def default_limits() -> dict[ProviderType, ProviderLimits]:
    return {
        ProviderType.MUSIC: ProviderLimits(
            concurrency_limit=settings.music_concurrency_limit,
            rate_window_ms=settings.music_rate_limit_window_ms,
            rate_max_requests=settings.music_rate_limit_max_requests,
        ),
        ProviderType.VIDEO: ProviderLimits(
            concurrency_limit=settings.video_concurrency_limit,
        ),
    }


@dataclass
class PumpResult:
    processed: int = 0
    failed: int = 0
    skipped: bool = False
    reason: Optional[str] = None


class DispatchQueue:
    """FIFO queue of generation requests, drained under provider limits."""

    def __init__(
        self,
        clock: Clock = now_ms,
        limits: Optional[dict[ProviderType, ProviderLimits]] = None,
    ):
        self._clock = clock
        self._limits = limits or default_limits()

    def limits_for(self, provider_type: ProviderType) -> ProviderLimits:
        return self._limits[provider_type]

    async def enqueue(
        self,
        db: AsyncSession,
        provider_type: ProviderType,
        owner_id: str,
        payload: dict,
        subject_id: Optional[str] = None,
    ) -> QueueEntry:
        """Add a pending entry. Flushes; the caller commits."""
        now = self._clock()
        entry = QueueEntry(
            provider_type=provider_type,
            owner_id=owner_id,
            subject_id=subject_id,
            payload=payload,
            status=QueueStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        db.add(entry)
        await db.flush()

        logger.info(f"Queued {provider_type.value} entry {entry.id} for user {owner_id}")
        return entry

    async def get_entry(self, db: AsyncSession, entry_id: int) -> Optional[QueueEntry]:
        result = await db.execute(
            select(QueueEntry)
            .where(QueueEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def in_flight_count(self, db: AsyncSession, provider_type: ProviderType) -> int:
        result = await db.execute(
            select(func.count())
            .select_from(QueueEntry)
            .where(
                QueueEntry.provider_type == provider_type,
                QueueEntry.status == QueueStatus.IN_FLIGHT,
            )
        )
        return result.scalar() or 0

    async def recent_dispatch_count(
        self, db: AsyncSession, provider_type: ProviderType, window_ms: int
    ) -> int:
        """Entries started within the window, regardless of their status now."""
        since = self._clock() - window_ms
        result = await db.execute(
            select(func.count())
            .select_from(QueueEntry)
            .where(
                QueueEntry.provider_type == provider_type,
                QueueEntry.started_at.is_not(None),
                QueueEntry.started_at >= since,
            )
        )
        return result.scalar() or 0

    async def _rate_limit_reached(
        self, db: AsyncSession, provider_type: ProviderType, limits: ProviderLimits
    ) -> bool:
        if not limits.rate_limited:
            return False
        recent = await self.recent_dispatch_count(db, provider_type, limits.rate_window_ms)
        return recent >= limits.rate_max_requests

    async def _claim_next(
        self, db: AsyncSession, provider_type: ProviderType, limits: ProviderLimits
    ) -> Optional[QueueEntry]:
        """
        Move the oldest pending entry to in-flight.

        The claim is conditional on the entry still being pending and on the
        provider still having a free slot, so a competing pump can neither
        claim the same entry nor push the in-flight count past the limit.
        """
        in_flight = aliased(QueueEntry)
        in_flight_now = (
            select(func.count())
            .select_from(in_flight)
            .where(
                in_flight.provider_type == provider_type,
                in_flight.status == QueueStatus.IN_FLIGHT,
            )
            .scalar_subquery()
        )

        while True:
            result = await db.execute(
                select(QueueEntry.id)
                .where(
                    QueueEntry.provider_type == provider_type,
                    QueueEntry.status == QueueStatus.PENDING,
                )
                .order_by(QueueEntry.created_at, QueueEntry.id)
                .limit(1)
            )
            entry_id = result.scalar_one_or_none()
            if entry_id is None:
                return None

            now = self._clock()
            claimed = await db.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.id == entry_id,
                    QueueEntry.status == QueueStatus.PENDING,
                    in_flight_now < limits.concurrency_limit,
                )
                .values(status=QueueStatus.IN_FLIGHT, started_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                await db.commit()
                return await self.get_entry(db, entry_id)

            await db.rollback()
            if await self.in_flight_count(db, provider_type) >= limits.concurrency_limit:
                return None

    async def record_correlation(self, db: AsyncSession, entry_id: int, task_id: str) -> bool:
        """
        Attach the provider task id to an in-flight entry. The caller commits.

        Returns False if the entry is no longer in flight, which happens when
        it sat uncorrelated long enough to be failed by ``fail_stalled``.
        """
        result = await db.execute(
            update(QueueEntry)
            .where(
                QueueEntry.id == entry_id,
                QueueEntry.status == QueueStatus.IN_FLIGHT,
            )
            .values(correlation_task_id=task_id, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def fail_stalled(self, db: AsyncSession, older_than_ms: int) -> list[QueueEntry]:
        """
        Fail in-flight entries that never got a provider task id.

        An entry claimed by a pump that died before recording the
        correlation would otherwise hold a concurrency slot forever. Each
        entry is failed with a conditional write and committed; only the
        entries this call failed are returned, so their credits can be
        refunded once.
        """
        cutoff = self._clock() - older_than_ms
        result = await db.execute(
            select(QueueEntry.id).where(
                QueueEntry.status == QueueStatus.IN_FLIGHT,
                QueueEntry.correlation_task_id.is_(None),
                QueueEntry.started_at < cutoff,
            )
        )
        candidate_ids = list(result.scalars().all())

        failed = []
        for entry_id in candidate_ids:
            now = self._clock()
            updated = await db.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.id == entry_id,
                    QueueEntry.status == QueueStatus.IN_FLIGHT,
                    QueueEntry.correlation_task_id.is_(None),
                )
                .values(
                    status=QueueStatus.FAILED,
                    error_message=STALLED_ERROR,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if updated.rowcount == 1:
                logger.warning(f"Queue entry {entry_id} stalled without a provider task, failed")
                failed.append(await self.get_entry(db, entry_id))
        return failed

    async def _mark_entry_failed(self, db: AsyncSession, entry_id: int, error: str):
        now = self._clock()
        await db.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id)
            .values(
                status=QueueStatus.FAILED,
                error_message=error,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    async def pump(
        self,
        db: AsyncSession,
        provider_type: ProviderType,
        submit: Submit,
    ) -> PumpResult:
        """
        Submit as many pending entries as the provider's limits allow.

        A submission that raises leaves its entry failed with the error
        recorded; it is not retried.
        """
        limits = self.limits_for(provider_type)

        in_flight = await self.in_flight_count(db, provider_type)
        if in_flight >= limits.concurrency_limit:
            return PumpResult(skipped=True, reason="concurrency")

        if await self._rate_limit_reached(db, provider_type, limits):
            return PumpResult(skipped=True, reason="rate-limit")

        outcome = PumpResult()
        for _ in range(limits.concurrency_limit - in_flight):
            if await self._rate_limit_reached(db, provider_type, limits):
                outcome.reason = "rate-limit"
                break

            entry = await self._claim_next(db, provider_type, limits)
            if entry is None:
                break
            entry_id = entry.id

            try:
                task_id = await submit(entry)
            except Exception as e:
                await db.rollback()
                logger.error(f"Submission of queue entry {entry_id} failed: {e}")
                await self._mark_entry_failed(db, entry_id, str(e))
                outcome.failed += 1
                continue

            logger.info(f"Queue entry {entry_id} dispatched as task {task_id}")
            outcome.processed += 1

        return outcome

    async def mark_completed(self, db: AsyncSession, task_id: str) -> bool:
        """Complete the in-flight entry correlated to ``task_id``. The caller commits."""
        now = self._clock()
        result = await db.execute(
            update(QueueEntry)
            .where(
                QueueEntry.correlation_task_id == task_id,
                QueueEntry.status == QueueStatus.IN_FLIGHT,
            )
            .values(status=QueueStatus.COMPLETED, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"No in-flight queue entry for task {task_id}")
            return False
        return True

    async def mark_failed_by_task(self, db: AsyncSession, task_id: str, error: str) -> bool:
        """Fail the in-flight entry correlated to ``task_id``. The caller commits."""
        now = self._clock()
        result = await db.execute(
            update(QueueEntry)
            .where(
                QueueEntry.correlation_task_id == task_id,
                QueueEntry.status == QueueStatus.IN_FLIGHT,
            )
            .values(
                status=QueueStatus.FAILED,
                error_message=error,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"No in-flight queue entry for task {task_id}")
            return False
        return True

    async def cleanup_finished(self, db: AsyncSession, older_than_ms: int) -> int:
        """Delete completed and failed entries last touched before the cutoff."""
        cutoff = self._clock() - older_than_ms
        result = await db.execute(
            delete(QueueEntry).where(
                QueueEntry.status.in_([QueueStatus.COMPLETED, QueueStatus.FAILED]),
                QueueEntry.updated_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount or 0


# Singleton instance
dispatch_queue = DispatchQueue()
