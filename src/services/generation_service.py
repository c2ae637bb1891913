"""Generation orchestration: reserve, queue, submit."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.db.models import GenerationKind, ProviderType, QueueEntry, Subject
from src.db.session import async_session_maker
from src.services.dispatch_queue import DispatchQueue, PumpResult, dispatch_queue
from src.services.errors import NotFoundError, StaleEntryError, ValidationError
from src.services.ledger import USAGE_LIMIT_REACHED, UsageLedger, usage_ledger
from src.services.providers import ProviderRegistry
from src.services.refunds import RefundCoordinator, refund_coordinator
from src.services.task_registry import PROVIDER_BY_KIND, TaskRegistry, task_registry

logger = logging.getLogger(__name__)

settings = get_settings()

ALREADY_IN_PROGRESS = "ALREADY_IN_PROGRESS"

_pump_locks: dict[ProviderType, asyncio.Lock] = {}


def credit_cost(kind: GenerationKind) -> int:
    if kind == GenerationKind.VIDEO:
        return settings.video_credit_cost
    return settings.music_credit_cost


def outputs_per_request(kind: GenerationKind) -> int:
    if kind == GenerationKind.MUSIC:
        return settings.music_outputs_per_request
    return 1


@dataclass
class StartResult:
    success: bool
    subject_id: str
    kind: str
    code: Optional[str] = None
    reason: Optional[str] = None
    queue_id: Optional[int] = None
    remaining: Optional[int] = None


async def get_content_for_generation(
    db: AsyncSession, subject_id: str, owner_id: str
) -> Subject:
    """
    Load a subject the caller owns and that has content to generate from.

    Raises:
        NotFoundError: if the subject does not exist or belongs to someone else.
        ValidationError: if the subject has no content.
    """
    subject = await db.get(Subject, subject_id)
    if subject is None or subject.owner_id != owner_id:
        raise NotFoundError(f"Subject {subject_id} not found")
    if not subject.content or not subject.content.strip():
        raise ValidationError(f"Subject {subject_id} has no content")
    return subject


class GenerationService:
    def __init__(
        self,
        ledger: UsageLedger = usage_ledger,
        registry: TaskRegistry = task_registry,
        queue: DispatchQueue = dispatch_queue,
        refunds: RefundCoordinator = refund_coordinator,
    ):
        self._ledger = ledger
        self._registry = registry
        self._queue = queue
        self._refunds = refunds

    async def start_generation(
        self,
        db: AsyncSession,
        owner_id: str,
        subject_id: str,
        kind: GenerationKind,
    ) -> StartResult:
        """
        Reserve credits for a generation and queue it for its provider.

        Refusals (duplicate in progress, usage limit) are returned as
        unsuccessful results rather than raised.
        """
        subject = await get_content_for_generation(db, subject_id, owner_id)

        if await self._registry.has_pending_generation(
            db, subject.id, kind, settings.pending_generation_window_ms
        ):
            logger.info(f"{kind.value} generation already in progress for subject {subject.id}")
            return StartResult(
                success=False,
                subject_id=subject.id,
                kind=kind.value,
                code=ALREADY_IN_PROGRESS,
                reason="A generation is already in progress for this subject",
            )

        payload = {
            "kind": kind.value,
            "subject_id": subject.id,
            "prompt": subject.content,
            "title": subject.title or "",
            "credit_cost": credit_cost(kind),
            "output_count": outputs_per_request(kind),
        }

        reservation = await self._ledger.reserve_credit_for_user(db, owner_id, credit_cost(kind))
        if not reservation.allowed:
            return StartResult(
                success=False,
                subject_id=subject_id,
                kind=kind.value,
                code=reservation.code or USAGE_LIMIT_REACHED,
                reason=reservation.reason,
                remaining=0,
            )

        try:
            entry = await self._queue.enqueue(
                db,
                PROVIDER_BY_KIND[kind],
                owner_id,
                payload,
                subject_id=subject_id,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            await self._refunds.refund_submission_failure(
                db, owner_id, credit_cost(kind), "Could not queue generation"
            )
            raise

        return StartResult(
            success=True,
            subject_id=subject_id,
            kind=kind.value,
            queue_id=entry.id,
            remaining=reservation.remaining,
        )

    async def submit_entry(
        self,
        db: AsyncSession,
        entry: QueueEntry,
        providers: ProviderRegistry,
    ) -> str:
        """
        Send a claimed queue entry to its provider.

        On acceptance the pending outputs and the entry's correlation to the
        provider task id are committed together. If anything up to that
        commit fails, the reserved credits are refunded before the error
        propagates. A provider task accepted but never registered has no
        outputs, so a later callback for it is ignored and cannot refund
        a second time.
        """
        entry_id = entry.id
        owner_id = entry.owner_id
        provider_type = entry.provider_type
        subject_id = entry.subject_id
        payload = dict(entry.payload or {})
        cost = int(payload.get("credit_cost", 1))
        provider = providers[provider_type]

        try:
            task_id = await provider.submit(payload, provider.callback_url())
            if not await self._queue.record_correlation(db, entry_id, task_id):
                # The stalled-entry sweep already failed and refunded it
                await db.rollback()
                raise StaleEntryError(
                    f"Queue entry {entry_id} was failed before task {task_id} was recorded"
                )
            await self._registry.create_pending_outputs(
                db,
                task_id=task_id,
                owner_id=owner_id,
                subject_id=subject_id or payload.get("subject_id", ""),
                output_count=int(payload.get("output_count", 1)),
                kind=GenerationKind(payload.get("kind", provider_type.value)),
                credit_cost=cost,
            )
            await db.commit()
        except StaleEntryError:
            raise
        except Exception as e:
            await db.rollback()
            await self._refunds.refund_submission_failure(db, owner_id, cost, str(e))
            raise

        return task_id

    async def pump(
        self,
        db: AsyncSession,
        provider_type: ProviderType,
        providers: ProviderRegistry,
    ) -> PumpResult:
        async def submit(entry: QueueEntry) -> str:
            return await self.submit_entry(db, entry, providers)

        result = await self._queue.pump(db, provider_type, submit)
        if result.processed or result.failed or result.skipped:
            logger.info(
                f"Pumped {provider_type.value} queue: processed={result.processed} "
                f"failed={result.failed} skipped={result.reason if result.skipped else None}"
            )
        return result

    async def recover_stalled(self, db: AsyncSession, older_than_ms: int) -> int:
        """Fail entries stuck in flight without a provider task and refund them."""
        stalled = [
            (entry.owner_id, int((entry.payload or {}).get("credit_cost", 1)), entry.error_message)
            for entry in await self._queue.fail_stalled(db, older_than_ms)
        ]
        for owner_id, cost, error in stalled:
            await self._refunds.refund_submission_failure(db, owner_id, cost, error or "stalled")
        return len(stalled)

    async def pump_in_background(
        self, provider_type: ProviderType, providers: ProviderRegistry
    ) -> PumpResult:
        """Pump with a fresh session; pumps of one provider type in this process run one at a time."""
        lock = _pump_locks.setdefault(provider_type, asyncio.Lock())
        async with lock:
            async with async_session_maker() as db:
                return await self.pump(db, provider_type, providers)


# Singleton instance
generation_service = GenerationService()
