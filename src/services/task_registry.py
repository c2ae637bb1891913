"""Generation task registry.

Maps provider task ids to the pending outputs they will fill, and moves
those outputs to their terminal states exactly once. Every status
transition is a conditional update on ``status == 'pending'``, so replayed
or concurrent callbacks for the same task cannot apply twice.

Methods here flush but do not commit; the caller owns the transaction.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.db.models import (
    GenerationKind,
    GenerationOutput,
    GenerationTask,
    OutputStatus,
    ProviderType,
    QueueEntry,
    QueueStatus,
    Subject,
)
from src.schemas.callbacks import ProviderResult
from src.services.clock import Clock, now_ms
from src.services.errors import ValidationError

logger = logging.getLogger(__name__)

MISSING_RESULT_ERROR = "Provider returned no result for this output"
UNUSABLE_RESULT_ERROR = "Provider result has no media reference"

PRIMARY_FIELD_BY_KIND = {
    GenerationKind.MUSIC: "primary_audio_output_id",
    GenerationKind.VIDEO: "primary_video_output_id",
}

PROVIDER_BY_KIND = {
    GenerationKind.MUSIC: ProviderType.MUSIC,
    GenerationKind.VIDEO: ProviderType.VIDEO,
}


@dataclass
class CompletionResult:
    found: bool
    ready: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    ignored_results: int = 0
    promoted: Optional[str] = None


@dataclass
class FailTaskResult:
    found: bool
    transitioned: int = 0
    already_failed: bool = False
    credit_cost: int = 0
    owner_id: Optional[str] = None


class TaskRegistry:
    """Pending-output bookkeeping for provider tasks."""

    def __init__(self, clock: Clock = now_ms):
        self._clock = clock

    async def get_task(
        self,
        db: AsyncSession,
        task_id: str,
        owner_id: Optional[str] = None,
    ) -> Optional[GenerationTask]:
        """Get a task with its outputs, optionally restricted to an owner."""
        query = (
            select(GenerationTask)
            .where(GenerationTask.task_id == task_id)
            .options(selectinload(GenerationTask.outputs))
            .execution_options(populate_existing=True)
        )
        if owner_id:
            query = query.where(GenerationTask.owner_id == owner_id)

        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_output(self, db: AsyncSession, output_id: str) -> Optional[GenerationOutput]:
        result = await db.execute(
            select(GenerationOutput)
            .where(GenerationOutput.id == output_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_pending_outputs(
        self,
        db: AsyncSession,
        task_id: str,
        owner_id: str,
        subject_id: str,
        output_count: int,
        kind: GenerationKind,
        credit_cost: int = 1,
    ) -> list[GenerationOutput]:
        """
        Register ``output_count`` pending outputs under a provider task id.

        Calling again with a task id that already exists returns the stored
        outputs unchanged.

        Raises:
            ValidationError: if output_count is not positive.
        """
        if output_count <= 0:
            raise ValidationError("output_count must be positive")

        existing = await self.get_task(db, task_id)
        if existing is not None:
            if existing.output_count != output_count or existing.subject_id != subject_id:
                logger.warning(
                    f"Task {task_id} already registered with different parameters, "
                    f"keeping the original"
                )
            return list(existing.outputs)

        now = self._clock()
        task = GenerationTask(
            task_id=task_id,
            owner_id=owner_id,
            subject_id=subject_id,
            kind=kind,
            output_count=output_count,
            credit_cost=credit_cost,
            created_at=now,
        )
        db.add(task)

        outputs = []
        for index in range(output_count):
            output = GenerationOutput(
                task_id=task_id,
                subject_id=subject_id,
                kind=kind,
                output_index=index,
                status=OutputStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            outputs.append(output)
            db.add(output)

        await db.flush()
        logger.info(f"Registered task {task_id} with {output_count} pending output(s)")
        return outputs

    async def _transition(self, db: AsyncSession, output_id: str, **values) -> bool:
        """Move a pending output to a terminal state; False if it was not pending."""
        result = await db.execute(
            update(GenerationOutput)
            .where(
                GenerationOutput.id == output_id,
                GenerationOutput.status == OutputStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def complete_task(
        self,
        db: AsyncSession,
        task_id: str,
        results: list[ProviderResult],
    ) -> CompletionResult:
        """
        Pair a task's outputs with provider results by position.

        Output ``i`` takes result ``i``. A paired result without a media
        reference, or a missing result, fails the output; surplus results
        are ignored. Outputs that are no longer pending are left alone.
        When output 0 becomes ready in this call it is promoted to the
        subject's primary result for the task's kind.
        """
        task = await self.get_task(db, task_id)
        if task is None or not task.outputs:
            logger.warning(f"Completion for unknown task {task_id}, nothing to update")
            return CompletionResult(found=False)

        now = self._clock()
        outputs = sorted(task.outputs, key=lambda o: o.output_index)
        outcome = CompletionResult(found=True)

        for index, output in enumerate(outputs):
            result = results[index] if index < len(results) else None

            if result is not None and result.is_usable:
                transitioned = await self._transition(
                    db,
                    output.id,
                    status=OutputStatus.READY,
                    result_ref=result.result_ref,
                    title=result.title,
                    duration=result.duration,
                    result_metadata=result.metadata or None,
                    updated_at=now,
                )
                if transitioned:
                    outcome.ready.append(output.id)
                    if index == 0:
                        outcome.promoted = output.id
                continue

            error = UNUSABLE_RESULT_ERROR if result is not None else MISSING_RESULT_ERROR
            transitioned = await self._transition(
                db,
                output.id,
                status=OutputStatus.FAILED,
                error_message=error,
                updated_at=now,
            )
            if transitioned:
                outcome.failed.append(output.id)

        if len(results) > len(outputs):
            outcome.ignored_results = len(results) - len(outputs)
            logger.info(
                f"Task {task_id}: ignored {outcome.ignored_results} surplus result(s)"
            )

        if outcome.promoted:
            await db.execute(
                update(Subject)
                .where(Subject.id == task.subject_id)
                .values(**{PRIMARY_FIELD_BY_KIND[task.kind]: outcome.promoted, "updated_at": now})
                .execution_options(synchronize_session=False)
            )

        if not outcome.ready and not outcome.failed:
            logger.warning(f"Task {task_id} already reconciled, replay ignored")

        await db.flush()
        return outcome

    async def fail_task(
        self,
        db: AsyncSession,
        task_id: str,
        error_message: str,
    ) -> FailTaskResult:
        """
        Fail every still-pending output of a task in one conditional update.

        ``already_failed`` is set when nothing was pending and at least one
        output had already failed.
        """
        task = await self.get_task(db, task_id)
        if task is None:
            logger.warning(f"Failure for unknown task {task_id}, nothing to update")
            return FailTaskResult(found=False)

        result = await db.execute(
            update(GenerationOutput)
            .where(
                GenerationOutput.task_id == task_id,
                GenerationOutput.status == OutputStatus.PENDING,
            )
            .values(
                status=OutputStatus.FAILED,
                error_message=error_message,
                updated_at=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        transitioned = result.rowcount or 0

        already_failed = transitioned == 0 and any(
            o.status == OutputStatus.FAILED for o in task.outputs
        )
        await db.flush()

        return FailTaskResult(
            found=True,
            transitioned=transitioned,
            already_failed=already_failed,
            credit_cost=task.credit_cost,
            owner_id=task.owner_id,
        )

    async def has_pending_generation(
        self,
        db: AsyncSession,
        subject_id: str,
        kind: GenerationKind,
        window_ms: int,
    ) -> bool:
        """
        Whether the subject has a recent generation of ``kind`` still running.

        Looks at pending outputs and queued or in-flight entries created
        within the window. Best effort only: two simultaneous requests can
        both pass before either is recorded.
        """
        since = self._clock() - window_ms

        pending_output = exists().where(
            GenerationOutput.subject_id == subject_id,
            GenerationOutput.kind == kind,
            GenerationOutput.status == OutputStatus.PENDING,
            GenerationOutput.created_at >= since,
        )
        queued_entry = exists().where(
            and_(
                QueueEntry.subject_id == subject_id,
                QueueEntry.provider_type == PROVIDER_BY_KIND[kind],
                QueueEntry.status.in_([QueueStatus.PENDING, QueueStatus.IN_FLIGHT]),
                QueueEntry.created_at >= since,
            )
        )

        result = await db.execute(select(or_(pending_output, queued_entry)))
        return bool(result.scalar())


# Singleton instance
task_registry = TaskRegistry()
