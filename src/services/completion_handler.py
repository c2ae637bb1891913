"""Reconcile provider callbacks with pending generation tasks."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import GenerationKind
from src.schemas.callbacks import COMPLETE, FAILED, GenerationCallback
from src.services.dispatch_queue import DispatchQueue, dispatch_queue
from src.services.refunds import RefundCoordinator, refund_coordinator
from src.services.task_registry import CompletionResult, TaskRegistry, task_registry

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_IGNORED = "ignored"
STATUS_FAILURE_HANDLED = "failure_handled"

DEFAULT_FAILURE_MESSAGE = {
    GenerationKind.MUSIC: "Music generation failed at the provider",
    GenerationKind.VIDEO: "Video generation failed at the provider",
}


@dataclass
class CallbackOutcome:
    status: str
    task_id: str
    completion: Optional[CompletionResult] = None
    refunded: bool = False


class CompletionHandler:
    def __init__(
        self,
        registry: TaskRegistry = task_registry,
        queue: DispatchQueue = dispatch_queue,
        refunds: RefundCoordinator = refund_coordinator,
    ):
        self._registry = registry
        self._queue = queue
        self._refunds = refunds

    async def handle_callback(
        self,
        db: AsyncSession,
        kind: GenerationKind,
        callback: GenerationCallback,
    ) -> CallbackOutcome:
        """
        Apply one provider callback.

        Intermediate callbacks are ignored. A completion carrying at least
        one usable result fills the task's outputs; a completion with none,
        or an explicit failure, fails the task and refunds it once.
        """
        task_id = callback.task_id

        if callback.subtype not in (COMPLETE, FAILED):
            logger.info(f"Ignoring {callback.subtype} callback for task {task_id}")
            return CallbackOutcome(status=STATUS_IGNORED, task_id=task_id)

        if callback.subtype == COMPLETE and callback.usable_results:
            completion = await self._registry.complete_task(db, task_id, callback.results)
            if completion.found:
                await self._queue.mark_completed(db, task_id)
            await db.commit()

            logger.info(
                f"Task {task_id} reconciled: {len(completion.ready)} ready, "
                f"{len(completion.failed)} failed"
            )
            return CallbackOutcome(status=STATUS_OK, task_id=task_id, completion=completion)

        error = callback.message or DEFAULT_FAILURE_MESSAGE[kind]
        if callback.subtype == COMPLETE:
            error = "Provider reported completion without any usable result"
        logger.warning(f"Task {task_id} failed at provider: {error}")

        refund = await self._refunds.refund_task_failure(db, task_id, error)
        await self._queue.mark_failed_by_task(db, task_id, error)
        await db.commit()

        return CallbackOutcome(
            status=STATUS_FAILURE_HANDLED,
            task_id=task_id,
            refunded=refund.refunded,
        )


# Singleton instance
completion_handler = CompletionHandler()
