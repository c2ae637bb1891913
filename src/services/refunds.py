"""Refund coordinator.

Credits are reserved before a provider is called. They are given back in
two situations: the provider rejected the submission outright, or the
provider later reported the task as failed. The second path is keyed by
task id and refunds at most once, however many failure reports arrive.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.services.ledger import UsageLedger, usage_ledger
from src.services.task_registry import TaskRegistry, task_registry

logger = logging.getLogger(__name__)


@dataclass
class RefundOutcome:
    found: bool
    refunded: bool
    already_failed: bool = False
    consumed: Optional[int] = None


class RefundCoordinator:
    def __init__(
        self,
        ledger: UsageLedger = usage_ledger,
        registry: TaskRegistry = task_registry,
    ):
        self._ledger = ledger
        self._registry = registry

    async def refund_submission_failure(
        self,
        db: AsyncSession,
        owner_id: str,
        cost: int,
        reason: str,
    ) -> Optional[int]:
        """Give back the credits of a submission the provider never accepted."""
        logger.warning(f"Submission failed for user {owner_id}, refunding {cost}: {reason}")
        return await self._ledger.refund_credit_for_user(db, owner_id, cost)

    async def refund_task_failure(
        self,
        db: AsyncSession,
        task_id: str,
        error_message: str,
    ) -> RefundOutcome:
        """
        Fail a task's pending outputs and refund its cost once.

        The refund happens only if this call moved at least one output out
        of pending; a repeated or late failure report finds nothing pending
        and refunds nothing.
        """
        failed = await self._registry.fail_task(db, task_id, error_message)
        await db.commit()

        if not failed.found:
            return RefundOutcome(found=False, refunded=False)

        if failed.transitioned == 0:
            logger.info(f"Task {task_id} has no pending outputs, no refund")
            return RefundOutcome(
                found=True, refunded=False, already_failed=failed.already_failed
            )

        consumed = await self._ledger.refund_credit_for_user(
            db, failed.owner_id, failed.credit_cost
        )
        logger.info(f"Refunded task {task_id} ({failed.credit_cost} credit(s))")
        return RefundOutcome(found=True, refunded=True, consumed=consumed)


# Singleton instance
refund_coordinator = RefundCoordinator()
