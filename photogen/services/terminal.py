"""Single entry point for terminal writes and the refunds that follow them."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photogen.credits.ledger import CreditLedger
from photogen.metrics.prometheus_exporter import task_terminal_transitions_total
from photogen.services.stages import REFUNDABLE_STATUSES, TaskStatus
from photogen.services.task_store import TaskStore

logger = logging.getLogger(__name__)


class TerminalWriter:
    """Finishes tasks on behalf of the pipeline, the watchdog, the submitter and the reaper.

    Each call opens its own session so that racing writers run independent
    transactions and the conditional update decides the winner. Only the
    winner of a refundable terminal write triggers the refund, and the refund
    itself is idempotent per task.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        store: TaskStore | None = None,
        ledger: CreditLedger | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store or TaskStore()
        self._ledger = ledger or CreditLedger()

    async def complete(
        self,
        task_id: str,
        *,
        work_values: dict[str, Any],
        task_result: dict[str, Any] | None = None,
    ) -> bool:
        async with self._session_factory() as session:
            won = await self._store.write_terminal(
                session,
                task_id,
                TaskStatus.COMPLETED,
                task_result=task_result,
                work_values=work_values,
            )
        if won:
            task_terminal_transitions_total.labels(TaskStatus.COMPLETED.value).inc()
        return won

    async def fail(
        self,
        task_id: str,
        reason: str,
        *,
        status: TaskStatus = TaskStatus.FAILED,
    ) -> bool:
        """Write a refundable terminal status and refund the reservation if this call won."""

        if status not in REFUNDABLE_STATUSES:
            raise ValueError(f"{status.value} does not return credits")

        async with self._session_factory() as session:
            won = await self._store.write_terminal(session, task_id, status, error=reason)
        if not won:
            return False

        task_terminal_transitions_total.labels(status.value).inc()
        await self.refund(task_id, reason)
        return True

    async def refund(self, task_id: str, reason: str) -> bool:
        async with self._session_factory() as session:
            task = await self._store.get_task(session, task_id)
            if task is None:
                logger.warning("Cannot refund unknown task %s.", task_id)
                return False
            return await self._ledger.refund(
                session,
                task_id=task.id,
                user_id=task.user_id,
                amount=task.credits_cost,
                reason=reason,
            )
