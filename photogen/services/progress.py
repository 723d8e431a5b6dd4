"""Read-side progress queries and best-effort cancellation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photogen.errors import TaskNotFoundError
from photogen.services.stages import MESSAGE_BY_STATUS, PROGRESS_BY_STATUS, TaskStatus
from photogen.services.task_store import TaskStore
from photogen.services.terminal import TerminalWriter

logger = logging.getLogger(__name__)

CANCEL_REASON = "cancelled by user"


@dataclass(slots=True)
class TaskProgress:
    task_id: str
    status: TaskStatus
    progress_percent: int
    stage: str | None
    message: str
    work_id: str | None = None
    images: list[dict[str, Any]] = field(default_factory=list)
    error_message: str | None = None


class TaskQueryService:
    """Answers progress polls from the store; the percentage depends only on status."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        store: TaskStore | None = None,
        terminal: TerminalWriter | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store or TaskStore()
        self._terminal = terminal or TerminalWriter(session_factory, store=self._store)

    async def get_progress(self, task_id: str, user_id: str) -> TaskProgress:
        async with self._session_factory() as session:
            task = await self._store.get_task(session, task_id, user_id=user_id)
            if task is None:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            work = await self._store.get_work_for_task(session, task_id)

        status = TaskStatus(task.status)
        images = list(work.images or []) if work is not None and status is TaskStatus.COMPLETED else []
        return TaskProgress(
            task_id=task.id,
            status=status,
            progress_percent=PROGRESS_BY_STATUS[status],
            stage=task.stage,
            message=MESSAGE_BY_STATUS[status],
            work_id=work.id if work is not None else None,
            images=images,
            error_message=task.error,
        )

    async def cancel(self, task_id: str, user_id: str) -> bool:
        """Mark an active task ``cancelled`` and refund it.

        A running worker is not interrupted; its own terminal write later
        loses the conditional update. Returns ``False`` when the task had
        already reached a terminal status.
        """

        async with self._session_factory() as session:
            task = await self._store.get_task(session, task_id, user_id=user_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")

        cancelled = await self._terminal.fail(task_id, CANCEL_REASON, status=TaskStatus.CANCELLED)
        if cancelled:
            logger.info("Task %s cancelled by user %s.", task_id, user_id)
        else:
            logger.info("Task %s is already %s; cancel ignored.", task_id, task.status)
        return cancelled
