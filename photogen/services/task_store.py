"""Persistence of Task/Work pairs with conditional state transitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from photogen.db import models
from photogen.services.stages import (
    ACTIVE_STATUSES,
    REFUNDABLE_STATUSES,
    PipelineStage,
    TaskStatus,
)

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_STATUSES]


class TaskStore:
    """Facade over the tasks and works tables.

    The store is the only coordination channel between the submitter and the
    worker. Every transition is a conditional UPDATE keyed on the current
    status, so concurrent writers never produce two terminal states.
    """

    async def create(
        self,
        session: AsyncSession,
        *,
        task_id: str,
        work_id: str,
        user_id: str,
        task_type: str,
        mode: str,
        params: dict[str, Any],
        credits_cost: int,
        work_fields: dict[str, Any] | None = None,
    ) -> tuple[models.Task, models.Work]:
        """Insert the pending Task and its pending Work in one transaction."""

        task = models.Task(
            id=task_id,
            user_id=user_id,
            type=task_type,
            mode=mode,
            status=TaskStatus.PENDING.value,
            stage=PipelineStage.QUEUED.value,
            params=params,
            credits_cost=credits_cost,
        )
        work = models.Work(
            id=work_id,
            task_id=task_id,
            user_id=user_id,
            type=task_type,
            status=TaskStatus.PENDING.value,
            images=[],
            **(work_fields or {}),
        )
        session.add_all([task, work])
        await session.commit()
        return task, work

    async def get_task(
        self,
        session: AsyncSession,
        task_id: str,
        *,
        user_id: str | None = None,
    ) -> models.Task | None:
        stmt = select(models.Task).where(models.Task.id == task_id)
        if user_id is not None:
            stmt = stmt.where(models.Task.user_id == user_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_work_for_task(self, session: AsyncSession, task_id: str) -> models.Work | None:
        result = await session.execute(select(models.Work).where(models.Work.task_id == task_id))
        return result.scalar_one_or_none()

    async def get_work(
        self,
        session: AsyncSession,
        work_id: str,
        *,
        user_id: str,
    ) -> models.Work | None:
        stmt = select(models.Work).where(models.Work.id == work_id, models.Work.user_id == user_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_processing(self, session: AsyncSession, task_id: str) -> bool:
        """Move ``pending`` to ``processing``. Returns ``False`` if the task moved on already."""

        now = models.utcnow()
        result = await session.execute(
            update(models.Task)
            .where(models.Task.id == task_id, models.Task.status == TaskStatus.PENDING.value)
            .values(status=TaskStatus.PROCESSING.value, updated_at=now)
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            await session.rollback()
            return False
        await session.execute(
            update(models.Work)
            .where(models.Work.task_id == task_id)
            .values(status=TaskStatus.PROCESSING.value, updated_at=now)
            .execution_options(synchronize_session=False),
        )
        await session.commit()
        return True

    async def checkpoint(self, session: AsyncSession, task_id: str, stage: PipelineStage) -> bool:
        """Record the stage a processing task has reached."""

        result = await session.execute(
            update(models.Task)
            .where(models.Task.id == task_id, models.Task.status == TaskStatus.PROCESSING.value)
            .values(stage=stage.value, updated_at=models.utcnow())
            .execution_options(synchronize_session=False),
        )
        await session.commit()
        return result.rowcount == 1

    async def write_terminal(
        self,
        session: AsyncSession,
        task_id: str,
        status: TaskStatus,
        *,
        error: str | None = None,
        task_result: dict[str, Any] | None = None,
        work_values: dict[str, Any] | None = None,
    ) -> bool:
        """Write ``status`` only if the task is still pending or processing.

        Returns ``True`` for the single writer whose update applied.
        """

        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")

        now = models.utcnow()
        task_values: dict[str, Any] = {"status": status.value, "error": error, "updated_at": now}
        if status is TaskStatus.COMPLETED:
            task_values.update(stage=PipelineStage.FINISHED.value, completed_at=now, result=task_result)

        result = await session.execute(
            update(models.Task)
            .where(models.Task.id == task_id, models.Task.status.in_(_ACTIVE_VALUES))
            .values(**task_values)
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            await session.rollback()
            logger.info("Terminal write %s for task %s lost the race.", status.value, task_id)
            return False

        mirrored: dict[str, Any] = {"status": status.value, "error": error, "updated_at": now}
        if status is TaskStatus.COMPLETED:
            mirrored["completed_at"] = now
        mirrored.update(work_values or {})
        await session.execute(
            update(models.Work)
            .where(models.Work.task_id == task_id)
            .values(**mirrored)
            .execution_options(synchronize_session=False),
        )
        await session.commit()
        logger.info("Task %s reached terminal status %s.", task_id, status.value)
        return True

    async def find_stale(self, session: AsyncSession, *, updated_before: datetime) -> list[models.Task]:
        """Return active tasks whose last update is older than ``updated_before``."""

        stmt = select(models.Task).where(
            models.Task.status.in_(_ACTIVE_VALUES),
            models.Task.updated_at < updated_before,
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def find_missing_refunds(self, session: AsyncSession) -> list[models.Task]:
        """Return refundable terminal tasks whose credits were never returned."""

        stmt = select(models.Task).where(
            models.Task.status.in_([status.value for status in REFUNDABLE_STATUSES]),
            models.Task.credits_refunded.is_(False),
            models.Task.credits_cost > 0,
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
