"""Tests for progress queries and cancellation."""

from __future__ import annotations

import pytest
from sqlalchemy import update

from photogen.credits.ledger import CreditLedger
from photogen.db import models
from photogen.errors import TaskNotFoundError
from photogen.services.progress import TaskQueryService
from photogen.services.stages import TaskStatus
from photogen.services.submission import GenerationRequest, SubmissionOrchestrator
from photogen.services.task_store import TaskStore
from photogen.services.terminal import TerminalWriter


async def _submit(session_factory, dispatcher_cls, garment_ref) -> str:
    receipt = await SubmissionOrchestrator(session_factory, dispatcher_cls()).submit(
        "user-1",
        GenerationRequest(images=[garment_ref], count=2),
    )
    return receipt.task_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "percent"),
    [("pending", 10), ("processing", 60), ("failed", 0), ("cancelled", 0), ("expired", 0)],
)
async def test_progress_is_derived_from_status(
    session_factory, add_user, dispatcher_cls, garment_ref, status, percent
) -> None:
    await add_user(session_factory)
    task_id = await _submit(session_factory, dispatcher_cls, garment_ref)
    async with session_factory() as session:
        await session.execute(
            update(models.Task).where(models.Task.id == task_id).values(status=status, error="boom"),
        )
        await session.commit()

    progress = await TaskQueryService(session_factory).get_progress(task_id, "user-1")

    assert progress.status is TaskStatus(status)
    assert progress.progress_percent == percent
    assert progress.images == []
    assert progress.message


@pytest.mark.asyncio
async def test_completed_progress_exposes_images(session_factory, add_user, dispatcher_cls, garment_ref) -> None:
    await add_user(session_factory)
    task_id = await _submit(session_factory, dispatcher_cls, garment_ref)
    images = [{"url": "cloud://a.png", "width": 1024, "height": 1024}]
    await TerminalWriter(session_factory).complete(task_id, work_values={"images": images})

    progress = await TaskQueryService(session_factory).get_progress(task_id, "user-1")

    assert progress.progress_percent == 100
    assert progress.images == images
    assert progress.stage == "finished"
    assert progress.error_message is None


@pytest.mark.asyncio
async def test_progress_of_foreign_task_is_not_found(
    session_factory, add_user, dispatcher_cls, garment_ref
) -> None:
    await add_user(session_factory)
    await add_user(session_factory, user_id="user-2")
    task_id = await _submit(session_factory, dispatcher_cls, garment_ref)

    with pytest.raises(TaskNotFoundError):
        await TaskQueryService(session_factory).get_progress(task_id, "user-2")


@pytest.mark.asyncio
async def test_cancel_pending_task_refunds(session_factory, add_user, dispatcher_cls, garment_ref) -> None:
    await add_user(session_factory, credits=10)
    task_id = await _submit(session_factory, dispatcher_cls, garment_ref)
    queries = TaskQueryService(session_factory)

    assert await queries.cancel(task_id, "user-1") is True
    assert await queries.cancel(task_id, "user-1") is False

    progress = await queries.get_progress(task_id, "user-1")
    async with session_factory() as session:
        user = await session.get(models.User, "user-1")
        entries = await CreditLedger().entries_for_task(session, task_id)
    assert progress.status is TaskStatus.CANCELLED
    assert progress.error_message == "cancelled by user"
    assert user.credits == 10
    assert [entry.direction for entry in entries] == ["debit", "credit"]


@pytest.mark.asyncio
async def test_worker_completion_after_cancel_is_ignored(
    session_factory, add_user, dispatcher_cls, garment_ref
) -> None:
    await add_user(session_factory, credits=10)
    task_id = await _submit(session_factory, dispatcher_cls, garment_ref)
    await TaskQueryService(session_factory).cancel(task_id, "user-1")

    won = await TerminalWriter(session_factory).complete(task_id, work_values={"images": [{"url": "x"}]})

    async with session_factory() as session:
        work = await TaskStore().get_work_for_task(session, task_id)
    assert won is False
    assert work.status == TaskStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_cancel_completed_task_is_rejected(session_factory, add_user, dispatcher_cls, garment_ref) -> None:
    await add_user(session_factory, credits=10)
    task_id = await _submit(session_factory, dispatcher_cls, garment_ref)
    await TerminalWriter(session_factory).complete(task_id, work_values={"images": [{"url": "x"}]})

    assert await TaskQueryService(session_factory).cancel(task_id, "user-1") is False

    async with session_factory() as session:
        user = await session.get(models.User, "user-1")
    assert user.credits == 8


@pytest.mark.asyncio
async def test_cancel_unknown_task(session_factory) -> None:
    with pytest.raises(TaskNotFoundError):
        await TaskQueryService(session_factory).cancel("photography_0_none", "user-1")
