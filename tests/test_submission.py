"""Tests for submission: validation, reservation, dispatch classification."""

from __future__ import annotations

import asyncio
import socket

import httpx
import pytest
from celery.exceptions import NotRegistered
from sqlalchemy import func, select

from photogen.credits.ledger import CREDIT, CreditLedger
from photogen.db import models
from photogen.errors import (
    DispatchFatalError,
    DispatchTransientError,
    InsufficientCreditsError,
    ValidationError,
)
from photogen.services.dispatch import classify_dispatch_error
from photogen.services.stages import GenerationMode, TaskStatus
from photogen.services.submission import GenerationRequest, SubmissionOrchestrator


def _http_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://worker.test/run")
    return httpx.HTTPStatusError("error", request=request, response=httpx.Response(code, request=request))


def _orchestrator(session_factory, dispatcher, **kwargs) -> SubmissionOrchestrator:
    kwargs.setdefault("dispatch_grace", 0.2)
    return SubmissionOrchestrator(session_factory, dispatcher, **kwargs)


async def _snapshot(session_factory, task_id: str):
    async with session_factory() as session:
        task = await session.get(models.Task, task_id)
        work = (await session.execute(select(models.Work).where(models.Work.task_id == task_id))).scalar_one()
        user = await session.get(models.User, "user-1")
        ledger = await CreditLedger().entries_for_task(session, task_id)
    return task, work, user, ledger


@pytest.mark.parametrize(
    "exc",
    [
        asyncio.TimeoutError(),
        TimeoutError("dispatch"),
        socket.timeout("timed out"),
        httpx.ReadTimeout("read timeout"),
        _http_error(504),
        _http_error(408),
        RuntimeError("ESOCKETTIMEDOUT while invoking worker"),
        RuntimeError("deadline exceeded"),
        DispatchTransientError("worker busy"),
    ],
)
def test_timeouts_are_transient(exc: BaseException) -> None:
    assert classify_dispatch_error(exc) is DispatchTransientError


@pytest.mark.parametrize(
    "exc",
    [
        _http_error(401),
        _http_error(403),
        _http_error(404),
        _http_error(429),
        _http_error(500),
        httpx.ConnectError("connection refused"),
        NotRegistered("photogen.generate"),
        PermissionError("quota exceeded"),
        RuntimeError("function not found"),
    ],
)
def test_rejections_are_fatal(exc: BaseException) -> None:
    assert classify_dispatch_error(exc) is DispatchFatalError


@pytest.mark.asyncio
async def test_submit_reserves_credits_before_dispatch(
    session_factory, add_user, dispatcher_cls, garment_ref
) -> None:
    await add_user(session_factory, credits=10)
    observed: list[tuple[str, int]] = []

    class _Inspecting(dispatcher_cls):
        async def dispatch(self, task_id: str) -> None:
            async with session_factory() as session:
                task = await session.get(models.Task, task_id)
                user = await session.get(models.User, "user-1")
            observed.append((task.status, user.credits))

    orchestrator = _orchestrator(session_factory, _Inspecting())
    receipt = await orchestrator.submit("user-1", GenerationRequest(images=[garment_ref], count=2))

    task, work, user, ledger = await _snapshot(session_factory, receipt.task_id)
    assert observed == [(TaskStatus.PENDING.value, 8)]
    assert receipt.task_id.startswith("photography_")
    assert task.status == work.status == TaskStatus.PENDING.value
    assert task.credits_cost == 2
    assert task.params["images"] == [garment_ref]
    assert work.id == receipt.work_id
    assert work.original_images == [garment_ref]
    assert user.credits == 8
    assert [entry.direction for entry in ledger] == ["debit"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"images": [], "count": 1},
        {"images": ["uploads/a.png"], "count": 0},
        {"images": ["uploads/a.png"], "count": 4},
        {"images": ["uploads/a.png"], "size": "poster"},
        {"images": [""], "count": 1},
        {"images": ["uploads/a.png"], "type": "video"},
        {"mode": GenerationMode.POSE_VARIATION, "pose_description": "sitting"},
        {"mode": GenerationMode.POSE_VARIATION, "reference_work_id": "work-1"},
    ],
)
async def test_invalid_requests_have_no_side_effects(
    session_factory, add_user, dispatcher_cls, request_kwargs
) -> None:
    await add_user(session_factory, credits=10)
    dispatcher = dispatcher_cls()

    with pytest.raises(ValidationError):
        await _orchestrator(session_factory, dispatcher).submit("user-1", GenerationRequest(**request_kwargs))

    async with session_factory() as session:
        tasks = await session.scalar(select(func.count()).select_from(models.Task))
        entries = await session.scalar(select(func.count()).select_from(models.CreditLedgerEntry))
        user = await session.get(models.User, "user-1")
    assert (tasks, entries, user.credits) == (0, 0, 10)
    assert dispatcher.dispatched == []


@pytest.mark.asyncio
async def test_insufficient_credits_creates_nothing(
    session_factory, add_user, dispatcher_cls, garment_ref
) -> None:
    await add_user(session_factory, credits=1)
    dispatcher = dispatcher_cls()

    with pytest.raises(InsufficientCreditsError):
        await _orchestrator(session_factory, dispatcher).submit(
            "user-1",
            GenerationRequest(images=[garment_ref], count=2),
        )

    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(models.Task)) == 0
    assert dispatcher.dispatched == []


@pytest.mark.asyncio
async def test_transient_dispatch_failure_leaves_task_pending(
    session_factory, add_user, dispatcher_cls, garment_ref
) -> None:
    await add_user(session_factory, credits=10)
    orchestrator = _orchestrator(session_factory, dispatcher_cls(error=httpx.ReadTimeout("timed out")))

    receipt = await orchestrator.submit("user-1", GenerationRequest(images=[garment_ref], count=2))
    await orchestrator.drain()

    task, work, user, ledger = await _snapshot(session_factory, receipt.task_id)
    assert task.status == work.status == TaskStatus.PENDING.value
    assert user.credits == 8
    assert all(entry.direction != CREDIT for entry in ledger)


@pytest.mark.asyncio
async def test_fatal_dispatch_failure_fails_and_refunds_once(
    session_factory, add_user, dispatcher_cls, garment_ref
) -> None:
    await add_user(session_factory, credits=10)
    orchestrator = _orchestrator(session_factory, dispatcher_cls(error=_http_error(403)))

    receipt = await orchestrator.submit("user-1", GenerationRequest(images=[garment_ref], count=2))

    task, work, user, ledger = await _snapshot(session_factory, receipt.task_id)
    assert task.status == work.status == TaskStatus.FAILED.value
    assert task.error.startswith("dispatch failed")
    assert user.credits == 10
    assert [entry.direction for entry in ledger].count(CREDIT) == 1


@pytest.mark.asyncio
async def test_late_fatal_dispatch_is_handled_in_background(
    session_factory, add_user, dispatcher_cls, garment_ref
) -> None:
    await add_user(session_factory, credits=10)
    dispatcher = dispatcher_cls(error=NotRegistered("photogen.generate"), delay=0.2)
    orchestrator = _orchestrator(session_factory, dispatcher, dispatch_grace=0.01)

    receipt = await orchestrator.submit("user-1", GenerationRequest(images=[garment_ref]))
    task, _, _, _ = await _snapshot(session_factory, receipt.task_id)
    assert task.status == TaskStatus.PENDING.value

    await orchestrator.drain()

    task, _, user, _ = await _snapshot(session_factory, receipt.task_id)
    assert task.status == TaskStatus.FAILED.value
    assert user.credits == 10


@pytest.mark.asyncio
async def test_scene_is_resolved_from_catalog(session_factory, add_user, dispatcher_cls, garment_ref) -> None:
    await add_user(session_factory, credits=10)
    async with session_factory() as session:
        session.add(models.Scene(id="rooftop", name="Rooftop", prompt_hint="city skyline"))
        await session.commit()

    receipt = await _orchestrator(session_factory, dispatcher_cls()).submit(
        "user-1",
        GenerationRequest(images=[garment_ref], scene_id="rooftop"),
    )

    task, work, _, _ = await _snapshot(session_factory, receipt.task_id)
    assert task.params["scene_info"]["name"] == "Rooftop"
    assert work.scene_id == "rooftop"


@pytest.mark.asyncio
async def test_pose_variation_inherits_reference_work(session_factory, add_user, dispatcher_cls) -> None:
    await add_user(session_factory, credits=10)
    async with session_factory() as session:
        session.add(
            models.Task(id="photography_0_ref", user_id="user-1", status="completed", credits_cost=1),
        )
        session.add(
            models.Work(
                id="work-ref",
                task_id="photography_0_ref",
                user_id="user-1",
                status="completed",
                images=[{"url": "cloud://bucket/photography/t/result_1.png"}],
                original_images=["uploads/dress.png", "cloud://bucket/fitting/t/old.png"],
                parameters={"gender": "female"},
                scene_id="beach",
                scene_info={"name": "Beach"},
            ),
        )
        await session.commit()

    receipt = await _orchestrator(session_factory, dispatcher_cls()).submit(
        "user-1",
        GenerationRequest(
            mode=GenerationMode.POSE_VARIATION,
            reference_work_id="work-ref",
            pose_description="walking towards the camera",
        ),
    )

    task, work, user, _ = await _snapshot(session_factory, receipt.task_id)
    assert task.mode == "pose_variation"
    assert task.params["images"] == ["cloud://bucket/photography/t/result_1.png", "uploads/dress.png"]
    assert task.params["parameters"] == {"gender": "female"}
    assert work.scene_info == {"name": "Beach"}
    assert work.reference_work_id == "work-ref"
    assert user.credits == 9


@pytest.mark.asyncio
async def test_pose_variation_requires_completed_reference(session_factory, add_user, dispatcher_cls) -> None:
    await add_user(session_factory, credits=10)

    with pytest.raises(ValidationError, match="Reference work not found"):
        await _orchestrator(session_factory, dispatcher_cls()).submit(
            "user-1",
            GenerationRequest(
                mode=GenerationMode.POSE_VARIATION,
                reference_work_id="missing",
                pose_description="sitting",
            ),
        )
