"""Accepting generation requests: validation, reservation, persistence, dispatch."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photogen.credits.ledger import CreditLedger
from photogen.credits.pricing import QUALITY_MULTIPLIERS, SIZE_MULTIPLIERS, calculate_cost
from photogen.db import models
from photogen.errors import DispatchTransientError, ValidationError
from photogen.metrics.prometheus_exporter import dispatch_failures_total, generation_submissions_total
from photogen.services.dispatch import Dispatcher, classify_dispatch_error
from photogen.services.stages import GenerationMode, TaskStatus
from photogen.services.task_store import TaskStore
from photogen.services.terminal import TerminalWriter

logger = logging.getLogger(__name__)

TASK_TYPES = ("photography", "fitting")
# Result images live under these prefixes; they are not garment inputs.
GENERATED_PATH_MARKERS = ("/photography/", "/fitting/")


class GenerationRequest(BaseModel):
    """Client payload for a new generation."""

    type: str = "photography"
    mode: GenerationMode = GenerationMode.NORMAL
    images: list[str] = Field(default_factory=list)
    count: int = 1
    parameters: dict[str, Any] = Field(default_factory=dict)
    scene_id: str | None = None
    scene_info: dict[str, Any] | None = None
    size: str = "standard"
    quality: str = "standard"
    reference_work_id: str | None = None
    pose_description: str | None = None


@dataclass(slots=True, frozen=True)
class SubmissionReceipt:
    task_id: str
    work_id: str


@dataclass(slots=True)
class _Plan:
    images: list[str]
    parameters: dict[str, Any]
    scene_id: str | None
    scene_info: dict[str, Any]
    original_images: list[str] = field(default_factory=list)


def new_task_id(task_type: str) -> str:
    return f"{task_type}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class SubmissionOrchestrator:
    """Reserves credits, writes the pending Task/Work pair and starts the worker.

    The dispatch call is awaited only for ``dispatch_grace`` seconds. If it
    fails within that window the failure is classified immediately;
    otherwise its outcome is handled in the background once it settles.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: Dispatcher,
        *,
        store: TaskStore | None = None,
        ledger: CreditLedger | None = None,
        terminal: TerminalWriter | None = None,
        max_images_per_request: int = 3,
        credits_per_image: int = 1,
        dispatch_grace: float = 0.5,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._store = store or TaskStore()
        self._ledger = ledger or CreditLedger()
        self._terminal = terminal or TerminalWriter(
            session_factory,
            store=self._store,
            ledger=self._ledger,
        )
        self._max_images = max_images_per_request
        self._credits_per_image = credits_per_image
        self._dispatch_grace = dispatch_grace
        self._background: set[asyncio.Future[Any]] = set()

    async def submit(self, user_id: str, request: GenerationRequest) -> SubmissionReceipt:
        self.validate(request)
        async with self._session_factory() as session:
            plan = await self._plan(session, user_id, request)

        cost = calculate_cost(
            request.count,
            credits_per_image=self._credits_per_image,
            size=request.size,
            quality=request.quality,
            mode=request.mode,
        )
        task_id = new_task_id(request.type)
        work_id = uuid.uuid4().hex

        async with self._session_factory() as session:
            await self._ledger.reserve(
                session,
                user_id=user_id,
                task_id=task_id,
                amount=cost,
                kind=request.type,
                description=f"{request.type} x{request.count}",
            )

        try:
            async with self._session_factory() as session:
                await self._store.create(
                    session,
                    task_id=task_id,
                    work_id=work_id,
                    user_id=user_id,
                    task_type=request.type,
                    mode=request.mode.value,
                    params={
                        "count": request.count,
                        "images": plan.images,
                        "parameters": plan.parameters,
                        "scene_info": plan.scene_info,
                        "size": request.size,
                        "quality": request.quality,
                        "pose_description": request.pose_description,
                        "reference_work_id": request.reference_work_id,
                    },
                    credits_cost=cost,
                    work_fields={
                        "parameters": plan.parameters,
                        "original_images": plan.original_images,
                        "scene_id": plan.scene_id,
                        "scene_info": plan.scene_info,
                        "reference_work_id": request.reference_work_id,
                        "pose_description": request.pose_description,
                    },
                )
        except SQLAlchemyError:
            logger.exception("Could not create task %s; returning reserved credits.", task_id)
            async with self._session_factory() as session:
                await self._ledger.refund(
                    session,
                    task_id=task_id,
                    user_id=user_id,
                    amount=cost,
                    reason="task creation failed",
                )
            raise

        generation_submissions_total.inc()
        logger.info("Created task %s (work %s) for user %s, cost %s.", task_id, work_id, user_id, cost)
        await self._dispatch(task_id)
        return SubmissionReceipt(task_id=task_id, work_id=work_id)

    def validate(self, request: GenerationRequest) -> None:
        """Structural checks. Raises ``ValidationError`` before anything is written."""

        if request.type not in TASK_TYPES:
            raise ValidationError(f"Unsupported task type: {request.type}")
        if not 1 <= request.count <= self._max_images:
            raise ValidationError(f"count must be between 1 and {self._max_images}")
        if request.size not in SIZE_MULTIPLIERS:
            raise ValidationError(f"Unsupported size: {request.size}")
        if request.quality not in QUALITY_MULTIPLIERS:
            raise ValidationError(f"Unsupported quality: {request.quality}")
        if any(not ref or not ref.strip() for ref in request.images):
            raise ValidationError("Image references must be non-empty")

        if request.mode is GenerationMode.POSE_VARIATION:
            if not request.reference_work_id:
                raise ValidationError("reference_work_id is required for pose variation")
            if not (request.pose_description or "").strip():
                raise ValidationError("pose_description is required for pose variation")
        elif not request.images:
            raise ValidationError("At least one image is required")

    async def drain(self) -> None:
        """Wait for dispatch outcomes still being handled in the background."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _plan(self, session: AsyncSession, user_id: str, request: GenerationRequest) -> _Plan:
        if request.mode is GenerationMode.POSE_VARIATION:
            return await self._plan_pose_variation(session, user_id, request)

        scene_info = dict(request.scene_info or {})
        if request.scene_id and not scene_info:
            scene = await session.get(models.Scene, request.scene_id)
            if scene is None or not scene.is_active:
                raise ValidationError(f"Unknown scene: {request.scene_id}")
            scene_info = {
                "id": scene.id,
                "name": scene.name,
                "description": scene.description,
                "prompt_hint": scene.prompt_hint,
            }
        return _Plan(
            images=list(request.images),
            parameters=dict(request.parameters),
            scene_id=request.scene_id,
            scene_info=scene_info,
            original_images=list(request.images),
        )

    async def _plan_pose_variation(
        self,
        session: AsyncSession,
        user_id: str,
        request: GenerationRequest,
    ) -> _Plan:
        reference = await self._store.get_work(session, request.reference_work_id or "", user_id=user_id)
        if reference is None:
            raise ValidationError(f"Reference work not found: {request.reference_work_id}")
        if reference.status != TaskStatus.COMPLETED.value or not reference.images:
            raise ValidationError("Reference work has no completed images")

        garments = [
            ref
            for ref in reference.original_images or []
            if not any(marker in ref for marker in GENERATED_PATH_MARKERS)
        ]
        images = [reference.images[0]["url"], *garments]
        return _Plan(
            images=images,
            parameters=dict(reference.parameters or {}),
            scene_id=reference.scene_id,
            scene_info=dict(reference.scene_info or {}),
            original_images=images,
        )

    async def _dispatch(self, task_id: str) -> None:
        dispatch = asyncio.ensure_future(self._dispatcher.dispatch(task_id))
        done, _ = await asyncio.wait({dispatch}, timeout=self._dispatch_grace)
        if dispatch in done:
            await self._handle_dispatch_outcome(task_id, dispatch)
            return

        self._background.add(dispatch)
        dispatch.add_done_callback(lambda future: self._on_late_dispatch(task_id, future))

    def _on_late_dispatch(self, task_id: str, future: asyncio.Future[Any]) -> None:
        self._background.discard(future)
        if future.cancelled():
            return
        handler = asyncio.ensure_future(self._handle_dispatch_outcome(task_id, future))
        self._background.add(handler)
        handler.add_done_callback(self._background.discard)

    async def _handle_dispatch_outcome(self, task_id: str, future: asyncio.Future[Any]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            logger.info("Dispatched task %s.", task_id)
            return

        classification = classify_dispatch_error(exc)
        if classification is DispatchTransientError:
            dispatch_failures_total.labels("transient").inc()
            logger.warning(
                "Dispatch of task %s timed out (%s); the worker may still be running.",
                task_id,
                exc,
            )
            return

        dispatch_failures_total.labels("fatal").inc()
        logger.error("Dispatch of task %s failed: %s", task_id, exc)
        await self._terminal.fail(task_id, f"dispatch failed: {exc}")
