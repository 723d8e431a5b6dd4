"""Worker pipeline executing one generation task end to end."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photogen.config.settings import Settings
from photogen.errors import StageError, WatchdogTimeoutError
from photogen.imggen.artifacts import GenerationOutput, MaterializedImage, UploadResult
from photogen.imggen.generator_client import ImageGeneratorClient
from photogen.imggen.materializer import ImageMaterializer
from photogen.imggen.model_registry import ModelRegistry, ModelSpec
from photogen.imggen.prompt_builder import PromptComposer, PromptContext, PromptServiceClient
from photogen.pipeline.watchdog import Watchdog
from photogen.services.stages import GenerationMode, PipelineStage, TaskStatus
from photogen.services.task_store import TaskStore
from photogen.services.terminal import TerminalWriter
from photogen.storage.backend import ObjectStorage, build_storage
from photogen.storage.uploader import ResultUploader

logger = logging.getLogger(__name__)

EXECUTION_TIMEOUT_REASON = "execution timeout"


@dataclass(slots=True)
class StageResult:
    """Tagged outcome of one pipeline stage."""

    stage: PipelineStage
    ok: bool
    value: Any = None
    error: str | None = None
    # False when the task left ``processing`` (cancelled, expired) meanwhile.
    checkpointed: bool = True


@dataclass(slots=True)
class PipelineState:
    task_id: str
    task_type: str
    mode: GenerationMode
    count: int
    image_refs: list[str]
    parameters: dict[str, Any]
    scene_info: dict[str, Any]
    pose_description: str | None = None
    capability: str = "text-to-image"
    materialized: list[MaterializedImage] = field(default_factory=list)
    prompt: str = ""
    model: ModelSpec | None = None
    output: GenerationOutput | None = None
    uploads: list[UploadResult] = field(default_factory=list)


Stage = Callable[[PipelineState], Awaitable[Any]]


class GenerationWorker:
    """Runs the stage chain for a task under an execution watchdog.

    Every stage failure is funnelled into ``TerminalWriter.fail`` which
    refunds the reservation. A successful chain ends with
    ``TerminalWriter.complete`` and never refunds.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        materializer: ImageMaterializer,
        composer: PromptComposer,
        registry: ModelRegistry,
        generator: ImageGeneratorClient,
        uploader: ResultUploader,
        terminal: TerminalWriter | None = None,
        store: TaskStore | None = None,
        watchdog_timeout: float = 55.0,
        storage: ObjectStorage | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._materializer = materializer
        self._composer = composer
        self._registry = registry
        self._generator = generator
        self._uploader = uploader
        self._store = store or TaskStore()
        self._terminal = terminal or TerminalWriter(session_factory, store=self._store)
        self._watchdog_timeout = watchdog_timeout
        self._storage = storage

    async def aclose(self) -> None:
        """Close the prompt service client and the storage backend owned by this worker."""

        await self._composer.close()
        if self._storage is not None:
            await self._storage.close()

    async def run(self, task_id: str) -> TaskStatus | None:
        """Execute ``task_id`` and return the status stored once the worker is done."""

        async with self._session_factory() as session:
            task = await self._store.get_task(session, task_id)
        if task is None:
            logger.warning("Worker received unknown task %s.", task_id)
            return None

        watchdog = Watchdog(self._watchdog_timeout, lambda: self._on_timeout(task_id))
        watchdog.arm()
        writes: set[asyncio.Task[bool]] = set()
        pipeline = asyncio.create_task(self._execute(task_id, watchdog, writes))
        fired = asyncio.create_task(watchdog.wait_fired())

        done, _ = await asyncio.wait({pipeline, fired}, return_when=asyncio.FIRST_COMPLETED)
        if pipeline in done:
            fired.cancel()
            watchdog.disarm()
            await watchdog.join()
            pipeline.result()
        else:
            pipeline.cancel()
            with suppress(asyncio.CancelledError):
                await pipeline
            # Writes the pipeline started before the watchdog fired run to completion.
            if writes:
                await asyncio.gather(*list(writes))

        return await self._current_status(task_id)

    async def _on_timeout(self, task_id: str) -> None:
        reason = str(WatchdogTimeoutError(EXECUTION_TIMEOUT_REASON))
        if await self._terminal.fail(task_id, reason):
            logger.error("Task %s failed: %s after %.0fs.", task_id, reason, self._watchdog_timeout)

    async def _terminal_write(self, writes: set[asyncio.Task[bool]], write: Awaitable[bool]) -> bool:
        """Shield a terminal write and its refund from cancellation of the pipeline."""

        task = asyncio.ensure_future(write)
        writes.add(task)
        task.add_done_callback(writes.discard)
        return await asyncio.shield(task)

    async def _execute(self, task_id: str, watchdog: Watchdog, writes: set[asyncio.Task[bool]]) -> None:
        async with self._session_factory() as session:
            if not await self._store.mark_processing(session, task_id):
                logger.info("Task %s is no longer pending; skipping.", task_id)
                watchdog.disarm()
                return
            task = await self._store.get_task(session, task_id)
            work = await self._store.get_work_for_task(session, task_id)

        params = dict(task.params or {})
        state = PipelineState(
            task_id=task_id,
            task_type=task.type,
            mode=GenerationMode(task.mode),
            count=int(params.get("count", 1)),
            image_refs=list(params.get("images") or []),
            parameters=dict(params.get("parameters") or {}),
            scene_info=dict(params.get("scene_info") or (work.scene_info if work else None) or {}),
            pose_description=params.get("pose_description"),
        )

        try:
            for stage, handler in self._stages():
                result = await self._run_stage(state, stage, handler)
                if not result.ok:
                    await self._terminal_write(
                        writes,
                        self._terminal.fail(task_id, result.error or f"{stage.value} failed"),
                    )
                    return
                if not result.checkpointed:
                    logger.info("Task %s left processing during %s; stopping.", task_id, stage.value)
                    return
        except Exception as exc:
            logger.exception("Unexpected error while processing task %s", task_id)
            await self._terminal_write(writes, self._terminal.fail(task_id, f"internal error: {exc}"))
            return

        await self._finish(state, writes)

    def _stages(self) -> list[tuple[PipelineStage, Stage]]:
        return [
            (PipelineStage.MATERIALIZING, self._materialize),
            (PipelineStage.PROMPTING, self._compose_prompt),
            (PipelineStage.SELECTING_MODEL, self._select_model),
            (PipelineStage.GENERATING, self._generate),
            (PipelineStage.UPLOADING, self._upload),
        ]

    async def _run_stage(self, state: PipelineState, stage: PipelineStage, handler: Stage) -> StageResult:
        try:
            value = await handler(state)
        except StageError as exc:
            logger.warning("Task %s stage %s failed: %s", state.task_id, stage.value, exc)
            return StageResult(stage=stage, ok=False, error=str(exc))

        async with self._session_factory() as session:
            checkpointed = await self._store.checkpoint(session, state.task_id, stage)
        return StageResult(stage=stage, ok=True, value=value, checkpointed=checkpointed)

    async def _materialize(self, state: PipelineState) -> int:
        state.materialized = await self._materializer.materialize(state.image_refs)
        converted = sum(1 for image in state.materialized if image.converted)
        if state.image_refs and converted == 0:
            raise StageError(
                "None of the input images could be loaded",
                stage=PipelineStage.MATERIALIZING.value,
            )
        return converted

    async def _compose_prompt(self, state: PipelineState) -> str:
        context = PromptContext(
            parameters=state.parameters,
            scene_info=state.scene_info,
            task_type=state.task_type,
            mode=state.mode,
            pose_description=state.pose_description,
            images=state.materialized,
        )
        state.prompt = await self._composer.compose(context)
        return state.prompt

    async def _select_model(self, state: PipelineState) -> ModelSpec:
        async with self._session_factory() as session:
            state.model = await self._registry.select_best(session, state.capability)
        return state.model

    async def _generate(self, state: PipelineState) -> int:
        assert state.model is not None
        state.output = await self._generator.generate(
            state.model,
            state.prompt,
            state.materialized,
            count=state.count,
        )
        return len(state.output.images)

    async def _upload(self, state: PipelineState) -> int:
        assert state.output is not None
        state.uploads = await self._uploader.upload_all(
            state.output.images,
            task_id=state.task_id,
            task_type=state.task_type,
        )
        succeeded = sum(1 for upload in state.uploads if upload.success)
        if succeeded == 0:
            raise StageError("All uploads failed", stage=PipelineStage.UPLOADING.value)
        return succeeded

    async def _finish(self, state: PipelineState, writes: set[asyncio.Task[bool]]) -> None:
        assert state.model is not None and state.output is not None
        images = [upload.as_work_image() for upload in state.uploads if upload.success]
        failed = len(state.uploads) - len(images)
        won = await self._terminal_write(
            writes,
            self._terminal.complete(
                state.task_id,
                work_values={
                    "images": images,
                    "ai_model": state.model.name,
                    "ai_prompt": state.prompt,
                    "ai_description": state.output.text_response,
                },
                task_result={
                    "images": images,
                    "total": len(images),
                    "failed_uploads": failed,
                    "model": state.model.name,
                },
            ),
        )
        if won:
            logger.info("Task %s completed with %s image(s).", state.task_id, len(images))

    async def _current_status(self, task_id: str) -> TaskStatus | None:
        async with self._session_factory() as session:
            task = await self._store.get_task(session, task_id)
        return TaskStatus(task.status) if task is not None else None


def build_worker(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    storage: ObjectStorage | None = None,
) -> GenerationWorker:
    """Wire a worker from settings."""

    owned_storage = build_storage(settings) if storage is None else None
    storage = storage or owned_storage
    prompt_client = (
        PromptServiceClient(settings.prompt_service_url, timeout=settings.prompt_service_timeout)
        if settings.prompt_service_url
        else None
    )
    return GenerationWorker(
        session_factory,
        materializer=ImageMaterializer(storage, download_timeout=settings.materialize_download_timeout),
        composer=PromptComposer(prompt_client),
        registry=ModelRegistry(),
        generator=ImageGeneratorClient(timeout=settings.model_call_timeout),
        uploader=ResultUploader(
            storage,
            concurrency=settings.upload_concurrency,
            retries=settings.upload_retries,
            retry_delay=settings.upload_retry_delay,
        ),
        watchdog_timeout=settings.watchdog_timeout,
        storage=owned_storage,
    )
