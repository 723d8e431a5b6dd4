"""FastAPI entrypoint and HTTP routes."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import BackgroundTasks, FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.ext.asyncio import AsyncEngine

from photogen.api.auth import InternalAuthDependency, UserIdDependency
from photogen.api.schemas import CancelResponse, ProgressResponse, SubmissionResponse, WorkerRunRequest
from photogen.config.settings import Settings, get_settings
from photogen.db.session import build_engine, build_session_factory, init_db
from photogen.errors import InsufficientCreditsError, TaskNotFoundError, ValidationError
from photogen.monitoring.logging import configure_logging
from photogen.pipeline.worker import GenerationWorker, build_worker
from photogen.services.dispatch import CeleryDispatcher, Dispatcher, HttpDispatcher
from photogen.services.progress import TaskQueryService
from photogen.services.submission import GenerationRequest, SubmissionOrchestrator


def build_dispatcher(settings: Settings) -> Dispatcher:
    if settings.dispatch_backend == "http":
        if not settings.worker_invoke_url:
            raise RuntimeError("WORKER_INVOKE_URL is not configured.")
        return HttpDispatcher(
            settings.worker_invoke_url,
            token=settings.internal_token,
            timeout=settings.dispatch_timeout,
        )

    from photogen.workers.generation_worker import celery_app  # noqa: WPS433

    return CeleryDispatcher(celery_app, timeout=settings.dispatch_timeout)


def create_app(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    dispatcher: Dispatcher | None = None,
    worker: GenerationWorker | None = None,
) -> FastAPI:
    """Initialise the FastAPI application."""

    settings = settings or get_settings()
    engine = engine or build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    dispatcher = dispatcher or build_dispatcher(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings)
        await init_db(engine)
        yield
        await app.state.orchestrator.drain()
        await dispatcher.close()
        if worker is None and app.state.worker is not None:
            await app.state.worker.aclose()

    app = FastAPI(
        title="Photogen API",
        version="0.1.0",
        docs_url="/docs" if settings.environment != "prod" else None,
        redoc_url="/redoc" if settings.environment != "prod" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = SubmissionOrchestrator(
        session_factory,
        dispatcher,
        max_images_per_request=settings.max_images_per_request,
        credits_per_image=settings.credits_per_image,
        dispatch_grace=settings.dispatch_grace,
    )
    app.state.queries = TaskQueryService(session_factory)
    app.state.worker = worker
    app.mount("/metrics", make_asgi_app())

    @app.exception_handler(ValidationError)
    async def validation_error_handler(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(InsufficientCreditsError)
    async def insufficient_credits_handler(_: Request, exc: InsufficientCreditsError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={"detail": str(exc), "required": exc.required, "available": exc.available},
        )

    @app.exception_handler(TaskNotFoundError)
    async def not_found_handler(_: Request, exc: TaskNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Simple health endpoint used for readiness probes."""

        return {"status": "ok"}

    @app.post(
        "/v1/generations",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=SubmissionResponse,
        tags=["generations"],
    )
    async def submit_generation(
        payload: GenerationRequest,
        user_id: str = UserIdDependency,
    ) -> SubmissionResponse:
        receipt = await app.state.orchestrator.submit(user_id, payload)
        return SubmissionResponse(task_id=receipt.task_id, work_id=receipt.work_id)

    @app.get("/v1/generations/{task_id}", response_model=ProgressResponse, tags=["generations"])
    async def get_generation(task_id: str, user_id: str = UserIdDependency) -> ProgressResponse:
        progress = await app.state.queries.get_progress(task_id, user_id)
        return ProgressResponse.from_progress(progress)

    @app.post("/v1/generations/{task_id}/cancel", response_model=CancelResponse, tags=["generations"])
    async def cancel_generation(task_id: str, user_id: str = UserIdDependency) -> CancelResponse:
        cancelled = await app.state.queries.cancel(task_id, user_id)
        return CancelResponse(task_id=task_id, cancelled=cancelled)

    @app.post(
        "/internal/worker/run",
        status_code=status.HTTP_202_ACCEPTED,
        dependencies=[InternalAuthDependency],
        tags=["internal"],
    )
    async def run_worker(payload: WorkerRunRequest, background_tasks: BackgroundTasks) -> dict[str, str]:
        """Accept a dispatched task and run the worker after responding."""

        if app.state.worker is None:
            app.state.worker = build_worker(settings, session_factory)
        background_tasks.add_task(app.state.worker.run, payload.task_id)
        return {"status": "accepted", "task_id": payload.task_id}

    return app
