"""Celery worker host for generation tasks and the periodic reaper."""

from __future__ import annotations

import asyncio
import logging

from celery import Celery

from photogen.config.settings import get_settings
from photogen.db.session import build_engine, build_session_factory
from photogen.monitoring.logging import configure_logging
from photogen.pipeline.worker import build_worker
from photogen.services.dispatch import GENERATE_TASK_NAME
from photogen.workers.reaper import run_reaper

logger = logging.getLogger(__name__)

settings = get_settings()

celery_app = Celery(
    "generation_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)
celery_app.conf.update(
    task_acks_late=False,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "reap-stale-tasks": {
            "task": "photogen.reap",
            "schedule": 60.0,
        },
    },
)


async def _run_generation(task_id: str) -> str | None:
    # A fresh engine per run: each Celery task gets its own event loop.
    engine = build_engine(settings.database_url)
    worker = build_worker(settings, build_session_factory(engine))
    try:
        status = await worker.run(task_id)
    finally:
        await worker.aclose()
        await engine.dispose()
    return status.value if status is not None else None


async def _run_reaper() -> dict[str, int]:
    engine = build_engine(settings.database_url)
    try:
        report = await run_reaper(build_session_factory(engine), stale_after=settings.stale_task_after)
    finally:
        await engine.dispose()
    return {"expired": report.expired, "refunded": report.refunded}


@celery_app.task(name=GENERATE_TASK_NAME, time_limit=settings.host_time_limit)
def generate_task(task_id: str) -> dict:
    """Run the generation pipeline; the host kills it at ``HOST_TIME_LIMIT``."""

    configure_logging(settings)
    status = asyncio.run(_run_generation(task_id))
    logger.info("Task %s finished with status %s.", task_id, status)
    return {"task_id": task_id, "status": status}


@celery_app.task(name="photogen.reap")
def reap_task() -> dict[str, int]:
    configure_logging(settings)
    return asyncio.run(_run_reaper())
