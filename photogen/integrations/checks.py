"""Connectivity checks for external collaborators."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from photogen.config.settings import Settings, get_settings
from photogen.imggen.prompt_builder import PromptServiceClient
from photogen.storage.backend import build_storage


@dataclass(slots=True)
class IntegrationCheckResult:
    """Structured result describing the integration check outcome."""

    name: str
    success: bool
    message: str


async def _run_check(
    name: str,
    factory: Callable[[], Awaitable[bool]],
    success_message: str,
) -> IntegrationCheckResult:
    try:
        result = await factory()
    except Exception as exc:  # pragma: no cover - network failures vary
        return IntegrationCheckResult(name=name, success=False, message=str(exc))

    if result:
        return IntegrationCheckResult(name=name, success=True, message=success_message)
    return IntegrationCheckResult(
        name=name,
        success=False,
        message="Service responded with non-success status.",
    )


async def check_prompt_service(settings: Settings | None = None) -> IntegrationCheckResult:
    """Ping the prompt templating service."""

    settings = settings or get_settings()
    if not settings.prompt_service_url:
        return IntegrationCheckResult(
            name="Prompt service",
            success=False,
            message="PROMPT_SERVICE_URL is not configured; the local template is used.",
        )

    client = PromptServiceClient(settings.prompt_service_url, timeout=settings.prompt_service_timeout)

    async def _ping() -> bool:
        try:
            return await client.ping()
        finally:
            await client.close()

    return await _run_check(
        name="Prompt service",
        factory=_ping,
        success_message="Prompt service is reachable.",
    )


async def check_storage(settings: Settings | None = None) -> IntegrationCheckResult:
    """Ping the configured object storage."""

    settings = settings or get_settings()

    async def _ping() -> bool:
        storage = build_storage(settings)
        try:
            return await storage.ping()
        finally:
            await storage.close()

    return await _run_check(
        name=f"Storage ({settings.storage_backend})",
        factory=_ping,
        success_message="Object storage is reachable.",
    )


async def run_all_checks(settings: Settings | None = None) -> list[IntegrationCheckResult]:
    """Execute all integration checks concurrently."""

    return list(await asyncio.gather(check_prompt_service(settings), check_storage(settings)))
