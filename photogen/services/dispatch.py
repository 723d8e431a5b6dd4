"""Handing submitted tasks to the worker host."""

from __future__ import annotations

import asyncio
import logging
import socket
from abc import ABC, abstractmethod

import httpx
from celery import Celery

from photogen.errors import DispatchError, DispatchFatalError, DispatchTransientError

logger = logging.getLogger(__name__)

GENERATE_TASK_NAME = "photogen.generate"

_TRANSIENT_MARKERS = ("timeout", "timed out", "etimedout", "esockettimedout", "deadline")
_TRANSIENT_STATUS_CODES = frozenset({408, 504})


def classify_dispatch_error(exc: BaseException) -> type[DispatchError]:
    """Decide whether a failed dispatch may still have started the worker.

    A timeout only means the round-trip did not confirm; the worker may be
    running and will finish the task itself. Everything else means the
    worker was never reached.
    """

    if isinstance(exc, DispatchError):
        return type(exc) if type(exc) is not DispatchError else DispatchFatalError
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, socket.timeout, httpx.TimeoutException)):
        return DispatchTransientError
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in _TRANSIENT_STATUS_CODES:
            return DispatchTransientError
        return DispatchFatalError
    message = str(exc).lower()
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return DispatchTransientError
    return DispatchFatalError


class Dispatcher(ABC):
    """Starts the worker for a task id. Must not wait for the worker to finish."""

    @abstractmethod
    async def dispatch(self, task_id: str) -> None:
        """Send ``task_id`` to the worker host."""

    async def close(self) -> None:
        return None


class CeleryDispatcher(Dispatcher):
    """Publishes the task to the Celery broker."""

    def __init__(self, app: Celery, *, timeout: float = 3.0) -> None:
        self._app = app
        self._timeout = timeout

    async def dispatch(self, task_id: str) -> None:
        await asyncio.wait_for(
            asyncio.to_thread(self._app.send_task, GENERATE_TASK_NAME, args=[task_id]),
            timeout=self._timeout,
        )
        logger.info("Published task %s to the broker.", task_id)


class HttpDispatcher(Dispatcher):
    """Invokes the worker over HTTP; the worker answers once it has accepted the task."""

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"X-Internal-Token": token} if token else {}
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def dispatch(self, task_id: str) -> None:
        response = await self._client.post(self._url, json={"task_id": task_id})
        response.raise_for_status()
        logger.info("Worker accepted task %s.", task_id)

    async def close(self) -> None:
        await self._client.aclose()
