"""Periodic reconciliation of tasks no writer finished."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photogen.db import models
from photogen.services.stages import TaskStatus
from photogen.services.task_store import TaskStore
from photogen.services.terminal import TerminalWriter

logger = logging.getLogger(__name__)

STALE_REASON = "task expired without a terminal write"


@dataclass(slots=True)
class ReaperReport:
    expired: int = 0
    refunded: int = 0


async def expire_stale_tasks(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    stale_after: float,
    terminal: TerminalWriter | None = None,
    store: TaskStore | None = None,
) -> int:
    """Expire pending/processing tasks not updated for ``stale_after`` seconds.

    Covers dispatches that never reached a worker and workers killed before
    their watchdog could write.
    """

    store = store or TaskStore()
    terminal = terminal or TerminalWriter(session_factory, store=store)
    cutoff = models.utcnow() - timedelta(seconds=stale_after)
    async with session_factory() as session:
        stale = await store.find_stale(session, updated_before=cutoff)

    expired = 0
    for task in stale:
        if await terminal.fail(task.id, STALE_REASON, status=TaskStatus.EXPIRED):
            expired += 1
    if expired:
        logger.warning("Expired %s stale task(s).", expired)
    return expired


async def reconcile_refunds(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    terminal: TerminalWriter | None = None,
    store: TaskStore | None = None,
) -> int:
    """Refund refundable terminal tasks whose writer died before refunding."""

    store = store or TaskStore()
    terminal = terminal or TerminalWriter(session_factory, store=store)
    async with session_factory() as session:
        missing = await store.find_missing_refunds(session)

    refunded = 0
    for task in missing:
        if await terminal.refund(task.id, task.error or f"{task.status} task reconciliation"):
            refunded += 1
    if refunded:
        logger.warning("Reconciled %s missing refund(s).", refunded)
    return refunded


async def run_reaper(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    stale_after: float,
) -> ReaperReport:
    store = TaskStore()
    terminal = TerminalWriter(session_factory, store=store)
    return ReaperReport(
        expired=await expire_stale_tasks(session_factory, stale_after=stale_after, terminal=terminal, store=store),
        refunded=await reconcile_refunds(session_factory, terminal=terminal, store=store),
    )
