"""Credit reservation and idempotent compensation."""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from photogen.db import models
from photogen.errors import InsufficientCreditsError, ValidationError
from photogen.metrics.prometheus_exporter import credit_refunds_total

logger = logging.getLogger(__name__)

DEBIT = "debit"
CREDIT = "credit"


class CreditLedger:
    """Atomic balance updates paired with append-only ledger entries.

    Every balance change is a single conditional UPDATE (compare-and-swap on
    the balance row), so concurrent tasks of the same user never drive the
    balance below zero. A refund is keyed by task id: the credit entry for a
    task can exist once, which makes repeated refunds no-ops.
    """

    async def balance(self, session: AsyncSession, user_id: str) -> int | None:
        """Return the current balance or ``None`` for unknown users."""

        result = await session.execute(select(models.User.credits).where(models.User.id == user_id))
        return result.scalar_one_or_none()

    async def reserve(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        task_id: str,
        amount: int,
        kind: str = "photography",
        description: str | None = None,
    ) -> int:
        """Debit ``amount`` credits if the balance covers it and return the new balance."""

        if amount <= 0:
            raise ValueError("Reservation amount must be positive.")

        stmt = (
            update(models.User)
            .where(models.User.id == user_id, models.User.credits >= amount)
            .values(
                credits=models.User.credits - amount,
                total_consumed_credits=models.User.total_consumed_credits + amount,
                updated_at=models.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            await session.rollback()
            available = await self.balance(session, user_id)
            if available is None:
                raise ValidationError(f"Unknown user: {user_id}")
            raise InsufficientCreditsError(amount, available)

        balance_after = await self.balance(session, user_id) or 0
        session.add(
            models.CreditLedgerEntry(
                user_id=user_id,
                task_id=task_id,
                amount=amount,
                direction=DEBIT,
                kind=kind,
                description=description,
                balance_after=balance_after,
            ),
        )
        await session.commit()
        logger.info(
            "Reserved %s credits for task %s (user %s, balance %s)",
            amount,
            task_id,
            user_id,
            balance_after,
        )
        return balance_after

    async def has_refund(self, session: AsyncSession, task_id: str) -> bool:
        stmt = select(models.CreditLedgerEntry.id).where(
            models.CreditLedgerEntry.task_id == task_id,
            models.CreditLedgerEntry.direction == CREDIT,
        )
        result = await session.execute(stmt)
        return result.first() is not None

    async def refund(
        self,
        session: AsyncSession,
        *,
        task_id: str,
        user_id: str,
        amount: int,
        reason: str = "",
    ) -> bool:
        """Credit ``amount`` back once per task. Returns ``True`` if the balance changed."""

        if amount <= 0:
            return False
        if await self.has_refund(session, task_id):
            logger.info("Refund for task %s already recorded; skipping.", task_id)
            return False

        try:
            await session.execute(
                update(models.User)
                .where(models.User.id == user_id)
                .values(
                    credits=models.User.credits + amount,
                    total_consumed_credits=models.User.total_consumed_credits - amount,
                    updated_at=models.utcnow(),
                )
                .execution_options(synchronize_session=False),
            )
            balance_after = await self.balance(session, user_id) or 0
            session.add(
                models.CreditLedgerEntry(
                    user_id=user_id,
                    task_id=task_id,
                    amount=amount,
                    direction=CREDIT,
                    kind="refund",
                    description=reason[:256] or None,
                    balance_after=balance_after,
                ),
            )
            await session.flush()
            await session.execute(
                update(models.Task)
                .where(models.Task.id == task_id)
                .values(credits_refunded=True)
                .execution_options(synchronize_session=False),
            )
            await session.commit()
        except IntegrityError:
            # A concurrent writer inserted the refund entry first.
            await session.rollback()
            logger.info("Concurrent refund for task %s won; skipping.", task_id)
            return False

        credit_refunds_total.inc()
        logger.info(
            "Refunded %s credits for task %s (user %s, balance %s): %s",
            amount,
            task_id,
            user_id,
            balance_after,
            reason,
        )
        return True

    async def entries_for_task(
        self,
        session: AsyncSession,
        task_id: str,
    ) -> list[models.CreditLedgerEntry]:
        stmt = (
            select(models.CreditLedgerEntry)
            .where(models.CreditLedgerEntry.task_id == task_id)
            .order_by(models.CreditLedgerEntry.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
