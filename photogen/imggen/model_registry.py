"""Selection of the generation backend from the model registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from photogen.db import models
from photogen.errors import NoModelAvailableError
from photogen.services.stages import PipelineStage

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ModelSpec:
    """Snapshot of a registry row handed to the invoker."""

    id: int
    name: str
    model_name: str
    provider: str
    api_format: str
    api_url: str
    api_key: str

    @classmethod
    def from_row(cls, row: models.AIModel) -> "ModelSpec":
        return cls(
            id=row.id,
            name=row.name,
            model_name=row.model_name,
            provider=row.provider,
            api_format=row.api_format,
            api_url=row.api_url,
            api_key=row.api_key,
        )


class ModelRegistry:
    """Picks the highest-priority available backend for a capability."""

    async def select_best(
        self,
        session: AsyncSession,
        capability: str = "text-to-image",
    ) -> ModelSpec:
        # Rows are not always consistent about which availability flag is set,
        # so each filter set is tried in turn.
        strategies = (
            (models.AIModel.status == "active", models.AIModel.is_active.is_(True)),
            (models.AIModel.status == "active",),
            (models.AIModel.is_active.is_(True),),
        )
        for filters in strategies:
            stmt = (
                select(models.AIModel)
                .where(models.AIModel.capability == capability, *filters)
                .order_by(models.AIModel.priority.desc(), models.AIModel.weight.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            if row is not None:
                logger.info(
                    "Selected model %s (priority=%s, weight=%s)",
                    row.name,
                    row.priority,
                    row.weight,
                )
                return ModelSpec.from_row(row)

        raise NoModelAvailableError(
            f"No available model for capability {capability!r}",
            stage=PipelineStage.SELECTING_MODEL.value,
        )
