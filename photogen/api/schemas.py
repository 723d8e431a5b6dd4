"""Response and internal request bodies of the HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from photogen.services.progress import TaskProgress


class SubmissionResponse(BaseModel):
    task_id: str
    work_id: str


class ProgressResponse(BaseModel):
    task_id: str
    status: str
    progress_percent: int
    stage: str | None = None
    message: str
    work_id: str | None = None
    images: list[dict[str, Any]] = Field(default_factory=list)
    error_message: str | None = None

    @classmethod
    def from_progress(cls, progress: TaskProgress) -> "ProgressResponse":
        return cls(
            task_id=progress.task_id,
            status=progress.status.value,
            progress_percent=progress.progress_percent,
            stage=progress.stage,
            message=progress.message,
            work_id=progress.work_id,
            images=progress.images,
            error_message=progress.error_message,
        )


class CancelResponse(BaseModel):
    task_id: str
    cancelled: bool


class WorkerRunRequest(BaseModel):
    task_id: str = Field(min_length=1)
