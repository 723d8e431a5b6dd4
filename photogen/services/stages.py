"""Enumerations describing the generation task lifecycle."""

from enum import Enum


class TaskStatus(str, Enum):
    """Lifecycle states shared by Task and Work records."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class PipelineStage(str, Enum):
    """Checkpoints recorded on a processing task after each worker stage."""

    QUEUED = "queued"
    MATERIALIZING = "materializing"
    PROMPTING = "prompting"
    SELECTING_MODEL = "selecting_model"
    GENERATING = "generating"
    UPLOADING = "uploading"
    FINISHED = "finished"


class GenerationMode(str, Enum):
    NORMAL = "normal"
    POSE_VARIATION = "pose_variation"


ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.PROCESSING})
TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.EXPIRED},
)
# Statuses that return the reserved credits to the user.
REFUNDABLE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.EXPIRED})

PROGRESS_BY_STATUS = {
    TaskStatus.PENDING: 10,
    TaskStatus.PROCESSING: 60,
    TaskStatus.COMPLETED: 100,
    TaskStatus.FAILED: 0,
    TaskStatus.CANCELLED: 0,
    TaskStatus.EXPIRED: 0,
}

MESSAGE_BY_STATUS = {
    TaskStatus.PENDING: "Task is queued.",
    TaskStatus.PROCESSING: "Generating images.",
    TaskStatus.COMPLETED: "Generation finished.",
    TaskStatus.FAILED: "Generation failed.",
    TaskStatus.CANCELLED: "Task was cancelled.",
    TaskStatus.EXPIRED: "Task expired before finishing.",
}
