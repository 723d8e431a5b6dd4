"""Exception taxonomy shared by submission, worker and HTTP layers."""

from __future__ import annotations


class PhotogenError(RuntimeError):
    """Base class for all domain errors raised by photogen."""


class ValidationError(PhotogenError):
    """Raised when a submission is structurally invalid. Nothing has been written."""


class InsufficientCreditsError(PhotogenError):
    """Raised when the user's balance cannot cover the reservation."""

    def __init__(self, required: int, available: int | None = None) -> None:
        self.required = required
        self.available = available
        if available is None:
            message = f"Insufficient credits: {required} required."
        else:
            message = f"Insufficient credits: {required} required, {available} available."
        super().__init__(message)


class TaskNotFoundError(PhotogenError):
    """Raised when a task does not exist or belongs to another user."""


class DispatchError(PhotogenError):
    """Raised by a dispatcher when handing a task to a worker fails."""


class DispatchTransientError(DispatchError):
    """The dispatch round-trip failed but the worker may still be running."""


class DispatchFatalError(DispatchError):
    """The dispatch target rejected the call, so the worker never started."""


class StageError(PhotogenError):
    """Raised by a pipeline stage; routes the task to the failure path."""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        self.stage = stage
        super().__init__(message)


class NoModelAvailableError(StageError):
    """Raised when the model registry has no backend for the capability."""


class ModelInvocationError(StageError):
    """Raised when the selected backend fails, times out or returns nothing usable."""


class StorageError(PhotogenError):
    """Raised by object storage adapters."""


class WatchdogTimeoutError(PhotogenError):
    """Reason recorded when the watchdog forces a task into the failed state."""
