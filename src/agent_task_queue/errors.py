"""Exception hierarchy for the task queue.

Validation errors are always surfaced to the caller. Resource exhaustion is
retryable. Store errors are fatal for single-record loads but tolerated while
listing. Execution errors are recorded on the task and never escape the
scheduler.
"""

from __future__ import annotations


class TaskQueueError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TaskValidationError(TaskQueueError):
    """A task or task set violates a structural rule."""


class InvalidIDError(TaskValidationError):
    pass


class DuplicateIDError(TaskValidationError):
    pass


class MissingDependencyError(TaskValidationError):
    def __init__(self, task_id: str, dependency_id: str) -> None:
        super().__init__(f"task {task_id} depends on non-existent task {dependency_id}")
        self.task_id = task_id
        self.dependency_id = dependency_id


class CircularDependencyError(TaskValidationError):
    def __init__(self, message: str, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class InvalidPriorityError(TaskValidationError):
    pass


class InvalidTransitionError(TaskValidationError):
    pass


class TaskFileError(TaskValidationError):
    """A batch task file is malformed; nothing from it was created."""


class UnknownCategoryError(TaskValidationError):
    pass


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

class ResourceError(TaskQueueError):
    pass


class NoSlotsAvailableError(ResourceError):
    pass


class SlotCancelledError(ResourceError):
    pass


class SlotTimeoutError(ResourceError):
    pass


class SlotNotFoundError(ResourceError):
    pass


# ---------------------------------------------------------------------------
# Storage / lookup
# ---------------------------------------------------------------------------

class TaskStoreError(TaskQueueError):
    pass


class TaskNotFoundError(TaskStoreError, KeyError):
    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class AmbiguousTaskError(TaskStoreError):
    pass


# ---------------------------------------------------------------------------
# Scheduling / execution
# ---------------------------------------------------------------------------

class NoExecutableTasksError(TaskQueueError):
    pass


class ExecutionError(TaskQueueError):
    pass
