"""
Exception hierarchy for the upload backend.

Transfer failures are recovered into the task's ``failed`` state and never
escape the scheduler; the remaining errors are raised to the caller at the
point where the mistake is made (construction, enqueue after shutdown).
"""

from __future__ import annotations


class UploadBackendError(Exception):
    """Base class for all errors raised by this package."""


class TransferError(UploadBackendError):
    """A transfer client could not deliver a file to remote storage."""


class TaskNotFoundError(UploadBackendError):
    """A task id does not resolve to any known task."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Upload task not found: {task_id}")
        self.task_id = task_id


class ConfigurationError(UploadBackendError):
    """Invalid construction or configuration parameters."""


class InvalidTransitionError(UploadBackendError):
    """A task was asked to move along an edge the state machine does not have."""


class SchedulerClosedError(UploadBackendError):
    """Work was submitted to a scheduler that has been shut down."""
