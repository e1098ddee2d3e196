"""
Upload task records and their lifecycle state machine.

A task's state is one of four small immutable values, each carrying only the
data that is valid in that state:

    Pending -> Active(progress) -> Completed(result) | Failed(error)
    Failed  -> Pending            (explicit retry only)

``UploadTask`` owns the current state and is the only place transitions are
applied. It is not thread-safe on its own; the scheduler mutates tasks while
holding its lock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union
from uuid import uuid4

from .errors import InvalidTransitionError
from .models import TaskSnapshot, TaskStatus, UploadResult

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class UploadPayload:
    """
    The file to transfer and where it should land.

    Attributes:
        filename: Original client-side filename (may include a folder path)
        content: Raw file bytes
        content_type: MIME type reported by the client
        folder_id: Optional target folder identifier
    """

    filename: str
    content: bytes = field(repr=False)
    content_type: str = DEFAULT_CONTENT_TYPE
    folder_id: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)

    def with_folder(self, folder_id: Optional[str]) -> UploadPayload:
        if folder_id == self.folder_id:
            return self
        return UploadPayload(self.filename, self.content, self.content_type, folder_id)


@dataclass(frozen=True)
class Pending:
    status = TaskStatus.PENDING


@dataclass(frozen=True)
class Active:
    progress: int = 0
    status = TaskStatus.ACTIVE


@dataclass(frozen=True)
class Completed:
    result: UploadResult
    status = TaskStatus.COMPLETED


@dataclass(frozen=True)
class Failed:
    error: str
    status = TaskStatus.FAILED


TaskState = Union[Pending, Active, Completed, Failed]


def new_task_id() -> str:
    return f"upload_{uuid4().hex}"


@dataclass
class UploadTask:
    """
    One file transfer tracked by the scheduler.

    Attributes:
        id: Unique, immutable task identifier
        payload: The file being transferred; reused unchanged on retry
        state: Current lifecycle state
        attempts: Number of transfer attempts started so far
        created_at: Enqueue timestamp (UTC)
        updated_at: Timestamp of the last transition or progress update (UTC)
    """

    id: str
    payload: UploadPayload
    state: TaskState = field(default_factory=Pending)
    attempts: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def status(self) -> TaskStatus:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _move(self, allowed: tuple, new_state: TaskState) -> None:
        if not isinstance(self.state, allowed):
            raise InvalidTransitionError(
                f"Task {self.id} cannot move from {self.status.value} to {new_state.status.value}"
            )
        self.state = new_state
        self.updated_at = datetime.utcnow()

    def activate(self) -> None:
        self._move((Pending,), Active())
        self.attempts += 1

    def report_progress(self, progress: int) -> bool:
        """
        Record transfer progress for the current attempt.

        Progress is clamped into 0-100 and never moves backwards within one
        attempt. Reports for a task that is no longer active are ignored.

        Returns:
            True if the stored progress changed
        """
        if not isinstance(self.state, Active):
            return False
        value = max(0, min(100, int(progress)))
        if value <= self.state.progress:
            return False
        self.state = Active(progress=value)
        self.updated_at = datetime.utcnow()
        return True

    def complete(self, result: UploadResult) -> None:
        self._move((Active,), Completed(result=result))

    def fail(self, error: str) -> None:
        self._move((Active,), Failed(error=error))

    def requeue(self) -> None:
        self._move((Failed,), Pending())

    def to_snapshot(self) -> TaskSnapshot:
        state = self.state
        if isinstance(state, Active):
            progress = state.progress
        elif isinstance(state, Completed):
            progress = 100
        else:
            progress = 0
        return TaskSnapshot(
            id=self.id,
            filename=self.payload.filename,
            content_type=self.payload.content_type,
            size=self.payload.size,
            folder_id=self.payload.folder_id,
            status=self.status,
            progress=progress,
            attempts=self.attempts,
            created_at=self.created_at,
            updated_at=self.updated_at,
            result=state.result if isinstance(state, Completed) else None,
            error=state.error if isinstance(state, Failed) else None,
        )
