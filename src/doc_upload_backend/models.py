from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class UploadResult(BaseModel):
    name: str
    url: str
    size: int
    key: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class TaskSnapshot(BaseModel):
    id: str
    filename: str
    content_type: str
    size: int
    folder_id: Optional[str] = None
    status: TaskStatus
    progress: int = 0
    attempts: int = 0
    created_at: datetime
    updated_at: datetime
    result: Optional[UploadResult] = None
    error: Optional[str] = None


class QueueStats(BaseModel):
    total: int = 0
    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class QueueSnapshot(BaseModel):
    version: int
    tasks: List[TaskSnapshot]
    stats: QueueStats


class EnqueueResponse(BaseModel):
    task_ids: List[str]


class TaskIdsRequest(BaseModel):
    task_ids: List[str]


class CompletionStatus(BaseModel):
    completed: bool


class StoredFile(BaseModel):
    id: str
    task_id: Optional[str] = None
    name: str
    url: str
    file_type: str
    file_size: int
    folder_id: Optional[str] = None
    created_at: datetime
