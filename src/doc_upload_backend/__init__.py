"""
Document Upload Backend - background file uploads for the document library

This package schedules file transfers to remote storage without blocking the
caller. It provides:

- A bounded-concurrency upload scheduler with FIFO admission
- Per-task lifecycle tracking, explicit retry and clearing of finished tasks
- Snapshot broadcast to observers (in-process listeners and WebSocket clients)
- HTTP and S3 transfer clients
- SQLite storage for the metadata of uploaded files

Key Components:
    - scheduler: UploadScheduler, the admission loop and task collections
    - tasks: Upload task records and their state machine
    - events: EventBus for snapshot fan-out
    - transfer: Transfer client protocol and implementations
    - metadata_store: Persistence of completed uploads
    - configuration: Defaults, environment overrides and validation
    - main: FastAPI application and HTTP endpoint definitions

Usage:
    Run the API server with:
        uvicorn doc_upload_backend.main:app --host 0.0.0.0 --port 8000

    Or embed the scheduler directly:
        scheduler = UploadScheduler(HttpTransferClient(url), max_concurrent=3)
        task_ids = scheduler.enqueue_bulk(payloads, folder_id)
        scheduler.wait_for_tasks(task_ids)
"""

from .errors import (
    ConfigurationError,
    SchedulerClosedError,
    TaskNotFoundError,
    TransferError,
    UploadBackendError,
)
from .events import EventBus
from .models import QueueSnapshot, QueueStats, TaskSnapshot, TaskStatus, UploadResult
from .scheduler import UploadScheduler
from .tasks import UploadPayload
from .transfer import HttpTransferClient, S3TransferClient, TransferClient, build_transfer_client

__all__ = [
    "ConfigurationError",
    "EventBus",
    "HttpTransferClient",
    "QueueSnapshot",
    "QueueStats",
    "S3TransferClient",
    "SchedulerClosedError",
    "TaskNotFoundError",
    "TaskSnapshot",
    "TaskStatus",
    "TransferClient",
    "TransferError",
    "UploadBackendError",
    "UploadPayload",
    "UploadResult",
    "UploadScheduler",
    "build_transfer_client",
]
