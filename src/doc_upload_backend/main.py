from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .configuration import load_settings
from .errors import SchedulerClosedError, TaskNotFoundError
from .metadata_store import FileMetadataStore, record_completed_upload
from .models import (
    CompletionStatus,
    EnqueueResponse,
    QueueSnapshot,
    QueueStats,
    StoredFile,
    TaskIdsRequest,
    TaskSnapshot,
)
from .scheduler import UploadScheduler
from .tasks import DEFAULT_CONTENT_TYPE, UploadPayload
from .transfer import build_transfer_client
from .utils import configure_logging

logger = logging.getLogger(__name__)

settings = load_settings()
configure_logging(settings.logging.level)

app = FastAPI(title="Document Upload API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

upload_scheduler = UploadScheduler(
    build_transfer_client(settings.transfer),
    max_concurrent=settings.scheduler.max_concurrent,
)
metadata_store = FileMetadataStore(settings.storage.db_path)


@app.on_event("shutdown")
def _shutdown_scheduler() -> None:
    upload_scheduler.shutdown(wait=False)


def get_scheduler() -> UploadScheduler:
    return upload_scheduler


def get_metadata_store() -> FileMetadataStore:
    return metadata_store


def _persist_on_completion(manager: UploadScheduler, store: FileMetadataStore, task_ids: List[str]) -> None:
    for task_id in task_ids:
        future = manager.completion(task_id)
        if future is not None:
            future.add_done_callback(partial(record_completed_upload, store))


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/uploads", response_model=EnqueueResponse, status_code=202)
async def enqueue_uploads(
    files: Optional[List[UploadFile]] = File(None),
    folder_id: Optional[str] = Form(None, alias="folderId"),
    manager: UploadScheduler = Depends(get_scheduler),
    store: FileMetadataStore = Depends(get_metadata_store),
) -> EnqueueResponse:
    if not files:
        raise HTTPException(status_code=400, detail="No files provided")

    payloads = []
    for upload in files:
        content = await upload.read()
        await upload.close()
        payloads.append(
            UploadPayload(
                filename=upload.filename or "file",
                content=content,
                content_type=upload.content_type or DEFAULT_CONTENT_TYPE,
            )
        )

    try:
        task_ids = manager.enqueue_bulk(payloads, folder_id or None)
    except SchedulerClosedError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    _persist_on_completion(manager, store, task_ids)
    return EnqueueResponse(task_ids=task_ids)


@app.get("/uploads", response_model=list[TaskSnapshot])
def list_uploads(manager: UploadScheduler = Depends(get_scheduler)) -> list[TaskSnapshot]:
    return manager.list_tasks()


@app.get("/uploads/stats", response_model=QueueStats)
def upload_stats(manager: UploadScheduler = Depends(get_scheduler)) -> QueueStats:
    return manager.get_stats()


@app.post("/uploads/retry", response_model=EnqueueResponse)
def retry_failed_uploads(
    manager: UploadScheduler = Depends(get_scheduler),
    store: FileMetadataStore = Depends(get_metadata_store),
) -> EnqueueResponse:
    try:
        task_ids = manager.retry_failed()
    except SchedulerClosedError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    _persist_on_completion(manager, store, task_ids)
    return EnqueueResponse(task_ids=task_ids)


@app.delete("/uploads/completed")
def clear_completed_uploads(manager: UploadScheduler = Depends(get_scheduler)) -> Dict[str, int]:
    return {"cleared": manager.clear_completed()}


@app.post("/uploads/status", response_model=CompletionStatus)
def uploads_completed(request: TaskIdsRequest, manager: UploadScheduler = Depends(get_scheduler)) -> CompletionStatus:
    return CompletionStatus(completed=manager.are_tasks_completed(request.task_ids))


@app.get("/uploads/{task_id}", response_model=TaskSnapshot)
def get_upload(task_id: str, manager: UploadScheduler = Depends(get_scheduler)) -> TaskSnapshot:
    task = manager.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=str(TaskNotFoundError(task_id)))
    return task


@app.get("/files", response_model=list[StoredFile])
def list_files(
    folder_id: Optional[str] = None,
    store: FileMetadataStore = Depends(get_metadata_store),
) -> list[StoredFile]:
    return store.list_uploads(folder_id)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@app.websocket("/uploads/ws")
async def upload_events(websocket: WebSocket, manager: UploadScheduler = Depends(get_scheduler)) -> None:
    """
    Stream queue snapshots to a client.

    The current snapshot is sent on connect, then one message per change.
    Snapshots no newer than the last one sent are skipped.
    """
    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[QueueSnapshot] = asyncio.Queue()
    unsubscribe = manager.subscribe(lambda snapshot: loop.call_soon_threadsafe(queue.put_nowait, snapshot))
    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        initial = manager.snapshot()
        last_sent = initial.version
        await websocket.send_json(initial.model_dump(mode="json"))
        while not disconnected.done():
            next_snapshot = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({next_snapshot, disconnected}, return_when=asyncio.FIRST_COMPLETED)
            if disconnected in done:
                next_snapshot.cancel()
                break
            snapshot = next_snapshot.result()
            if snapshot.version <= last_sent:
                continue
            last_sent = snapshot.version
            await websocket.send_json(snapshot.model_dump(mode="json"))
    finally:
        unsubscribe()
        disconnected.cancel()
