"""
Background upload scheduling for the document library.

This module owns the lifecycle of file transfers queued by the application:
- Task creation and FIFO admission under a concurrency bound
- Asynchronous transfer execution on a worker pool
- Lifecycle tracking (pending, active, completed, failed)
- Explicit retry of failed transfers and clearing of finished ones
- Snapshot broadcast to observers after every change

The UploadScheduler class is an ordinary service object: construct one per
application (or per test) and pass it to whoever needs to enqueue uploads.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Deque, Dict, Iterable, List, Optional, Set

from .errors import ConfigurationError, SchedulerClosedError, TransferError
from .events import EventBus, Listener, Unsubscribe
from .models import QueueSnapshot, QueueStats, TaskSnapshot, TaskStatus, UploadResult
from .tasks import UploadPayload, UploadTask, new_task_id
from .transfer import TransferClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 3


class UploadScheduler:
    """
    Bounded-concurrency scheduler for file transfers.

    Tasks move through three collections: the pending FIFO, the active set
    (at most ``max_concurrent`` entries) and the terminal registry. Every
    transition touches these collections inside a single lock acquisition, so
    observers never see a task in two places or a freed slot that has not yet
    been refilled.

    Thread Safety:
        All public methods may be called from any thread. Listener callbacks
        run on the thread that performed the mutation, after the lock has
        been released.

    Attributes:
        max_concurrent: Upper bound on simultaneous transfer client calls
    """

    def __init__(
        self,
        transfer_client: TransferClient,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        event_bus: EventBus | None = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            transfer_client: Collaborator that performs each upload
            max_concurrent: Number of transfers allowed in flight (default: 3)
            event_bus: Bus used to broadcast snapshots (a private one by default)

        Raises:
            ConfigurationError: If max_concurrent is not a positive integer
        """
        if isinstance(max_concurrent, bool) or not isinstance(max_concurrent, int) or max_concurrent <= 0:
            raise ConfigurationError(f"max_concurrent must be a positive integer, got {max_concurrent!r}")

        self.max_concurrent = max_concurrent
        self._client = transfer_client
        self._events = event_bus or EventBus()
        self._lock = Lock()
        self._pending: Deque[UploadTask] = deque()
        self._active: Dict[str, UploadTask] = {}
        self._terminal: Dict[str, UploadTask] = {}
        self._futures: Dict[str, Future] = {}
        self._issued_ids: Set[str] = set()
        self._version = 0
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="upload")

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, file: UploadPayload, folder_id: Optional[str] = None) -> str:
        """
        Queue one file for upload.

        The call returns as soon as the task is registered; the transfer runs
        in the background once a slot is free.

        Args:
            file: The file to upload
            folder_id: Target folder; overrides the payload's own folder when given

        Returns:
            The new task id

        Raises:
            SchedulerClosedError: If the scheduler has been shut down
        """
        payload = file.with_folder(folder_id) if folder_id is not None else file
        with self._lock:
            if self._closed:
                raise SchedulerClosedError("Upload scheduler is shut down")
            task = UploadTask(id=self._unique_id(), payload=payload)
            self._pending.append(task)
            self._futures[task.id] = Future()
            logger.debug(f"Queued upload task {task.id} ({payload.filename}, {payload.size} bytes)")
            self._admit()
            snapshot = self._snapshot()
        self._events.publish(snapshot)
        return task.id

    def enqueue_bulk(self, files: Iterable[UploadPayload], folder_id: Optional[str] = None) -> List[str]:
        """
        Queue several files, preserving input order.

        Returns:
            Task ids in the same order as ``files``
        """
        return [self.enqueue(file, folder_id) for file in files]

    def _unique_id(self) -> str:
        """Draw an id never handed out by this scheduler, cleared tasks included. Caller holds the lock."""
        task_id = new_task_id()
        while task_id in self._issued_ids:
            task_id = new_task_id()
        self._issued_ids.add(task_id)
        return task_id

    # ------------------------------------------------------------------
    # Admission and transfer execution
    # ------------------------------------------------------------------

    def _admit(self) -> None:
        """Promote pending tasks while slots are free. Caller holds the lock."""
        if self._closed:
            return
        while len(self._active) < self.max_concurrent and self._pending:
            task = self._pending.popleft()
            task.activate()
            self._active[task.id] = task
            logger.debug(f"Upload task {task.id} admitted (attempt {task.attempts}, {len(self._active)}/{self.max_concurrent} active)")
            self._executor.submit(self._run_transfer, task)

    def _run_transfer(self, task: UploadTask) -> None:
        """
        Execute one transfer attempt (runs on a worker thread).

        Any exception from the transfer client is recorded on the task; none
        escapes into the worker pool.
        """
        result: UploadResult | None = None
        error: str | None = None
        try:
            result = self._client.upload(task.payload, lambda pct: self._report_progress(task.id, pct))
            if not isinstance(result, UploadResult):
                raise TransferError(f"Transfer client returned {type(result).__name__} instead of an upload result")
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning(f"Upload task {task.id} failed: {error}")

        with self._lock:
            if error is None:
                task.complete(result)  # type: ignore[arg-type]
            else:
                task.fail(error)
            self._active.pop(task.id, None)
            self._terminal[task.id] = task
            done = self._futures.get(task.id)
            terminal_view = task.to_snapshot()
            self._admit()
            snapshot = self._snapshot()

        logger.info(f"Upload task {task.id} finished with status: {terminal_view.status.value}")
        # The future is resolved before any listener sees the terminal state.
        if done is not None and not done.done():
            done.set_result(terminal_view)
        self._events.publish(snapshot)

    def _report_progress(self, task_id: str, progress: int) -> None:
        with self._lock:
            task = self._active.get(task_id)
            if task is None or not task.report_progress(progress):
                return
            snapshot = self._snapshot()
        self._events.publish(snapshot)

    # ------------------------------------------------------------------
    # Retry and clear
    # ------------------------------------------------------------------

    def retry_failed(self) -> List[str]:
        """
        Re-queue every failed task at the tail of the FIFO.

        Error and progress are reset; the original payload is reused. A call
        with no failed tasks changes nothing and notifies nobody.

        Returns:
            Ids of the tasks that were re-queued, in re-queue order

        Raises:
            SchedulerClosedError: If the scheduler has been shut down
        """
        with self._lock:
            if self._closed:
                raise SchedulerClosedError("Upload scheduler is shut down")
            failed = [task for task in self._terminal.values() if task.status is TaskStatus.FAILED]
            if not failed:
                return []
            for task in failed:
                del self._terminal[task.id]
                task.requeue()
                self._pending.append(task)
                self._futures[task.id] = Future()
            logger.info(f"Retrying {len(failed)} failed upload task(s)")
            self._admit()
            snapshot = self._snapshot()
        self._events.publish(snapshot)
        return [task.id for task in failed]

    def clear_completed(self) -> int:
        """
        Forget every task in a terminal state.

        Pending and active tasks are untouched. Idempotent: a call that finds
        nothing to remove does not notify listeners.

        Returns:
            Number of tasks removed
        """
        with self._lock:
            removed = list(self._terminal)
            if not removed:
                return 0
            self._terminal.clear()
            for task_id in removed:
                self._futures.pop(task_id, None)
            snapshot = self._snapshot()
        logger.debug(f"Cleared {len(removed)} finished upload task(s)")
        self._events.publish(snapshot)
        return len(removed)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _find(self, task_id: str) -> UploadTask | None:
        task = self._active.get(task_id) or self._terminal.get(task_id)
        if task is not None:
            return task
        return next((t for t in self._pending if t.id == task_id), None)

    def _all_tasks(self) -> List[UploadTask]:
        return [*self._active.values(), *self._pending, *self._terminal.values()]

    @staticmethod
    def _count(tasks: List[UploadTask]) -> QueueStats:
        counts = Counter(task.status.value for task in tasks)
        return QueueStats(total=len(tasks), **counts)

    def _snapshot(self) -> QueueSnapshot:
        """Build a versioned snapshot. Caller holds the lock."""
        self._version += 1
        tasks = self._all_tasks()
        return QueueSnapshot(
            version=self._version,
            tasks=[task.to_snapshot() for task in tasks],
            stats=self._count(tasks),
        )

    def get_task(self, task_id: str) -> Optional[TaskSnapshot]:
        """
        Look up a task by id.

        Returns:
            The task's current snapshot, or None if the id is unknown or cleared
        """
        with self._lock:
            task = self._find(task_id)
            return task.to_snapshot() if task else None

    def list_tasks(self) -> List[TaskSnapshot]:
        """All known tasks: active first, then pending in FIFO order, then finished."""
        with self._lock:
            return [task.to_snapshot() for task in self._all_tasks()]

    def get_stats(self) -> QueueStats:
        with self._lock:
            return self._count(self._all_tasks())

    def snapshot(self) -> QueueSnapshot:
        """The same view listeners receive, built on demand."""
        with self._lock:
            return self._snapshot()

    def are_tasks_completed(self, task_ids: Iterable[str]) -> bool:
        """
        Check whether every given task has reached a terminal state.

        Both ``completed`` and ``failed`` count as finished. An id that does
        not resolve to a known task (never enqueued, or already cleared)
        counts as not finished. An empty list is trivially finished.
        """
        task_ids = list(task_ids)
        with self._lock:
            statuses = {task_id: self._find(task_id) for task_id in task_ids}
        finished = [task_id for task_id, task in statuses.items() if task is not None and task.is_terminal]
        missing = [task_id for task_id, task in statuses.items() if task is None]
        if missing:
            logger.debug(f"are_tasks_completed: unknown task ids {missing}")
        logger.debug(f"are_tasks_completed: {len(finished)}/{len(statuses)} finished")
        return len(finished) == len(statuses)

    def completion(self, task_id: str) -> Optional[Future]:
        """
        Future for the current attempt of a task.

        The future resolves with the task's terminal snapshot (``completed``
        or ``failed``). A retry starts a new attempt with a new future.

        Returns:
            The future, or None if the task id is unknown or cleared
        """
        with self._lock:
            return self._futures.get(task_id)

    def wait_for_tasks(self, task_ids: Iterable[str], timeout: float = 600.0, poll_interval: float = 0.5) -> bool:
        """
        Block until every task is finished or the timeout expires.

        Returns:
            True if all tasks finished, False on timeout
        """
        task_ids = list(task_ids)
        deadline = time.monotonic() + timeout
        while True:
            if self.are_tasks_completed(task_ids):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(poll_interval, remaining))

    # ------------------------------------------------------------------
    # Observers and lifecycle
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Unsubscribe:
        """Register a snapshot listener; see EventBus.subscribe."""
        return self._events.subscribe(listener)

    def debug_state(self) -> None:
        """Log the contents of every collection."""
        with self._lock:
            active = [(t.id, t.to_snapshot().progress) for t in self._active.values()]
            pending = [t.id for t in self._pending]
            terminal = [(t.id, t.status.value) for t in self._terminal.values()]
        logger.info(f"Upload queue: {len(active)} active, {len(pending)} pending, {len(terminal)} finished")
        for task_id, progress in active:
            logger.info(f"  active {task_id}: {progress}%")
        for task_id in pending:
            logger.info(f"  pending {task_id}")
        for task_id, status in terminal:
            logger.info(f"  finished {task_id}: {status}")

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop admitting work and release the worker pool.

        With ``wait=True`` in-flight transfers run to completion and reach a
        terminal state before this returns. Pending tasks stay pending.
        """
        with self._lock:
            self._closed = True
            pending = len(self._pending)
        if pending:
            logger.warning(f"Upload scheduler shutting down with {pending} task(s) still pending")
        self._executor.shutdown(wait=wait)
