"""
Background worker pool for fire-and-forget work.

Provides an asyncio-based task queue so that request handlers never wait
on outbound HTTP calls or metering writes. Tasks are tracked through
their lifecycle (PENDING → RUNNING → COMPLETED/FAILED/CANCELLED).

Key features:
- Configurable concurrency (max_workers)
- Bounded queue: submit() never blocks; when the queue is full the task
  is dropped and logged
- Delayed submission for scheduled webhook retries
- Handlers registered per task type by the services that own the work
- Dead letter list for tasks that exhausted their retries
- Graceful shutdown with optional draining

Design:
- Uses asyncio.Queue for work distribution
- Each worker is a long-running coroutine
- Task state is stored in-memory and only while the task is live;
  delayed tasks that have not fired are lost on restart (the webhook
  retry sweep picks those up)
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class TaskStatus(StrEnum):
    """Task lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskType(StrEnum):
    """Known background task types."""
    WEBHOOK_DISPATCH = "webhook_dispatch"
    WEBHOOK_DELIVERY = "webhook_delivery"
    WEBHOOK_RETRY = "webhook_retry"
    API_KEY_USAGE = "api_key_usage"
    API_KEY_TOUCH = "api_key_touch"


@dataclass
class Task:
    """Represents a background task with full lifecycle tracking."""
    type: TaskType
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    payload: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    retry_count: int = 0
    max_retries: int = 0


TaskHandler = Callable[[dict[str, Any]], Awaitable[None]]


class BackgroundWorkerPool:
    """
    Asyncio-based background task processor with concurrency control.

    Example usage:
        pool = BackgroundWorkerPool(max_workers=4, queue_size=1000)
        pool.register_handler(TaskType.WEBHOOK_DELIVERY, deliver)
        await pool.start()

        pool.submit(TaskType.WEBHOOK_DELIVERY, {"webhook_id": "..."})
        pool.submit(TaskType.WEBHOOK_RETRY, {...}, delay_seconds=120)

        await pool.shutdown()
    """

    def __init__(
        self,
        *,
        max_workers: int = 4,
        queue_size: int = 1000,
        max_retries: int = 0,
        dead_letter_size: int = 100,
    ) -> None:
        """
        Initialize the worker pool.

        Args:
            max_workers: Maximum number of concurrent worker coroutines
            queue_size: Queue capacity; submissions beyond it are dropped
            max_retries: Default number of re-runs for a task whose handler raised
            dead_letter_size: Number of exhausted tasks kept for inspection
        """
        self._max_workers = max_workers
        self._max_retries = max_retries
        self._queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=queue_size)
        self._handlers: dict[TaskType, TaskHandler] = {}
        self._tasks: dict[str, Task] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._dead_letter: deque[Task] = deque(maxlen=dead_letter_size)
        self._shutdown_event = asyncio.Event()
        self._running = False
        self._completed = 0
        self._failed = 0
        self._dropped = 0

        log.info(
            "worker_pool.initialized",
            max_workers=max_workers,
            queue_size=queue_size,
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def is_running(self) -> bool:
        return self._running

    def register_handler(self, task_type: TaskType, handler: TaskHandler) -> None:
        """Register the coroutine that executes tasks of ``task_type``."""
        self._handlers[task_type] = handler

    async def start(self) -> None:
        """Start worker coroutines."""
        if self._running:
            log.warning("worker_pool.already_running")
            return

        self._running = True
        self._shutdown_event.clear()

        for i in range(self._max_workers):
            worker = asyncio.create_task(self._worker_loop(worker_id=i))
            self._workers.append(worker)

        log.info("worker_pool.started", worker_count=self._max_workers)

    async def drain(self) -> None:
        """Wait until every queued task (and any task it submits) has finished.

        Delayed tasks that have not fired yet are not waited for.
        """
        await self._queue.join()

    async def shutdown(self, *, drain: bool = True) -> None:
        """
        Shutdown the worker pool.

        Args:
            drain: If True, wait for queued tasks to complete.
                   If False, cancel all workers immediately.
        """
        for timer in self._timers.values():
            timer.cancel()
        cancelled_delayed = len(self._timers)
        self._timers.clear()

        if not self._running:
            return

        log.info("worker_pool.shutdown_initiated", drain=drain)

        if drain:
            await self._queue.join()

        self._running = False
        self._shutdown_event.set()

        for worker in self._workers:
            worker.cancel()

        await asyncio.gather(*self._workers, return_exceptions=True)

        self._workers.clear()
        log.info(
            "worker_pool.shutdown_complete",
            tasks_completed=self._completed,
            tasks_failed=self._failed,
            tasks_dropped=self._dropped,
            delayed_cancelled=cancelled_delayed,
            dead_letter_count=len(self._dead_letter),
        )

    # ------------------------------------------------------------------ #
    # Submission
    # ------------------------------------------------------------------ #

    def submit(
        self,
        task_type: TaskType,
        payload: dict[str, Any],
        *,
        delay_seconds: float = 0,
        max_retries: int | None = None,
    ) -> str | None:
        """
        Submit a task without waiting for it.

        Args:
            task_type: Type of task to execute
            payload: Task-specific data (ids and JSON-safe values only)
            delay_seconds: Enqueue the task after this many seconds
            max_retries: Override default max_retries for this task

        Returns:
            Task ID for status tracking, or None if the task was dropped
        """
        task = Task(
            type=task_type,
            payload=payload,
            max_retries=max_retries if max_retries is not None else self._max_retries,
        )

        if delay_seconds > 0:
            loop = asyncio.get_running_loop()
            self._tasks[task.id] = task
            self._timers[task.id] = loop.call_later(
                delay_seconds, self._fire_delayed, task
            )
            log.info(
                "worker_pool.task_scheduled",
                task_id=task.id,
                task_type=task_type,
                delay_seconds=delay_seconds,
            )
            return task.id

        if not self._enqueue(task):
            return None

        log.debug(
            "worker_pool.task_submitted",
            task_id=task.id,
            task_type=task_type,
            queue_size=self._queue.qsize(),
        )
        return task.id

    def _enqueue(self, task: Task) -> bool:
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            self._dropped += 1
            self._tasks.pop(task.id, None)
            log.warning(
                "worker_pool.task_dropped",
                task_id=task.id,
                task_type=task.type,
                reason="queue_full",
            )
            return False
        self._tasks[task.id] = task
        return True

    def _fire_delayed(self, task: Task) -> None:
        self._timers.pop(task.id, None)
        if task.status == TaskStatus.CANCELLED:
            self._tasks.pop(task.id, None)
            return
        self._enqueue(task)

    # ------------------------------------------------------------------ #
    # Inspection
    # ------------------------------------------------------------------ #

    def get_task_status(self, task_id: str) -> Task | None:
        """
        Get current status of a live (queued, scheduled or running) task.

        Returns None if the task is unknown or already finished.
        """
        return self._tasks.get(task_id)

    def cancel_task(self, task_id: str) -> bool:
        """
        Cancel a pending or scheduled task.

        Returns True if task was cancelled, False if not found or already running.
        """
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False

        task.status = TaskStatus.CANCELLED
        task.completed_at = datetime.now(UTC)
        timer = self._timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()
            self._tasks.pop(task_id, None)

        log.info("worker_pool.task_cancelled", task_id=task_id)
        return True

    def get_dead_letter_queue(self) -> list[Task]:
        """Return tasks that exceeded max_retries."""
        return list(self._dead_letter)

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "workers": len(self._workers),
            "queued": self._queue.qsize(),
            "scheduled": len(self._timers),
            "completed": self._completed,
            "failed": self._failed,
            "dropped": self._dropped,
        }

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def _worker_loop(self, worker_id: int) -> None:
        """
        Worker coroutine that processes tasks from the queue.

        Runs until shutdown_event is set.
        """
        log.debug("worker.started", worker_id=worker_id)

        while not self._shutdown_event.is_set():
            try:
                # Wait for task with timeout to check shutdown periodically
                task = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except TimeoutError:
                continue

            try:
                await self._execute_task(task, worker_id=worker_id)
            finally:
                self._queue.task_done()

        log.debug("worker.stopped", worker_id=worker_id)

    async def _execute_task(self, task: Task, worker_id: int) -> None:
        """
        Execute a single task with error handling and retry logic.

        Handler exceptions are logged and never escape the worker.
        """
        if task.status == TaskStatus.CANCELLED:
            self._tasks.pop(task.id, None)
            return

        handler = self._handlers.get(task.type)
        if handler is None:
            log.error("worker.no_handler", task_id=task.id, task_type=task.type)
            task.status = TaskStatus.FAILED
            task.error = f"No handler registered for {task.type}"
            self._finish(task, failed=True)
            return

        task.status = TaskStatus.RUNNING
        task.started_at = datetime.now(UTC)

        try:
            await handler(task.payload)
        except Exception as exc:
            task.error = str(exc)
            task.retry_count += 1

            log.exception(
                "worker.task_failed",
                worker_id=worker_id,
                task_id=task.id,
                task_type=task.type,
                retry_count=task.retry_count,
                max_retries=task.max_retries,
            )

            if task.retry_count <= task.max_retries:
                task.status = TaskStatus.PENDING
                if self._enqueue(task):
                    log.info("worker.task_requeued", task_id=task.id)
                return

            task.status = TaskStatus.FAILED
            self._finish(task, failed=True)
            log.error("worker.task_dead_letter", task_id=task.id, error=task.error)
            return

        task.status = TaskStatus.COMPLETED
        self._finish(task, failed=False)
        log.debug(
            "worker.task_completed",
            worker_id=worker_id,
            task_id=task.id,
            task_type=task.type,
            duration_seconds=(task.completed_at - task.started_at).total_seconds(),
        )

    def _finish(self, task: Task, *, failed: bool) -> None:
        task.completed_at = datetime.now(UTC)
        self._tasks.pop(task.id, None)
        if failed:
            self._failed += 1
            self._dead_letter.append(task)
        else:
            self._completed += 1
