from __future__ import annotations
"""In-memory async task manager.

Tasks run as background asyncio tasks on the server's event loop and are
polled by clients via task_id. The registry lives in process memory only:
a restart loses every task. Finished tasks are evicted after a retention
window so memory stays bounded.
"""

import asyncio
import copy
import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, fields
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Executor = Callable[[], Awaitable[Any]]

START_PROGRESS = 10


class TaskType(str, enum.Enum):
    IMAGE_GENERATION = "image_generation"
    IMAGE_COMPOSITION = "image_composition"
    VIDEO_GENERATION = "video_generation"


class TaskStatus(str, enum.Enum):
    """Task lifecycle: PENDING → PROCESSING → COMPLETED | FAILED."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class Job:
    """One tracked unit of generation work."""

    task_id: str
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    created_at: int = 0
    updated_at: int = 0
    completed_at: int | None = None
    result: Any = None
    error: str | None = None
    params: Any = None

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["type"] = self.type.value
        data["status"] = self.status.value
        return copy.deepcopy(data)


class TaskManager:
    """Owns the task registry and runs each task's executor exactly once.

    All registry access goes through ``_lock``; callers only ever receive
    deep copies, never the live Job objects.
    """

    def __init__(
        self,
        *,
        retention_seconds: int = 2 * 60 * 60,
        cleanup_interval: float = 10 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.retention_seconds = retention_seconds
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._tasks: dict[str, Job] = {}
        self._lock = threading.Lock()
        self._running: dict[asyncio.Task, str] = {}
        self._cleanup_task: asyncio.Task | None = None

    def _now(self) -> int:
        return int(self._clock())

    # --- Public API ---

    def create(self, type: TaskType, executor: Executor, params: Any = None) -> Job:
        """Register a task and start its executor in the background.

        Must be called from inside a running event loop. Returns immediately
        with a snapshot of the PENDING task.
        """
        loop = asyncio.get_running_loop()
        now = self._now()
        job = Job(
            task_id=str(uuid.uuid4()),
            type=TaskType(type),
            created_at=now,
            updated_at=now,
            params=copy.deepcopy(params),
        )
        with self._lock:
            self._tasks[job.task_id] = job
            snapshot = copy.deepcopy(job)

        logger.info("Task created: %s (%s)", job.task_id, job.type.value)

        handle = loop.create_task(self._execute(job.task_id, executor))
        self._running[handle] = job.task_id
        handle.add_done_callback(lambda h: self._running.pop(h, None))
        return snapshot

    def get(self, task_id: str) -> Job | None:
        with self._lock:
            job = self._tasks.get(task_id)
            return copy.deepcopy(job) if job else None

    def list(self, status: TaskStatus | str | None = None) -> list[Job]:
        """All tasks, newest first, optionally filtered by status."""
        wanted = TaskStatus(status) if status else None
        with self._lock:
            jobs = [j for j in self._tasks.values() if wanted is None or j.status is wanted]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return copy.deepcopy(jobs)

    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {s.value: 0 for s in TaskStatus}
            for job in self._tasks.values():
                counts[job.status.value] += 1
            return {"total": len(self._tasks), **counts}

    def report_progress(self, task_id: str, progress: int) -> None:
        """Raise a processing task's progress. Lower values are ignored."""
        progress = max(0, min(int(progress), 99))
        with self._lock:
            job = self._tasks.get(task_id)
            if job is None or job.status is not TaskStatus.PROCESSING:
                return
            if progress > job.progress:
                job.progress = progress
                job.updated_at = self._now()

    def cleanup(self, now: float | None = None) -> int:
        """Evict finished tasks older than the retention window. Returns the count removed."""
        cutoff = (self._clock() if now is None else now) - self.retention_seconds
        with self._lock:
            expired = [
                task_id for task_id, job in self._tasks.items()
                if job.status.is_terminal and job.updated_at < cutoff
            ]
            for task_id in expired:
                del self._tasks[task_id]
            remaining = len(self._tasks)

        if expired:
            logger.info("Task cleanup: removed %d expired tasks, %d remaining", len(expired), remaining)
        return len(expired)

    # --- Lifecycle ---

    def start(self) -> None:
        """Start the periodic cleanup loop on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
            logger.info(
                "TaskManager started (retention=%ds, cleanup every %ds)",
                self.retention_seconds, self.cleanup_interval,
            )

    async def stop(self) -> None:
        """Stop the cleanup loop and cancel in-flight executions."""
        task_ids = list(self._running.values())
        pending = list(self._running)
        if self._cleanup_task is not None:
            pending.append(self._cleanup_task)
            self._cleanup_task = None
        for handle in pending:
            handle.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # Handles cancelled before their first step never ran _execute
        for task_id in task_ids:
            self._transition(
                task_id, TaskStatus.PENDING, TaskStatus.FAILED, error="Task cancelled",
            )
        logger.info("TaskManager stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception:
                logger.exception("Task cleanup sweep failed")

    # --- Execution ---

    def _transition(self, task_id: str, expected: TaskStatus, new: TaskStatus, **changes: Any) -> bool:
        """Compare-and-set a status change. Returns False if the task moved on or vanished."""
        with self._lock:
            job = self._tasks.get(task_id)
            if job is None or job.status is not expected:
                return False
            job.status = new
            for name, value in changes.items():
                setattr(job, name, value)
            job.updated_at = self._now()
            return True

    async def _execute(self, task_id: str, executor: Executor) -> None:
        if not self._transition(
            task_id, TaskStatus.PENDING, TaskStatus.PROCESSING, progress=START_PROGRESS,
        ):
            return

        logger.info("Task started: %s", task_id)
        try:
            result = copy.deepcopy(await executor())
        except asyncio.CancelledError:
            self._transition(
                task_id, TaskStatus.PROCESSING, TaskStatus.FAILED, error="Task cancelled",
            )
            raise
        except Exception as exc:
            error = str(exc) or "Unknown error"
            self._transition(task_id, TaskStatus.PROCESSING, TaskStatus.FAILED, error=error)
            logger.error("Task failed: %s, error: %s", task_id, error)
            return

        finished = self._now()
        self._transition(
            task_id,
            TaskStatus.PROCESSING,
            TaskStatus.COMPLETED,
            progress=100,
            result=result,
            completed_at=finished,
        )
        job = self.get(task_id)
        elapsed = finished - job.created_at if job else 0
        logger.info("Task completed: %s, elapsed: %ds", task_id, elapsed)
