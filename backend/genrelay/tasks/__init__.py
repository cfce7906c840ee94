"""Background task execution.

Generation jobs run in-process on the API server's event loop; see
``genrelay.tasks.manager`` for the registry and lifecycle.
"""

from functools import lru_cache

from genrelay.config import get_settings
from genrelay.tasks.manager import Job, TaskManager, TaskStatus, TaskType


@lru_cache
def get_task_manager() -> TaskManager:
    """Get the process-wide TaskManager singleton."""
    settings = get_settings()
    return TaskManager(
        retention_seconds=settings.TASK_RETENTION_SECONDS,
        cleanup_interval=settings.TASK_CLEANUP_INTERVAL,
    )


__all__ = ["Job", "TaskManager", "TaskStatus", "TaskType", "get_task_manager"]
