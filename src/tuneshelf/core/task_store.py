"""In-memory store for tracking sync task progress and cancellation."""

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from pydantic import BaseModel, field_serializer


class TaskProgress(BaseModel):
    """Progress of one sync run."""

    task_id: str
    task_type: str  # 'sync', 'import'
    status: str  # 'running', 'completed', 'failed', 'cancelled'
    progress: float  # 0.0 to 1.0
    current: int
    total: int
    message: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    cancel_requested: bool = False
    result: Optional[dict] = None

    @field_serializer("started_at", "completed_at")
    def serialize_datetime(self, dt: Optional[datetime], _info) -> Optional[str]:
        return dt.isoformat() if dt else None


class TaskStore:
    """Thread-safe registry of running and finished sync tasks.

    The watcher thread and the event loop may both touch a task, so every
    access goes through a lock. Use ``TaskStore.get_global()`` for the process
    wide instance or instantiate ``TaskStore()`` for isolated state (tests).
    """

    _global: Optional["TaskStore"] = None

    def __init__(self) -> None:
        self._tasks: Dict[str, TaskProgress] = {}
        self._lock = threading.Lock()

    @classmethod
    def get_global(cls) -> "TaskStore":
        if cls._global is None:
            cls._global = cls()
        return cls._global

    def create_task(self, task_id: str, task_type: str, total: int = 0) -> TaskProgress:
        """Register a new running task."""
        with self._lock:
            task = TaskProgress(
                task_id=task_id,
                task_type=task_type,
                status="running",
                progress=0.0,
                current=0,
                total=total,
                message="Starting...",
                started_at=datetime.now(timezone.utc),
            )
            self._tasks[task_id] = task
            return task

    def update_progress(self, task_id: str, current: int, message: str) -> None:
        with self._lock:
            if task := self._tasks.get(task_id):
                task.current = current
                if task.total > 0:
                    task.progress = min(1.0, current / task.total)
                else:
                    # Discovery is lazy, so the total is often unknown
                    task.progress = min(0.99, current / (current + 100)) if current > 0 else 0.0
                task.message = message

    def update_total(self, task_id: str, total: int, message: Optional[str] = None) -> None:
        with self._lock:
            if task := self._tasks.get(task_id):
                task.total = total
                if message:
                    task.message = message
                task.progress = task.current / task.total if task.total > 0 else 0.0

    def get_task(self, task_id: str) -> Optional[TaskProgress]:
        with self._lock:
            return self._tasks.get(task_id)

    def complete_task(
        self,
        task_id: str,
        success: bool = True,
        error: Optional[str] = None,
        result: Optional[dict] = None,
    ) -> None:
        """Mark a task as completed or failed, attaching the final counts."""
        with self._lock:
            if task := self._tasks.get(task_id):
                task.status = "completed" if success else "failed"
                task.completed_at = datetime.now(timezone.utc)
                task.error = error
                task.result = result
                task.progress = 1.0 if success else task.progress
                task.message = "Completed successfully" if success else f"Failed: {error}"

    def cancel_task(self, task_id: str) -> bool:
        """Request cancellation; the run stops at its next item checkpoint."""
        with self._lock:
            if task := self._tasks.get(task_id):
                if task.status == "running":
                    task.cancel_requested = True
                    task.message = "Cancellation requested..."
                    return True
        return False

    def is_cancelled(self, task_id: str) -> bool:
        with self._lock:
            if task := self._tasks.get(task_id):
                return task.cancel_requested
        return False

    def mark_cancelled(self, task_id: str, result: Optional[dict] = None) -> None:
        """Called by the run itself once it has stopped."""
        with self._lock:
            if task := self._tasks.get(task_id):
                task.status = "cancelled"
                task.completed_at = datetime.now(timezone.utc)
                task.result = result
                task.message = "Cancelled"

    def cleanup_old_tasks(self, hours: int = 1) -> None:
        """Remove finished tasks older than ``hours``."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        with self._lock:
            stale = [
                tid
                for tid, task in self._tasks.items()
                if task.completed_at and task.completed_at < cutoff
            ]
            for tid in stale:
                del self._tasks[tid]
