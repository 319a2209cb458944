from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .models import ActiveTask, TaskStatus


logger = logging.getLogger(__name__)

RegistryListener = Callable[[List[ActiveTask]], None]
_CLEARABLE = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class TaskRegistry:
    """
    In-memory mapping of task id -> ActiveTask with change notification.

    - Status changes must follow `TaskStatus.can_become`; anything else is
      rejected and `update_status` returns False. A terminal task never changes
      again, so a late poll result cannot revive a cancelled task.
    - Listeners receive a snapshot of all active tasks after every change.
      No ordering is guaranteed across tasks.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, ActiveTask] = {}
        self._listeners: List[RegistryListener] = []

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, task_id: str) -> Optional[ActiveTask]:
        return self._tasks.get(task_id)

    def add(self, task: ActiveTask) -> bool:
        """Insert a task; returns False (and changes nothing) if the id is already tracked."""
        if task.id in self._tasks:
            return False
        self._tasks[task.id] = task
        self._notify()
        return True

    def update_status(self, task_id: str, **changes: Any) -> bool:
        """
        Apply a partial update (`status`, `error`, `partial_result`, `response`).

        Returns False when the task is unknown or already terminal, or when the
        requested status would move backwards.
        """
        bad = [k for k in changes if k == "id" or k not in ActiveTask.model_fields]
        if bad:
            raise ValueError(f"Cannot update task fields: {bad}")
        task = self._tasks.get(task_id)
        if task is None or task.status.is_terminal:
            return False
        status = changes.get("status")
        if status is not None:
            status = TaskStatus(status)
            if not task.status.can_become(status):
                logger.debug("Rejected %s -> %s for task %s", task.status.value, status.value, task_id)
                return False
            changes["status"] = status
        self._tasks[task_id] = task.model_copy(update=changes)
        self._notify()
        return True

    def remove(self, task_id: str) -> bool:
        if self._tasks.pop(task_id, None) is None:
            return False
        self._notify()
        return True

    def list_active(self) -> List[ActiveTask]:
        return list(self._tasks.values())

    def list_pending(self) -> List[ActiveTask]:
        """Tasks still waiting on the backend (pending or processing)."""
        return [t for t in self._tasks.values() if not t.status.is_terminal]

    def clear_finished(self) -> int:
        """
        Drop completed and failed tasks at once; returns how many were removed.

        Cancelled tasks are left to their scheduled removal.
        """
        done = [tid for tid, t in self._tasks.items() if t.status in _CLEARABLE]
        for tid in done:
            del self._tasks[tid]
        if done:
            self._notify()
        return len(done)

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        snapshot = self.list_active()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Task registry listener failed")


__all__ = ["TaskRegistry"]
