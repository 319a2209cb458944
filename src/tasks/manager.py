from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Set, Union

from common.backend import BackendClient, BackendError, TaskNotFound

from .encryption import EncryptionService
from .models import ActiveTask, SearchData, SearchResponse, SearchResult, TaskStatus, TaskStatusResponse
from .registry import TaskRegistry


logger = logging.getLogger(__name__)


class TaskManager:
    """
    Submits search tasks and drives each one to a terminal state by polling.

    Lifecycle per task
    - submit: POST, register as `pending`, start that task's poll loop.
    - poll: every `poll_interval` seconds, one status request at a time per
      task. 404 removes the task silently; any other backend error marks it
      `failed` and stops its loop (no per-tick retry).
    - completed/failed/cancelled: the loop stops and the task is removed from
      the registry after `grace_delay` seconds.
    - cancel: stops future polling at once; a request already in flight is
      left to finish and its result is discarded by the registry.

    All methods must run on the event loop that owns the registry.
    """

    def __init__(
        self,
        backend: BackendClient,
        registry: TaskRegistry,
        encryption: Optional[EncryptionService] = None,
        *,
        poll_interval: float = 2.0,
        grace_delay: float = 2.0,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._encryption = encryption or EncryptionService()
        self._poll_interval = poll_interval
        self._grace_delay = grace_delay
        self._timers: Dict[str, asyncio.Task] = {}
        self._loops: Set[asyncio.Task] = set()
        self._in_flight: Set[str] = set()
        self._removals: Dict[str, asyncio.TimerHandle] = {}

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    def is_polling(self, task_id: str) -> bool:
        timer = self._timers.get(task_id)
        return timer is not None and not timer.done()

    # --------------- Public API ---------------
    async def submit(self, query: str, group_id: str, **extra: Any) -> str:
        task_id = await self._backend.submit_search(query, group_id, **extra)
        self._registry.add(ActiveTask(id=task_id, query=query, group_id=group_id))
        self._start_polling(task_id)
        logger.info("Submitted search task %s", task_id)
        return task_id

    async def poll_now(self, task_id: str) -> Optional[ActiveTask]:
        """Run one extra status check now; skipped while a check is in flight."""
        if task_id not in self._in_flight:
            if not await self._tick(task_id):
                self._stop_timer(task_id)
        return self._registry.get(task_id)

    def cancel(self, task_id: str) -> bool:
        """Cancel a pending or processing task; returns False if it was already finished."""
        task = self._registry.get(task_id)
        if task is None or task.status.is_terminal:
            return False
        if not self._registry.update_status(task_id, status=TaskStatus.CANCELLED):
            return False
        self._stop_timer(task_id)
        self._schedule_removal(task_id)
        logger.info("Cancelled search task %s", task_id)
        return True

    async def restore_pending(self) -> List[str]:
        """
        Re-attach polling for tasks the backend still runs for this user.

        Ids already tracked are left alone; terminal summaries are ignored.
        Returns the ids that are being polled afterwards.
        """
        attached: List[str] = []
        for summary in await self._backend.pending_searches():
            if summary.status.is_terminal:
                continue
            existing = self._registry.get(summary.id)
            if existing is None:
                self._registry.add(_task_from_summary(summary))
            elif existing.status.is_terminal:
                continue
            self._start_polling(summary.id)
            attached.append(summary.id)
        if attached:
            logger.info("Restored %d pending search task(s)", len(attached))
        return attached

    async def persist(
        self,
        task: Union[str, ActiveTask],
        response: Optional[SearchResponse] = None,
    ) -> Optional[SearchResult]:
        """
        Encrypt `{query, response}` of a completed task and save it.

        Independent of polling: it never touches task status and may be
        retried by the caller. Pass `response` when the task has already been
        removed from the registry or was tracked elsewhere.
        """
        if isinstance(task, str):
            found = self._registry.get(task)
            if found is None:
                raise KeyError(f"Unknown task {task}")
            task = found
        if response is None:
            if task.status != TaskStatus.COMPLETED or task.response is None:
                raise ValueError(f"Task {task.id} has no completed response to persist")
            response = task.response
        return await self.save(SearchData(query=task.query, response=response), task.group_id)

    async def save(self, data: SearchData, group_id: str = "") -> Optional[SearchResult]:
        payload = await self._encryption.encrypt_search_data(data)
        result = await self._backend.save_search(payload, group_id)
        logger.info("Saved encrypted search to group %r", group_id)
        return result

    async def run_temporary(self, query: str, group_id: str, **extra: Any) -> SearchResult:
        """Run a search the backend does not keep; nothing is tracked."""
        return await self._backend.temporary_search(query, group_id, **extra)

    def clear_finished(self) -> int:
        before = {t.id for t in self._registry.list_active()}
        removed = self._registry.clear_finished()
        for task_id in before - {t.id for t in self._registry.list_active()}:
            self._cancel_removal(task_id)
        return removed

    async def shutdown(self) -> None:
        """Stop every poll loop and pending removal."""
        for handle in self._removals.values():
            handle.cancel()
        self._removals.clear()
        loops = list(self._loops)
        self._timers.clear()
        for loop_task in loops:
            loop_task.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)

    # --------------- Polling ---------------
    def _start_polling(self, task_id: str) -> None:
        if self.is_polling(task_id):
            return
        loop_task = asyncio.create_task(self._poll_loop(task_id), name=f"poll-{task_id}")
        self._timers[task_id] = loop_task
        self._loops.add(loop_task)
        loop_task.add_done_callback(self._loops.discard)

    async def _poll_loop(self, task_id: str) -> None:
        me = asyncio.current_task()
        try:
            while True:
                await asyncio.sleep(self._poll_interval)
                if not await self._tick(task_id):
                    return
        finally:
            if self._timers.get(task_id) is me:
                del self._timers[task_id]

    def _stop_timer(self, task_id: str) -> None:
        timer = self._timers.pop(task_id, None)
        if timer is None or timer.done():
            return
        # An in-flight check finishes on its own and the loop then exits.
        if task_id not in self._in_flight:
            timer.cancel()

    async def _tick(self, task_id: str) -> bool:
        """One status check. Returns True to keep polling, False to stop."""
        if task_id in self._in_flight:
            return True
        task = self._registry.get(task_id)
        if task is None or task.status.is_terminal:
            return False
        self._in_flight.add(task_id)
        try:
            logger.debug("Polling status of task %s", task_id)
            status = await self._backend.search_status(task_id)
        except TaskNotFound:
            current = self._registry.get(task_id)
            if current is not None and not current.status.is_terminal:
                self._registry.remove(task_id)
                logger.info("Task %s no longer exists on the backend", task_id)
            return False
        except BackendError as exc:
            if self._registry.update_status(task_id, status=TaskStatus.FAILED, error=str(exc)):
                self._schedule_removal(task_id)
                logger.warning("Polling task %s failed: %s", task_id, exc)
            return False
        finally:
            self._in_flight.discard(task_id)
        return self._apply(task_id, status)

    def _apply(self, task_id: str, status: TaskStatusResponse) -> bool:
        current = self._registry.get(task_id)
        if current is None or current.status.is_terminal:
            # Late answer for a task that was cancelled or removed meanwhile.
            return False
        if status.status == TaskStatus.PENDING:
            return True
        if status.status == TaskStatus.PROCESSING:
            self._registry.update_status(task_id, status=TaskStatus.PROCESSING)
            return True

        changes: Dict[str, Any] = {"status": status.status}
        if status.status == TaskStatus.COMPLETED:
            changes["response"] = status.response
        elif status.status == TaskStatus.FAILED:
            changes["error"] = status.error_message or "Search failed"
        if self._registry.update_status(task_id, **changes):
            self._schedule_removal(task_id)
            logger.info("Task %s finished as %s", task_id, status.status.value)
        return False

    # --------------- Grace removal ---------------
    def _schedule_removal(self, task_id: str) -> None:
        self._cancel_removal(task_id)
        loop = asyncio.get_running_loop()
        self._removals[task_id] = loop.call_later(self._grace_delay, self._remove_finished, task_id)

    def _cancel_removal(self, task_id: str) -> None:
        handle = self._removals.pop(task_id, None)
        if handle is not None:
            handle.cancel()

    def _remove_finished(self, task_id: str) -> None:
        self._removals.pop(task_id, None)
        task = self._registry.get(task_id)
        if task is not None and task.status.is_terminal:
            self._registry.remove(task_id)


def _task_from_summary(summary: TaskStatusResponse) -> ActiveTask:
    started = summary.started_at or datetime.now(UTC)
    return ActiveTask(
        id=summary.id,
        query=summary.query,
        group_id=summary.group_id or "",
        status=summary.status,
        started_at=started,
        created_at=started,
    )


__all__ = ["TaskManager"]
