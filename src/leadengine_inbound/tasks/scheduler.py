"""Delayed one-shot task scheduler with idempotent scheduling.

Backends selectable via TASKS_BACKEND env var:
- asyncio (default): runs the handler after the delay on the running loop
- inline: records the task without running it (tests call ``run_pending``)
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context

logger = get_logger(__name__)

TaskHandler = Callable[[dict[str, Any]], Awaitable[None]]


class TaskScheduler:
    """One-shot delayed tasks, idempotent by task_id.

    A task_id is accepted once while the task is pending; after it ran or
    was cancelled the same id can be scheduled again. ``shutdown`` cancels
    everything still pending.
    """

    def __init__(self, backend: str = "asyncio") -> None:
        if backend not in ("asyncio", "inline"):
            raise ValueError(f"Unknown TASKS_BACKEND: {backend}")
        self._backend = backend
        self._pending: dict[str, dict[str, Any]] = {}
        self._handles: dict[str, asyncio.Task[None]] = {}

    @property
    def backend(self) -> str:
        return self._backend

    def schedule(
        self,
        task_id: str,
        handler: TaskHandler,
        payload: dict[str, Any],
        delay_ms: int = 0,
    ) -> bool:
        """Schedule ``handler(payload)`` to run once after ``delay_ms``.

        Args:
            task_id: Unique identifier for idempotency.
            handler: Coroutine function receiving the payload.
            payload: Task data (must not contain PII).
            delay_ms: Delay before execution.

        Returns:
            True if the task was scheduled.
            False if a task with the same id is already pending.
        """
        if task_id in self._pending:
            return False

        self._pending[task_id] = {
            "task_id": task_id,
            "handler": handler,
            "payload": payload,
            "delay_ms": delay_ms,
        }

        if self._backend == "asyncio":
            loop = asyncio.get_running_loop()
            self._handles[task_id] = loop.create_task(self._run_later(task_id, delay_ms))

        logger.debug(
            "task scheduled",
            extra={"extra_fields": safe_log_context(taskId=task_id, delayMs=delay_ms)},
        )
        return True

    async def _run_later(self, task_id: str, delay_ms: int) -> None:
        try:
            await asyncio.sleep(max(delay_ms, 0) / 1000)
        except asyncio.CancelledError:
            return
        self._handles.pop(task_id, None)
        await self._execute(task_id)

    async def _execute(self, task_id: str) -> None:
        task = self._pending.pop(task_id, None)
        if task is None:
            return
        try:
            await task["handler"](task["payload"])
        except Exception:
            logger.exception(
                "scheduled task failed",
                extra={"extra_fields": safe_log_context(taskId=task_id)},
            )

    def cancel(self, task_id: str) -> bool:
        """Cancel a pending task. Returns False when nothing was pending."""
        task = self._pending.pop(task_id, None)
        handle = self._handles.pop(task_id, None)
        if handle is not None:
            handle.cancel()
        return task is not None

    def shutdown(self) -> None:
        """Cancel every pending task."""
        for task_id in list(self._pending):
            self.cancel(task_id)

    def is_pending(self, task_id: str) -> bool:
        return task_id in self._pending

    def get_scheduled_tasks(self) -> list[dict[str, Any]]:
        """Get list of pending tasks (useful for testing).

        Returns:
            List of task dicts with task_id, handler, payload, delay_ms.
        """
        return list(self._pending.values())

    async def run_pending(self) -> int:
        """Run every pending task now, in scheduling order.

        Returns:
            Number of tasks executed.
        """
        executed = 0
        for task_id in list(self._pending):
            handle = self._handles.pop(task_id, None)
            if handle is not None:
                handle.cancel()
            await self._execute(task_id)
            executed += 1
        return executed

    def clear(self) -> None:
        """Drop pending tasks without running them (useful for testing)."""
        self.shutdown()
        self._pending.clear()
