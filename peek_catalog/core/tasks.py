"""Tracked background tasks.

Unhiding an entity schedules a full exclusion recompute that finishes after
the request has returned. Those runs go through TaskManager so a failure ends
up in the log with the task's name, and shutdown can cancel what is left.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[Exception], Awaitable[None]]


class TaskManager:
    """
    Process-wide registry of background recomputes.

    Usage:
        tasks = TaskManager.get_instance()
        tasks.create_task(exclusions.recompute_for_user(7), name="exclusions:recompute:7")

        # On shutdown
        await tasks.cancel_all()
    """

    _instance: "TaskManager | None" = None

    def __init__(self):
        # The event loop only holds weak refs to tasks; keep them alive until done
        self._live: set[asyncio.Task] = set()
        self._by_name: dict[str, asyncio.Task] = {}

    @classmethod
    def get_instance(cls) -> "TaskManager":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests)."""
        cls._instance = None

    def create_task(
        self,
        coro: Awaitable[Any],
        name: str | None = None,
        on_error: ErrorCallback | None = None,
    ) -> asyncio.Task:
        """
        Run a coroutine in the background.

        Args:
            coro: The coroutine to run
            name: Label for logs; also the key for get_task()/wait_for_task()
            on_error: Optional async callback invoked with the exception

        Returns:
            The asyncio.Task. A failure is logged, then re-raised inside the
            task, so anyone awaiting it still sees the exception.
        """
        label = name or "unnamed"
        task = asyncio.create_task(self._supervise(coro, label, on_error), name=name)
        self._live.add(task)
        task.add_done_callback(self._forget)
        if name:
            self._by_name[name] = task
        return task

    async def _supervise(self, coro: Awaitable[Any], label: str, on_error: ErrorCallback | None) -> Any:
        logger.debug(f"Background task started: {label}")
        try:
            result = await coro
        except asyncio.CancelledError:
            logger.info(f"Background task cancelled: {label}")
            raise
        except Exception as e:
            logger.error(f"Background task failed: {label} - {type(e).__name__}: {e}")
            if on_error is not None:
                try:
                    await on_error(e)
                except Exception as callback_error:
                    logger.error(f"on_error callback for {label} failed: {callback_error}")
            raise
        logger.debug(f"Background task finished: {label}")
        return result

    def _forget(self, task: asyncio.Task) -> None:
        self._live.discard(task)
        name = task.get_name()
        # A newer task may have taken the name since this one started
        if self._by_name.get(name) is task:
            del self._by_name[name]
        # Mark the exception as retrieved; _supervise already logged it
        if not task.cancelled():
            task.exception()

    def get_task(self, name: str) -> asyncio.Task | None:
        """The named task, or None once it has finished."""
        task = self._by_name.get(name)
        if task is not None and task.done():
            del self._by_name[name]
            return None
        return task

    def get_running_tasks(self) -> list[asyncio.Task]:
        return [t for t in self._live if not t.done()]

    async def cancel_all(self, timeout: float = 5.0) -> dict:
        """Cancel every running task, waiting up to `timeout` seconds."""
        running = self.get_running_tasks()
        if not running:
            return {"cancelled": 0, "timed_out": 0}

        logger.info(f"Cancelling {len(running)} background tasks")
        for task in running:
            task.cancel()

        done, pending = await asyncio.wait(running, timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} background tasks still running after {timeout}s")
        return {"cancelled": len(done), "timed_out": len(pending)}

    async def wait_for_task(self, name: str, timeout: float | None = None) -> Any | None:
        """Await a named task; None when nothing by that name is running."""
        task = self.get_task(name)
        if task is None:
            return None
        if timeout:
            return await asyncio.wait_for(task, timeout=timeout)
        return await task
