"""Bounded concurrency for walker runs."""

import asyncio
from typing import Awaitable, Callable, Set

from .exceptions import WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)


class ExecutionScheduler:
    """Runs walker coroutines as tasks, at most ``max_concurrent_executions`` at once.

    Runs beyond the ceiling are accepted and wait for a free slot.
    """

    def __init__(self, max_concurrent_executions: int = 10):
        if max_concurrent_executions < 1:
            raise ValueError("max_concurrent_executions must be at least 1")
        self.max_concurrent_executions = max_concurrent_executions
        self._semaphore = asyncio.Semaphore(max_concurrent_executions)
        self._tasks: Set[asyncio.Task] = set()
        self._accepting = True
        self._running = 0
        self._peak_running = 0

    @property
    def active_count(self) -> int:
        """Runs submitted and not finished, including queued ones."""
        return len(self._tasks)

    @property
    def running_count(self) -> int:
        return self._running

    @property
    def peak_running(self) -> int:
        """Highest number of runs that held a slot at the same time."""
        return self._peak_running

    def submit(self, name: str, run: Callable[[], Awaitable[None]]) -> asyncio.Task:
        """
        Schedule ``run`` once a slot is free.

        Raises:
            WorkflowEngineError: If the scheduler is shutting down
        """
        if not self._accepting:
            raise WorkflowEngineError("Scheduler is shutting down; no new runs are accepted")

        async def guarded():
            async with self._semaphore:
                self._running += 1
                self._peak_running = max(self._peak_running, self._running)
                try:
                    await run()
                finally:
                    self._running -= 1

        task = asyncio.create_task(guarded(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Run {task.get_name()} was cancelled")
        elif task.exception() is not None:
            logger.error(f"Run {task.get_name()} crashed: {task.exception()}", exc_info=task.exception())

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop accepting runs and wait up to ``timeout`` seconds for in-flight ones."""
        self._accepting = False
        pending = list(self._tasks)
        if not pending:
            return
        logger.info(f"Waiting for {len(pending)} in-flight runs")
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning(f"{len(still_running)} runs still in flight after {timeout}s; cancelling")
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
