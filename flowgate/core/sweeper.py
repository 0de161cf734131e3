"""Background sweep failing human reviews whose wait window has closed."""

import asyncio
from typing import TYPE_CHECKING, Optional

from .logging import get_logger

if TYPE_CHECKING:
    from .human_review import HumanReviewCoordinator

logger = get_logger(__name__)


class HumanReviewTimeoutSweeper:
    """Periodically asks the coordinator to expire overdue reviews.

    Expiry is a conditional status transition, so a sweep racing a resume
    either fails the execution or leaves it alone; never both.
    """

    def __init__(self, coordinator: 'HumanReviewCoordinator', interval_seconds: float = 60.0):
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="human-review-timeout-sweeper")
        logger.info(f"Human review timeout sweep started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Human review timeout sweep stopped")

    async def sweep_once(self) -> int:
        return await self.coordinator.sweep_timeouts()

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Human review timeout sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)
