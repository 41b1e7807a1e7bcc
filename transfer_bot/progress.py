"""Process-wide progress snapshot for external monitoring."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .models import ProgressSnapshot

logger = logging.getLogger(__name__)


class ProgressPublisher:
    """
    Owns the single progress snapshot.

    Writers run on the event loop; the status server only reads `snapshot`.
    Every update replaces the snapshot wholesale.
    """

    def __init__(self, active_count: Optional[Callable[[], int]] = None, config: Optional[dict] = None):
        config = config or {}
        self.idle_reset_delay = config.get("progress", {}).get("idle_reset_delay_seconds", 30)
        self._active_count = active_count or (lambda: 0)
        self._snapshot = ProgressSnapshot()
        self._reset_task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> ProgressSnapshot:
        return self._snapshot

    def update(self, status: str, task: str, completed: int = 0, total: int = 100) -> ProgressSnapshot:
        self._snapshot = ProgressSnapshot(
            status=status,
            task=task,
            completed=completed,
            total=total,
            active_users=self._active_count(),
            last_update=datetime.now(),
        )
        logger.info(f"Progress update: {status} - {task} ({completed}/{total})")
        return self._snapshot

    def reset(self):
        self.update("idle", "Waiting for user commands", 0, 100)

    def schedule_idle_reset(self):
        """Reset to idle after a delay, unless some session is active by then."""
        if self._reset_task and not self._reset_task.done():
            self._reset_task.cancel()
        self._reset_task = asyncio.create_task(self._idle_reset_after_delay())

    async def _idle_reset_after_delay(self):
        await asyncio.sleep(self.idle_reset_delay)
        if self._active_count() == 0:
            self.reset()

    def stop(self):
        if self._reset_task and not self._reset_task.done():
            self._reset_task.cancel()
