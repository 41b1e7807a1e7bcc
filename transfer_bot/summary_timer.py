"""Periodic rolling summaries while a transfer is running."""

import asyncio
import logging
from typing import Callable, Dict, Optional

from .models import ErrorCounters, Session

logger = logging.getLogger(__name__)


def format_summary(errors: ErrorCounters) -> str:
    """Rolling status line sent while downloads continue."""
    message = "⏳ Processing... Downloads continuing in background."
    if errors.total > 0:
        message += (
            f"\n📊 Status: {errors.total} auto-retries "
            f"({errors.file_expired} file refs, {errors.timeout} timeouts)"
        )
    return message


class SummaryTimers:
    """One periodic summary task per user, started when a transfer begins."""

    def __init__(self, enqueue: Callable[..., object], config: Optional[dict] = None):
        """
        Args:
            enqueue: DeliveryQueue.enqueue-compatible callable (user_id, text)
            config: Optional config dict with a progress section
        """
        self._enqueue = enqueue
        config = config or {}
        self.interval = config.get("progress", {}).get("summary_interval_seconds", 60)
        self._tasks: Dict[int, asyncio.Task] = {}

    def is_running(self, user_id: int) -> bool:
        task = self._tasks.get(user_id)
        return task is not None and not task.done()

    def start(self, session: Session) -> bool:
        """Start the timer for a session. Returns False if one is already running."""
        if self.is_running(session.user_id):
            return False
        baseline = session.error_counters.copy()
        self._tasks[session.user_id] = asyncio.create_task(self._run(session, baseline))
        logger.info(f"Summary timer started for user {session.user_id}")
        return True

    def stop(self, user_id: int):
        task = self._tasks.pop(user_id, None)
        if task and not task.done():
            task.cancel()
            logger.info(f"Summary timer stopped for user {user_id}")

    def stop_all(self):
        for user_id in list(self._tasks):
            self.stop(user_id)

    async def _run(self, session: Session, baseline: ErrorCounters):
        while True:
            await asyncio.sleep(self.interval)
            try:
                self._enqueue(session.user_id, format_summary(session.error_counters.since(baseline)))
            except Exception as e:
                logger.error(f"Error queueing summary for user {session.user_id}: {e}")
