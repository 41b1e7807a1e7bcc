"""Rate-limited per-user delivery of outbound chat messages."""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional

from .models import QueuedMessage, SendResult

logger = logging.getLogger(__name__)

SendCallable = Callable[[int, str, Optional[str]], Awaitable[SendResult]]


class DeliveryQueue:
    """
    Per-user FIFO of outbound messages with retry and backoff.

    Key behaviour:
    - One drain loop per user at a time; users never block each other
    - Fixed delay between consecutive messages to the same user
    - Rate-limit responses wait at least the minimum backoff and do not
      consume the retry budget
    - Other failures are retried at the front of the queue until the budget
      runs out; blocked recipients are dropped immediately
    - Failures resolve the message's future to False and never raise
    """

    def __init__(self, send: SendCallable, config: Optional[dict] = None):
        """
        Initialize the delivery queue.

        Args:
            send: Transport coroutine taking (user_id, text, parse_mode)
            config: Optional config dict with a delivery section
        """
        self._send = send

        config = config or {}
        delivery_config = config.get("delivery", {})
        self.inter_message_delay = delivery_config.get("inter_message_delay_seconds", 2.0)
        self.rate_limit_min_backoff = delivery_config.get("rate_limit_min_backoff_seconds", 15.0)
        self.retry_delay = delivery_config.get("retry_delay_seconds", 2.0)
        self.max_retries = delivery_config.get("max_retries", 3)

        self._queues: Dict[int, Deque[QueuedMessage]] = {}
        self._draining: set[int] = set()
        self._drain_tasks: Dict[int, asyncio.Task] = {}
        self._stopped = False

    def enqueue(self, user_id: int, text: str, parse_mode: Optional[str] = None) -> asyncio.Future:
        """
        Queue a message for a user and make sure a drain loop is running.

        Returns:
            Future resolving to True once delivered, False if dropped
        """
        future = asyncio.get_running_loop().create_future()
        if self._stopped:
            future.set_result(False)
            return future

        message = QueuedMessage(
            user_id=user_id,
            text=text,
            retries=self.max_retries,
            parse_mode=parse_mode,
            future=future,
        )
        self._queues.setdefault(user_id, deque()).append(message)
        self._ensure_draining(user_id)
        return future

    def _ensure_draining(self, user_id: int):
        if user_id in self._draining:
            return
        self._draining.add(user_id)
        self._drain_tasks[user_id] = asyncio.create_task(self._drain(user_id))

    async def _drain(self, user_id: int):
        """Deliver queued messages for one user until the queue is empty."""
        queue = self._queues[user_id]
        message: Optional[QueuedMessage] = None
        try:
            while queue:
                message = queue.popleft()
                result = await self._attempt(message)

                if result.ok:
                    _resolve(message, True)
                    if queue:
                        await asyncio.sleep(self.inter_message_delay)
                    continue

                if result.rate_limited:
                    wait = max(self.rate_limit_min_backoff, result.retry_after or 0)
                    logger.warning(f"Rate limited sending to {user_id}, waiting {wait:.0f}s before retry")
                    await asyncio.sleep(wait)
                    queue.appendleft(message)
                    continue

                if result.blocked:
                    logger.warning(f"User {user_id} blocked the bot, dropping message")
                    _resolve(message, False)
                    continue

                if message.retries > 0:
                    logger.warning(
                        f"Message send to {user_id} failed ({result.error}), "
                        f"retrying ({message.retries} attempts left)"
                    )
                    await asyncio.sleep(self.retry_delay)
                    message.retries -= 1
                    queue.appendleft(message)
                    continue

                logger.error(f"Failed to send message to {user_id} after all retries: {result.error}")
                _resolve(message, False)
        except asyncio.CancelledError:
            # Popped message may be mid-backoff and not back in the queue yet
            if message is not None:
                _resolve(message, False)
            raise
        finally:
            self._draining.discard(user_id)
            self._drain_tasks.pop(user_id, None)

    async def _attempt(self, message: QueuedMessage) -> SendResult:
        try:
            return await self._send(message.user_id, message.text, message.parse_mode)
        except Exception as e:
            # Transports are expected to return SendResult; treat a raise as a transient failure
            logger.error(f"Transport raised while sending to {message.user_id}: {e}")
            return SendResult(ok=False, error=str(e))

    async def stop(self):
        """Cancel drain loops and resolve everything still queued as failed."""
        self._stopped = True
        tasks = list(self._drain_tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        for queue in self._queues.values():
            while queue:
                _resolve(queue.popleft(), False)
        logger.info("Delivery queue stopped")


def _resolve(message: QueuedMessage, delivered: bool):
    if message.future and not message.future.done():
        message.future.set_result(delivered)
