"""Session registry and lifecycle management."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Iterator, Optional

from .models import BotState, Session

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Maps user ids to sessions.

    Sessions are created on first contact. A background sweep evicts
    sessions that are idle, own no process, and have been quiet for longer
    than the configured TTL; nothing else ever removes a session.
    """

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        sessions_config = self.config.get("sessions", {})
        self.ttl_seconds = sessions_config.get("ttl_seconds", 24 * 3600)
        self.sweep_interval = sessions_config.get("sweep_interval_seconds", 600)

        self.sessions: dict[int, Session] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def get_or_create(self, user_id: int, chat_id: Optional[int] = None) -> Session:
        """Return the user's session, creating an idle one on first contact."""
        session = self.sessions.get(user_id)
        if session is None:
            session = Session(user_id=user_id, chat_id=chat_id)
            self.sessions[user_id] = session
            logger.info(f"Created session for user {user_id}")
        elif chat_id is not None:
            session.chat_id = chat_id
        return session

    def get_session(self, user_id: int) -> Optional[Session]:
        return self.sessions.get(user_id)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self.sessions.values()))

    def __len__(self) -> int:
        return len(self.sessions)

    def active_count(self) -> int:
        """Number of sessions somewhere in a workflow (not idle)."""
        return sum(1 for s in self.sessions.values() if s.state != BotState.IDLE)

    def evict_stale(self, now: Optional[datetime] = None) -> list[int]:
        """Drop idle, process-less sessions older than the TTL. Returns evicted user ids."""
        now = now or datetime.now()
        cutoff = now - timedelta(seconds=self.ttl_seconds)
        evicted = [
            user_id
            for user_id, session in self.sessions.items()
            if session.state == BotState.IDLE
            and session.process is None
            and session.last_activity < cutoff
        ]
        for user_id in evicted:
            del self.sessions[user_id]
        if evicted:
            logger.info(f"Evicted {len(evicted)} stale session(s)")
        return evicted

    async def start(self):
        """Start the periodic eviction sweep."""
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.evict_stale()
            except Exception as e:
                logger.error(f"Error sweeping sessions: {e}")
