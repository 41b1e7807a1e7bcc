"""Shared pytest fixtures for transfer bot tests."""

import time
from typing import Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from transfer_bot.message_queue import DeliveryQueue
from transfer_bot.models import ProcessHandle, SendResult, Session
from transfer_bot.output_classifier import OutputClassifier
from transfer_bot.process_supervisor import ProcessSupervisor
from transfer_bot.progress import ProgressPublisher
from transfer_bot.session_manager import SessionManager
from transfer_bot.state_machine import SessionStateMachine
from transfer_bot.summary_timer import SummaryTimers


@pytest.fixture
def fast_config() -> dict:
    """Config with delays shrunk so timing behaviour is testable quickly."""
    return {
        "delivery": {
            "inter_message_delay_seconds": 0.05,
            "rate_limit_min_backoff_seconds": 0.2,
            "retry_delay_seconds": 0.05,
            "max_retries": 3,
        },
        "progress": {
            "summary_interval_seconds": 0.05,
            "idle_reset_delay_seconds": 0.05,
        },
        "sessions": {
            "ttl_seconds": 60,
            "sweep_interval_seconds": 0.05,
        },
    }


class FakeTransport:
    """
    Records every send attempt and replays scripted results.

    Results are consumed in order; once exhausted every send succeeds.
    """

    def __init__(self, results: Optional[list[SendResult]] = None):
        self.results = list(results or [])
        self.attempts: list[tuple[int, str, float]] = []
        self.delivered: list[tuple[int, str, float]] = []

    async def __call__(self, user_id: int, text: str, parse_mode: Optional[str] = None) -> SendResult:
        now = time.monotonic()
        self.attempts.append((user_id, text, now))
        result = self.results.pop(0) if self.results else SendResult(ok=True)
        if result.ok:
            self.delivered.append((user_id, text, now))
        return result

    def delivered_texts(self, user_id: Optional[int] = None) -> list[str]:
        return [text for uid, text, _ in self.delivered if user_id is None or uid == user_id]


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def scripted_transport() -> Callable[..., FakeTransport]:
    """Factory for a FakeTransport that replays the given results first."""
    return FakeTransport


@pytest.fixture
def make_handle() -> Callable[[int], ProcessHandle]:
    """Factory for ProcessHandles wrapping a mock asyncio process."""
    def _make(user_id: int = 1) -> ProcessHandle:
        process = MagicMock()
        process.returncode = None
        process.pid = 4242
        return ProcessHandle(user_id=user_id, process=process)
    return _make


@pytest.fixture
def mock_supervisor(make_handle) -> MagicMock:
    """
    Mock ProcessSupervisor that keeps the session handle consistent.

    spawn() attaches a fresh handle, kill() clears it, write() succeeds.
    """
    mock = MagicMock(spec=ProcessSupervisor)

    async def spawn(session: Session) -> ProcessHandle:
        handle = make_handle(session.user_id)
        session.process = handle
        return handle

    def kill(session: Session) -> bool:
        had_process = session.process is not None
        if had_process:
            session.process.killed = True
        session.process = None
        return had_process

    mock.spawn = AsyncMock(side_effect=spawn)
    mock.kill = MagicMock(side_effect=kill)
    mock.write = MagicMock(return_value=True)
    return mock


@pytest.fixture
def mock_queue() -> MagicMock:
    """Mock DeliveryQueue; replies are read back from enqueue calls."""
    return MagicMock(spec=DeliveryQueue)


@pytest.fixture
def mock_timers() -> MagicMock:
    return MagicMock(spec=SummaryTimers)


@pytest.fixture
def machine(mock_supervisor, mock_queue, mock_timers, fast_config) -> SessionStateMachine:
    """State machine with real store/classifier/progress and mocked I/O."""
    session_manager = SessionManager(config=fast_config)
    progress = ProgressPublisher(active_count=session_manager.active_count, config=fast_config)
    return SessionStateMachine(
        session_manager=session_manager,
        supervisor=mock_supervisor,
        delivery_queue=mock_queue,
        classifier=OutputClassifier(),
        progress=progress,
        summary_timers=mock_timers,
    )


@pytest.fixture
def replies(mock_queue) -> Callable[[], list[str]]:
    """Texts passed to DeliveryQueue.enqueue so far, in order."""
    return lambda: [c.args[1] for c in mock_queue.enqueue.call_args_list]
