"""Unit tests for ProgressPublisher and SummaryTimers."""

import asyncio
from unittest.mock import MagicMock

import pytest

from transfer_bot.models import ErrorCounters, Session
from transfer_bot.progress import ProgressPublisher
from transfer_bot.summary_timer import SummaryTimers, format_summary


class TestProgressPublisher:

    def test_update_replaces_snapshot(self, fast_config):
        publisher = ProgressPublisher(active_count=lambda: 3, config=fast_config)
        before = publisher.snapshot

        after = publisher.update("downloading", "Downloading: a.mp4...", 40, 100)

        assert publisher.snapshot is after
        assert after is not before
        assert before.status == "idle"
        assert after.active_users == 3
        assert after.completed == 40

    @pytest.mark.asyncio
    async def test_idle_reset_when_no_one_active(self, fast_config):
        publisher = ProgressPublisher(active_count=lambda: 0, config=fast_config)
        publisher.update("completed", "All tasks completed successfully", 100)

        publisher.schedule_idle_reset()
        await asyncio.sleep(0.1)

        assert publisher.snapshot.status == "idle"
        assert publisher.snapshot.completed == 0

    @pytest.mark.asyncio
    async def test_idle_reset_skipped_while_active(self, fast_config):
        publisher = ProgressPublisher(active_count=lambda: 1, config=fast_config)
        publisher.update("completed", "All tasks completed successfully", 100)

        publisher.schedule_idle_reset()
        await asyncio.sleep(0.1)

        assert publisher.snapshot.status == "completed"

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reset(self, fast_config):
        publisher = ProgressPublisher(config=fast_config)
        publisher.update("completed", "done", 100)

        publisher.schedule_idle_reset()
        publisher.stop()
        await asyncio.sleep(0.1)

        assert publisher.snapshot.status == "completed"


class TestFormatSummary:

    def test_without_errors(self):
        assert format_summary(ErrorCounters()) == "⏳ Processing... Downloads continuing in background."

    def test_with_errors(self):
        text = format_summary(ErrorCounters(total=3, file_expired=2, timeout=1))

        assert text.endswith("📊 Status: 3 auto-retries (2 file refs, 1 timeouts)")


class TestSummaryTimers:

    @pytest.mark.asyncio
    async def test_emits_periodically_until_stopped(self, fast_config):
        enqueue = MagicMock()
        timers = SummaryTimers(enqueue=enqueue, config=fast_config)
        session = Session(user_id=9)

        assert timers.start(session) is True
        await asyncio.sleep(0.13)
        timers.stop(9)
        count = enqueue.call_count
        await asyncio.sleep(0.1)

        assert count >= 2
        assert enqueue.call_count == count
        assert enqueue.call_args.args[0] == 9
        assert not timers.is_running(9)

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, fast_config):
        timers = SummaryTimers(enqueue=MagicMock(), config=fast_config)
        session = Session(user_id=9)

        assert timers.start(session) is True
        assert timers.start(session) is False
        timers.stop_all()

    @pytest.mark.asyncio
    async def test_reports_errors_since_start(self, fast_config):
        enqueue = MagicMock()
        timers = SummaryTimers(enqueue=enqueue, config=fast_config)
        session = Session(user_id=9)
        session.error_counters.record("timeout")

        timers.start(session)
        session.error_counters.record("file_expired")
        await asyncio.sleep(0.08)
        timers.stop(9)

        assert "1 auto-retries (1 file refs, 0 timeouts)" in enqueue.call_args.args[1]

    def test_stop_unknown_user_is_noop(self):
        SummaryTimers(enqueue=MagicMock()).stop(123)
