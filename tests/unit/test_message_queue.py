"""Unit tests for DeliveryQueue."""

import asyncio

import pytest

from transfer_bot.message_queue import DeliveryQueue
from transfer_bot.models import SendResult


class TestOrdering:

    @pytest.mark.asyncio
    async def test_messages_delivered_in_order_with_gap(self, fake_transport, fast_config):
        queue = DeliveryQueue(send=fake_transport, config=fast_config)

        futures = [queue.enqueue(1, f"msg {i}") for i in range(3)]
        results = await asyncio.gather(*futures)

        assert results == [True, True, True]
        assert fake_transport.delivered_texts(1) == ["msg 0", "msg 1", "msg 2"]
        times = [t for _, _, t in fake_transport.delivered]
        gaps = [b - a for a, b in zip(times, times[1:])]
        # Allow a little slack for timer granularity
        assert all(gap >= 0.045 for gap in gaps)

    @pytest.mark.asyncio
    async def test_users_drain_independently(self, scripted_transport, fast_config):
        transport = scripted_transport(results=[SendResult(ok=False, rate_limited=True, retry_after=0.2)])
        queue = DeliveryQueue(send=transport, config=fast_config)

        slow = queue.enqueue(1, "to user 1")
        fast = queue.enqueue(2, "to user 2")

        assert await asyncio.wait_for(fast, timeout=0.15) is True
        assert not slow.done()
        assert await slow is True

    @pytest.mark.asyncio
    async def test_single_drain_loop_per_user(self, fake_transport, fast_config):
        queue = DeliveryQueue(send=fake_transport, config=fast_config)

        queue.enqueue(1, "a")
        queue.enqueue(1, "b")

        assert 1 in queue._draining
        assert len(queue._drain_tasks) == 1
        await asyncio.sleep(0.2)
        assert 1 not in queue._draining
        assert not queue._queues[1]


class TestFailures:

    @pytest.mark.asyncio
    async def test_rate_limit_retries_head_before_next(self, scripted_transport, fast_config):
        transport = scripted_transport(results=[SendResult(ok=False, rate_limited=True, retry_after=0.1)])
        queue = DeliveryQueue(send=transport, config=fast_config)

        first = queue.enqueue(7, "M1")
        second = queue.enqueue(7, "M2")
        assert await asyncio.gather(first, second) == [True, True]

        assert [text for _, text, _ in transport.attempts] == ["M1", "M1", "M2"]
        first_try, retry = transport.attempts[0][2], transport.attempts[1][2]
        # retry_after below the minimum backoff is raised to the minimum
        assert retry - first_try >= 0.19

    @pytest.mark.asyncio
    async def test_rate_limit_does_not_use_retry_budget(self, scripted_transport, fast_config):
        fast_config["delivery"]["max_retries"] = 0
        fast_config["delivery"]["rate_limit_min_backoff_seconds"] = 0.01
        transport = scripted_transport(results=[
            SendResult(ok=False, rate_limited=True, retry_after=0.01),
            SendResult(ok=False, rate_limited=True, retry_after=0.01),
        ])
        queue = DeliveryQueue(send=transport, config=fast_config)

        assert await queue.enqueue(1, "hello") is True
        assert len(transport.attempts) == 3

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted_drops_message(self, scripted_transport, fast_config):
        failures = [SendResult(ok=False, error="boom")] * 4
        transport = scripted_transport(results=failures)
        queue = DeliveryQueue(send=transport, config=fast_config)

        dropped = queue.enqueue(1, "doomed")
        after = queue.enqueue(1, "next")

        assert await dropped is False
        assert await after is True
        # One initial attempt plus three retries
        assert [text for _, text, _ in transport.attempts].count("doomed") == 4
        assert transport.delivered_texts(1) == ["next"]

    @pytest.mark.asyncio
    async def test_blocked_recipient_dropped_without_retry(self, scripted_transport, fast_config):
        transport = scripted_transport(results=[SendResult(ok=False, blocked=True, error="Forbidden")])
        queue = DeliveryQueue(send=transport, config=fast_config)

        assert await queue.enqueue(1, "hi") is False
        assert len(transport.attempts) == 1

    @pytest.mark.asyncio
    async def test_transport_exception_treated_as_failure(self, fast_config):
        calls = []

        async def flaky(user_id, text, parse_mode=None):
            calls.append(text)
            if len(calls) == 1:
                raise RuntimeError("socket closed")
            return SendResult(ok=True)

        queue = DeliveryQueue(send=flaky, config=fast_config)

        assert await queue.enqueue(1, "x") is True
        assert calls == ["x", "x"]

    @pytest.mark.asyncio
    async def test_parse_mode_passed_to_transport(self, fast_config):
        seen = []

        async def transport(user_id, text, parse_mode=None):
            seen.append(parse_mode)
            return SendResult(ok=True)

        queue = DeliveryQueue(send=transport, config=fast_config)
        await queue.enqueue(1, "*bold*", "Markdown")

        assert seen == ["Markdown"]


class TestStop:

    @pytest.mark.asyncio
    async def test_stop_resolves_pending_as_failed(self, scripted_transport, fast_config):
        fast_config["delivery"]["rate_limit_min_backoff_seconds"] = 10
        transport = scripted_transport(results=[SendResult(ok=False, rate_limited=True, retry_after=10)])
        queue = DeliveryQueue(send=transport, config=fast_config)

        first = queue.enqueue(1, "a")
        second = queue.enqueue(1, "b")
        await asyncio.sleep(0.02)

        await queue.stop()

        assert first.result() is False
        assert second.result() is False
        assert 1 not in queue._draining

    @pytest.mark.asyncio
    async def test_enqueue_after_stop_fails_fast(self, fake_transport, fast_config):
        queue = DeliveryQueue(send=fake_transport, config=fast_config)
        await queue.stop()

        future = queue.enqueue(1, "late")

        assert future.done()
        assert future.result() is False
        assert fake_transport.attempts == []
