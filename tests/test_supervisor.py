"""
Tests for the Supervisor loop.

Covers:
  - Batch processing, archiving on success
  - Idle and error sleeps
  - One-shot start
  - Stuck-message alerts
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import QueueConfig
from job_queue.consumer import Supervisor
from tests.conftest import make_message


def _stopping_sleep(supervisor_ref: list, recorded: list):
    async def sleep(seconds):
        recorded.append(seconds)
        supervisor_ref[0]._running = False
    return sleep


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_empty_queue_returns_false(self, queue, dispatcher, reporter):
        supervisor = Supervisor(queue, dispatcher, reporter)
        assert await supervisor.process_batch() is False

    @pytest.mark.asyncio
    async def test_successful_messages_are_archived(self, queue, dispatcher, reporter, send_payload):
        ids = [await queue.send("discord_async_calls", send_payload) for _ in range(3)]
        supervisor = Supervisor(queue, dispatcher, reporter)

        assert await supervisor.process_batch() is True

        assert sorted(queue.archived("discord_async_calls")) == ids
        assert supervisor.batches_processed == 1

    @pytest.mark.asyncio
    async def test_reads_at_most_batch_size(self, queue, dispatcher, reporter, send_payload):
        for _ in range(6):
            await queue.send("discord_async_calls", send_payload)
        supervisor = Supervisor(queue, dispatcher, reporter)

        await supervisor.process_batch()

        assert len(queue.archived("discord_async_calls")) == 4

    @pytest.mark.asyncio
    async def test_messages_run_concurrently(self, queue, reporter, send_payload):
        in_flight = 0
        peak = 0

        async def process(message):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return True

        dispatcher = MagicMock()
        dispatcher.process = process
        for _ in range(4):
            await queue.send("discord_async_calls", send_payload)

        await Supervisor(queue, dispatcher, reporter).process_batch()
        assert peak == 4

    @pytest.mark.asyncio
    async def test_one_crash_does_not_affect_siblings(self, queue, reporter, send_payload):
        first = await queue.send("discord_async_calls", send_payload)
        second = await queue.send("discord_async_calls", send_payload)

        async def process(message):
            if message.msg_id == first:
                raise RuntimeError("kaboom")
            return True

        dispatcher = MagicMock()
        dispatcher.process = process

        assert await Supervisor(queue, dispatcher, reporter).process_batch() is True
        assert queue.archived("discord_async_calls") == [second]
        assert str(reporter.exceptions[0][0]) == "kaboom"

    @pytest.mark.asyncio
    async def test_stuck_message_is_reported_and_processed(self, reporter, send_payload):
        queue = MagicMock()
        queue.read = AsyncMock(return_value=[make_message(send_payload, msg_id=77, read_ct=11)])
        queue.archive = AsyncMock(return_value=True)
        dispatcher = MagicMock()
        dispatcher.process = AsyncMock(return_value=True)

        await Supervisor(queue, dispatcher, reporter, QueueConfig(stuck_read_threshold=10)).process_batch()

        assert reporter.messages_at("error") == ["Message 77 has been read 11 times without being archived"]
        dispatcher.process.assert_awaited_once()
        queue.archive.assert_awaited_once_with("discord_async_calls", 77)


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_idle_sleep_after_empty_batch(self, queue, dispatcher, reporter):
        ref, sleeps = [], []
        supervisor = Supervisor(queue, dispatcher, reporter, sleep=_stopping_sleep(ref, sleeps))
        ref.append(supervisor)

        await supervisor.run_forever()

        assert sleeps == [15.0]

    @pytest.mark.asyncio
    async def test_error_sleep_after_read_failure(self, dispatcher, reporter):
        queue = MagicMock()
        queue.read = AsyncMock(side_effect=ConnectionError("pgmq unreachable"))
        ref, sleeps = [], []
        supervisor = Supervisor(queue, dispatcher, reporter, sleep=_stopping_sleep(ref, sleeps))
        ref.append(supervisor)

        await supervisor.run_forever()

        assert sleeps == [5.0]
        assert isinstance(reporter.exceptions[0][0], ConnectionError)

    @pytest.mark.asyncio
    async def test_non_empty_batch_repolls_without_sleep(self, queue, dispatcher, reporter, send_payload):
        await queue.send("discord_async_calls", send_payload)
        ref, sleeps = [], []
        supervisor = Supervisor(queue, dispatcher, reporter, sleep=_stopping_sleep(ref, sleeps))
        ref.append(supervisor)

        await supervisor.run_forever()

        # first pass processed the message, second pass found the queue empty
        assert supervisor.batches_processed == 1
        assert sleeps == [15.0]


class TestStart:
    @pytest.mark.asyncio
    async def test_start_is_one_shot(self, queue, dispatcher, reporter):
        async def sleep(seconds):
            await asyncio.sleep(0)

        supervisor = Supervisor(queue, dispatcher, reporter, sleep=sleep)

        assert supervisor.start() is False
        assert supervisor.start() is True
        assert supervisor.is_running

        await asyncio.sleep(0)
        await supervisor.stop()
        assert not supervisor.is_running
