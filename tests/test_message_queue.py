"""
Tests for the queue clients.

Covers:
  - InMemoryQueueClient visibility timeout, delay, read_ct, archive
  - PgmqQueueClient SQL calls against a fake session
  - Queue factory
"""
import json
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from config.settings import QueueConfig
from job_queue.message_queue import (
    InMemoryQueueClient, PgmqQueueClient, create_queue_client, get_queue_client,
)


# ──────────────────────────────────────────────────────────────
#  InMemoryQueueClient
# ──────────────────────────────────────────────────────────────

class TestInMemoryQueue:
    @pytest.mark.asyncio
    async def test_read_hides_message_until_visibility_timeout(self, queue, wall_clock):
        await queue.send("q", {"method": "send_message"})

        first = await queue.read("q", 60, 4)
        assert [m.read_ct for m in first] == [1]
        assert await queue.read("q", 60, 4) == []

        wall_clock.advance(60)
        again = await queue.read("q", 60, 4)
        assert [(m.msg_id, m.read_ct) for m in again] == [(first[0].msg_id, 2)]

    @pytest.mark.asyncio
    async def test_archived_message_never_reappears(self, queue, wall_clock):
        msg_id = await queue.send("q", {"n": 1})
        await queue.read("q", 60, 4)

        assert await queue.archive("q", msg_id) is True
        assert await queue.archive("q", msg_id) is False

        wall_clock.advance(3600)
        assert await queue.read("q", 60, 4) == []
        assert queue.archived("q") == [msg_id]

    @pytest.mark.asyncio
    async def test_delayed_send(self, queue, wall_clock):
        await queue.send("q", {"n": 1}, delay_seconds=120)

        wall_clock.advance(119)
        assert await queue.read("q", 60, 4) == []
        wall_clock.advance(1)
        assert len(await queue.read("q", 60, 4)) == 1

    @pytest.mark.asyncio
    async def test_batch_size_and_order(self, queue):
        ids = [await queue.send("q", {"n": i}) for i in range(6)]

        batch = await queue.read("q", 60, 4)

        assert [m.msg_id for m in batch] == ids[:4]
        assert [m.message["n"] for m in batch] == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_read_returns_a_copy_of_the_payload(self, queue):
        await queue.send("q", {"args": {"content": "original"}})
        batch = await queue.read("q", 0, 1)
        batch[0].message["args"]["content"] = "mutated"

        assert queue.pending("q")[0]["message"]["args"]["content"] == "original"

    @pytest.mark.asyncio
    async def test_queues_are_independent(self, queue):
        await queue.send("a", {"n": 1})
        assert await queue.read("b", 60, 4) == []


# ──────────────────────────────────────────────────────────────
#  PgmqQueueClient
# ──────────────────────────────────────────────────────────────

class _Result:
    def __init__(self, rows=None, scalar=None):
        self._rows = rows or []
        self._scalar = scalar

    def mappings(self):
        return self

    def all(self):
        return self._rows

    def scalar(self):
        return self._scalar


class _FakeSession:
    def __init__(self, results):
        self.results = results
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, statement, params=None):
        self.calls.append((str(statement), params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def commit(self):
        pass

    async def rollback(self):
        pass


class TestPgmqQueueClient:
    @pytest.mark.asyncio
    async def test_read_decodes_json_payloads(self):
        now = datetime.now(timezone.utc)
        session = _FakeSession([_Result(rows=[{
            "msg_id": 10, "read_ct": 1, "enqueued_at": now, "vt": now,
            "message": json.dumps({"method": "send_message", "args": {"channel_id": "c"}}),
        }])])
        client = PgmqQueueClient(session_factory=lambda: session)

        batch = await client.read("discord_async_calls", 60, 4)

        assert batch[0].msg_id == 10
        assert batch[0].message["method"] == "send_message"
        sql, params = session.calls[0]
        assert "pgmq.read" in sql
        assert params == {"queue_name": "discord_async_calls", "vt": 60, "qty": 4}

    @pytest.mark.asyncio
    async def test_send_serialises_message_and_delay(self):
        session = _FakeSession([_Result(scalar=55)])
        client = PgmqQueueClient(session_factory=lambda: session)

        msg_id = await client.send("discord_async_calls", {"method": "x", "retry_count": 1}, 120)

        assert msg_id == 55
        _, params = session.calls[0]
        assert json.loads(params["message"]) == {"method": "x", "retry_count": 1}
        assert params["delay"] == 120

    @pytest.mark.asyncio
    async def test_archive_retries_transient_database_errors(self):
        error = OperationalError("SELECT pgmq.archive", {}, Exception("connection reset"))
        session = _FakeSession([error, _Result(scalar=True)])
        client = PgmqQueueClient(session_factory=lambda: session)

        assert await client.archive("discord_async_calls", 10) is True
        assert len(session.calls) == 2


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

class TestQueueFactory:
    def test_memory_by_default(self):
        assert isinstance(create_queue_client(QueueConfig()), InMemoryQueueClient)

    def test_pgmq_backend(self):
        assert isinstance(create_queue_client(QueueConfig(backend="pgmq")), PgmqQueueClient)

    def test_singleton(self):
        client = create_queue_client(QueueConfig())
        assert get_queue_client() is client
