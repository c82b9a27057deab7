"""
Queue Client — pgmq (Postgres) and in-memory backends.

Queue Topology:
  discord_async_calls       — envelopes waiting to be executed
  discord_async_calls_dlq   — envelopes that exhausted their retries

Semantics (both backends):
  read(queue, vt, n)     — returns up to n visible messages and hides them
                           for vt seconds; read_ct goes up on every read
  archive(queue, msg_id) — removes a message for good (idempotent)
  send(queue, msg, delay)— enqueues a message, visible after delay seconds

A message that is read but never archived becomes visible again once its
visibility timeout expires. That is the only crash-recovery mechanism.
"""
from __future__ import annotations

import json
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import QueueConfig
from models.schemas import QueueMessage

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class QueueClient(ABC):
    """Abstract queue interface."""

    async def connect(self):
        """Establish connection to the queue backend."""

    async def close(self):
        """Gracefully shut down."""

    @abstractmethod
    async def read(self, queue: str, visibility_timeout: int, batch_size: int) -> list[QueueMessage]:
        ...

    @abstractmethod
    async def archive(self, queue: str, msg_id: int) -> bool:
        """Archive a message. Returns False if it was already gone."""
        ...

    @abstractmethod
    async def send(self, queue: str, message: dict[str, Any], delay_seconds: int = 0) -> int:
        """Enqueue a message and return its new msg_id."""
        ...


# ──────────────────────────────────────────────────────────────
#  pgmq Implementation
# ──────────────────────────────────────────────────────────────

_PGMQ_READ = text(
    "SELECT msg_id, read_ct, enqueued_at, vt, message "
    "FROM pgmq.read(:queue_name, :vt, :qty)"
)
_PGMQ_ARCHIVE = text("SELECT pgmq.archive(:queue_name, CAST(:msg_id AS bigint))")
_PGMQ_SEND = text("SELECT pgmq.send(:queue_name, CAST(:message AS jsonb), :delay)")


class PgmqQueueClient(QueueClient):
    """
    Production queue backed by the Postgres pgmq extension.
    Shares the SQLAlchemy engine with the tracking store.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._factory = session_factory

    def _session(self):
        from database.session import get_session
        return get_session(self._factory)

    async def read(self, queue: str, visibility_timeout: int, batch_size: int) -> list[QueueMessage]:
        async with self._session() as db:
            result = await db.execute(
                _PGMQ_READ, {"queue_name": queue, "vt": visibility_timeout, "qty": batch_size},
            )
            rows = result.mappings().all()

        messages = []
        for row in rows:
            payload = row["message"]
            if isinstance(payload, str):
                payload = json.loads(payload)
            messages.append(QueueMessage(
                msg_id=row["msg_id"],
                read_ct=row["read_ct"],
                enqueued_at=row["enqueued_at"],
                vt=row["vt"],
                message=payload,
            ))
        return messages

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        retry=retry_if_exception_type(SQLAlchemyError),
        reraise=True,
    )
    async def archive(self, queue: str, msg_id: int) -> bool:
        async with self._session() as db:
            result = await db.execute(_PGMQ_ARCHIVE, {"queue_name": queue, "msg_id": msg_id})
            return bool(result.scalar())

    async def send(self, queue: str, message: dict[str, Any], delay_seconds: int = 0) -> int:
        async with self._session() as db:
            result = await db.execute(_PGMQ_SEND, {
                "queue_name": queue,
                "message": json.dumps(message),
                "delay": int(delay_seconds),
            })
            msg_id = int(result.scalar())
        logger.debug("queue_message_sent", queue=queue, msg_id=msg_id, delay_s=delay_seconds)
        return msg_id


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation
# ──────────────────────────────────────────────────────────────

@dataclass
class _StoredMessage:
    msg_id: int
    message: dict[str, Any]
    enqueued_at: datetime
    vt: datetime
    read_ct: int = 0


@dataclass
class _MemoryQueue:
    messages: dict[int, _StoredMessage] = field(default_factory=dict)
    archived: list[_StoredMessage] = field(default_factory=list)


class InMemoryQueueClient(QueueClient):
    """
    Development/test queue with pgmq's visibility-timeout semantics.
    Single-process only, no persistence. ``clock`` can be swapped in tests.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self._queues: dict[str, _MemoryQueue] = {}
        self._next_id = 1

    def _get_queue(self, name: str) -> _MemoryQueue:
        if name not in self._queues:
            self._queues[name] = _MemoryQueue()
        return self._queues[name]

    async def read(self, queue: str, visibility_timeout: int, batch_size: int) -> list[QueueMessage]:
        now = self._clock()
        q = self._get_queue(queue)
        visible = sorted(
            (m for m in q.messages.values() if m.vt <= now),
            key=lambda m: m.msg_id,
        )[:batch_size]

        batch = []
        for stored in visible:
            stored.read_ct += 1
            stored.vt = now + timedelta(seconds=visibility_timeout)
            batch.append(QueueMessage(
                msg_id=stored.msg_id,
                read_ct=stored.read_ct,
                vt=stored.vt,
                enqueued_at=stored.enqueued_at,
                message=json.loads(json.dumps(stored.message)),
            ))
        return batch

    async def archive(self, queue: str, msg_id: int) -> bool:
        q = self._get_queue(queue)
        stored = q.messages.pop(msg_id, None)
        if stored is None:
            return False
        q.archived.append(stored)
        return True

    async def send(self, queue: str, message: dict[str, Any], delay_seconds: int = 0) -> int:
        now = self._clock()
        msg_id = self._next_id
        self._next_id += 1
        self._get_queue(queue).messages[msg_id] = _StoredMessage(
            msg_id=msg_id,
            message=json.loads(json.dumps(message)),
            enqueued_at=now,
            vt=now + timedelta(seconds=delay_seconds),
        )
        logger.debug("queue_message_sent", queue=queue, msg_id=msg_id, delay_s=delay_seconds)
        return msg_id

    # ── Inspection helpers (tests, debug tooling) ─────────

    def pending(self, queue: str) -> list[dict[str, Any]]:
        """All unarchived messages, visible or not, with their visibility time."""
        return [
            {"msg_id": m.msg_id, "message": m.message, "vt": m.vt, "read_ct": m.read_ct}
            for m in sorted(self._get_queue(queue).messages.values(), key=lambda m: m.msg_id)
        ]

    def archived(self, queue: str) -> list[int]:
        return [m.msg_id for m in self._get_queue(queue).archived]


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[QueueClient] = None


def create_queue_client(config: QueueConfig = None) -> QueueClient:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = config or QueueConfig()
    if config.backend == "pgmq":
        _instance = PgmqQueueClient()
    else:
        _instance = InMemoryQueueClient()
    logger.info("queue_client_created", backend=config.backend or "memory")
    return _instance


def get_queue_client() -> QueueClient:
    """Return the singleton queue client."""
    global _instance
    if _instance is None:
        _instance = create_queue_client()
    return _instance


def reset_queue_client() -> None:
    global _instance
    _instance = None
