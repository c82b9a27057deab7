"""Shared test fixtures for the Discord async worker."""
import random
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import Settings, reset_settings
from core.dispatcher import Dispatcher
from database.store_factory import reset_store
from database.store_memory import InMemoryTrackingStore
from discord_api.client import DiscordClient
from job_queue.dead_letter import DeadLetterManager, FailureHandler
from job_queue.message_queue import InMemoryQueueClient, reset_queue_client
from job_queue.retry import RetryPolicy
from models.schemas import QueueMessage
from observability.reporting import ErrorReporter


class RecordingReporter(ErrorReporter):
    """Keeps every report in memory so tests can assert on them."""

    def __init__(self):
        self.exceptions: list[tuple[BaseException, dict, dict]] = []
        self.messages: list[dict[str, Any]] = []
        self.breadcrumbs: list[str] = []

    def capture_exception(self, error, tags=None, context=None):
        self.exceptions.append((error, tags or {}, context or {}))
        return "evt"

    def capture_message(self, message, level="info", tags=None, context=None):
        self.messages.append({"message": message, "level": level, "tags": tags or {}, "context": context or {}})
        return "evt"

    def add_breadcrumb(self, message, level="info", data=None):
        self.breadcrumbs.append(message)

    def messages_at(self, level: str) -> list[str]:
        return [m["message"] for m in self.messages if m["level"] == level]


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class WallClock:
    """Datetime clock for InMemoryQueueClient that tests can move forward."""

    def __init__(self):
        self.now = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        from datetime import timedelta
        self.now = self.now + timedelta(seconds=seconds)


def make_message(payload: Any, msg_id: int = 10_000, read_ct: int = 1) -> QueueMessage:
    now = datetime.now(timezone.utc)
    return QueueMessage(msg_id=msg_id, read_ct=read_ct, vt=now, enqueued_at=now, message=payload)


@pytest.fixture(autouse=True)
def _reset_singletons():
    yield
    reset_store()
    reset_queue_client()
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def wall_clock() -> WallClock:
    return WallClock()


@pytest.fixture
def queue(wall_clock) -> InMemoryQueueClient:
    return InMemoryQueueClient(clock=wall_clock)


@pytest.fixture
def store() -> InMemoryTrackingStore:
    return InMemoryTrackingStore()


@pytest.fixture
def discord_client():
    client = AsyncMock(spec=DiscordClient)
    client.send_message.return_value = {"id": "msg-1", "channel_id": "chan-1"}
    client.update_message.return_value = {"id": "msg-1", "channel_id": "chan-1"}
    client.create_channel.return_value = {"id": "chan-new", "name": "office-hours"}
    client.create_role.return_value = {"id": "role-new", "name": "Students"}
    client.get_guild_member.return_value = {"user": {"id": "u1", "username": "ada"}, "roles": []}
    client.add_guild_member.return_value = {"user": {"id": "u1", "username": "ada"}}
    client.list_guild_channels.return_value = [{"id": "voice-1", "type": 2}, {"id": "text-1", "type": 0}]
    client.create_channel_invite.return_value = {"code": "abc123", "url": "https://discord.gg/abc123"}
    return client


@pytest.fixture
def limiter():
    limiter = MagicMock()
    limiter.admit = AsyncMock()
    limiter.backend = "local"
    return limiter


@pytest.fixture
def retry_policy(settings) -> RetryPolicy:
    return RetryPolicy(settings.retry, random.Random(7))


@pytest.fixture
def failure_handler(queue, store, reporter, retry_policy, settings) -> FailureHandler:
    dead_letters = DeadLetterManager(queue, store, reporter, settings.queue)
    return FailureHandler(queue, retry_policy, dead_letters, reporter, settings.queue)


@pytest.fixture
def dispatcher(discord_client, limiter, store, failure_handler, reporter) -> Dispatcher:
    return Dispatcher(discord_client, limiter, store, failure_handler, reporter, app_url="")


@pytest.fixture
def send_payload() -> dict:
    return {
        "method": "send_message",
        "class_id": 42,
        "debug_id": "dbg-1",
        "log_id": "log-1",
        "resource_type": "help_request",
        "resource_id": 7,
        "args": {
            "channel_id": "chan-1",
            "content": "New help request",
            "embeds": [{"title": "Help request #7", "description": "Stuck on recursion"}],
        },
    }
