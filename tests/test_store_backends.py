"""
Tests for the tracking store backends.

Covers:
  - InMemoryTrackingStore
  - SqlTrackingStore (via SQLite for test portability)
  - Store factory
  - Async URL mapping
"""
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from config.settings import DatabaseConfig
from core.errors import TrackingPersistenceError
from database.session import _to_async_url, init_db
from database.store import SqlTrackingStore
from database.store_factory import create_store, get_store
from database.store_memory import InMemoryTrackingStore
from models.schemas import DeadLetterRecord, TrackedChannel, TrackedMessage, TrackedRole


def _dead_letter(msg_id: int, method: str = "send_message") -> DeadLetterRecord:
    return DeadLetterRecord(
        original_msg_id=msg_id,
        method=method,
        envelope={"method": method, "retry_count": 5},
        error_message="Discord rate limit: retry after 1000ms",
        error_type="RateLimitError",
        retry_count=5,
        last_error_context={"error_type": "RateLimitError"},
        class_id=3,
    )


# ──────────────────────────────────────────────────────────────
#  Shared behaviour, run against both backends
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryTrackingStore()
        return

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tracking.db'}")
    await init_db(engine)
    yield SqlTrackingStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


class TestTrackingStore:
    @pytest.mark.asyncio
    async def test_message_round_trip(self, any_store):
        tracked = TrackedMessage(
            class_id=1, discord_message_id="m1", discord_channel_id="c1",
            resource_type="help_request", resource_id=10,
        )
        await any_store.record_message(tracked)

        assert await any_store.find_message("m1", "c1") == tracked
        assert await any_store.find_message("m1", "other") is None

    @pytest.mark.asyncio
    async def test_delete_channel_scoped_to_class(self, any_store):
        await any_store.record_channel(TrackedChannel(class_id=1, discord_channel_id="c1", channel_type="general"))
        await any_store.record_channel(TrackedChannel(class_id=2, discord_channel_id="c1", channel_type="general"))

        assert await any_store.delete_channel(1, "c1") == 1
        assert await any_store.delete_channel(1, "c1") == 0

    @pytest.mark.asyncio
    async def test_delete_role(self, any_store):
        await any_store.record_role(TrackedRole(class_id=1, discord_role_id="r1", role_type="student"))
        assert await any_store.delete_role(1, "r1") == 1

    @pytest.mark.asyncio
    async def test_dead_letters_newest_first_with_limit(self, any_store):
        for msg_id in (1, 2, 3):
            await any_store.record_dead_letter(_dead_letter(msg_id))

        listed = await any_store.list_dead_letters(limit=2)

        assert [d["original_msg_id"] for d in listed] == [3, 2]
        assert listed[0]["envelope"] == {"method": "send_message", "retry_count": 5}
        assert listed[0]["error_type"] == "RateLimitError"


# ──────────────────────────────────────────────────────────────
#  Regrade request lookups
# ──────────────────────────────────────────────────────────────

class TestRegradeLookup:
    @pytest.mark.asyncio
    async def test_memory_lookup(self):
        store = InMemoryTrackingStore()
        store.add_regrade_request(5, assignment_id=1, submission_id=2)
        assert await store.get_regrade_request_location(5) == {"assignment_id": 1, "submission_id": 2}
        assert await store.get_regrade_request_location(6) is None

    @pytest.mark.asyncio
    async def test_sql_lookup(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'grading.db'}")
        async with engine.begin() as conn:
            await conn.execute(text(
                "CREATE TABLE submission_regrade_requests "
                "(id INTEGER PRIMARY KEY, assignment_id INTEGER, submission_id INTEGER)"
            ))
            await conn.execute(text("INSERT INTO submission_regrade_requests VALUES (5, 11, 99)"))
        store = SqlTrackingStore(async_sessionmaker(engine, expire_on_commit=False))

        assert await store.get_regrade_request_location(5) == {"assignment_id": 11, "submission_id": 99}
        assert await store.get_regrade_request_location(6) is None
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_sql_lookup_missing_table_raises_tracking_error(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        store = SqlTrackingStore(async_sessionmaker(engine, expire_on_commit=False))

        with pytest.raises(TrackingPersistenceError) as exc:
            await store.get_regrade_request_location(5)
        assert exc.value.table == "submission_regrade_requests"
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_sql_write_without_tables_raises_tracking_error(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        store = SqlTrackingStore(async_sessionmaker(engine, expire_on_commit=False))

        with pytest.raises(TrackingPersistenceError):
            await store.record_role(TrackedRole(class_id=1, discord_role_id="r", role_type="t"))
        await engine.dispose()


# ──────────────────────────────────────────────────────────────
#  Factory & URLs
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_memory_default(self):
        assert isinstance(create_store(DatabaseConfig()), InMemoryTrackingStore)

    def test_sql_backend(self):
        assert isinstance(create_store(DatabaseConfig(store_backend="sql")), SqlTrackingStore)

    def test_get_store_returns_singleton(self):
        store = create_store(DatabaseConfig())
        assert get_store() is store

    @pytest.mark.asyncio
    async def test_sql_store_close_disposes_engine(self, monkeypatch):
        dispose = AsyncMock()
        monkeypatch.setattr("database.store.close_db", dispose)

        await SqlTrackingStore().close()

        dispose.assert_awaited_once()


class TestAsyncUrl:
    def test_postgres(self):
        assert _to_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
        assert _to_async_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_sqlite(self):
        assert _to_async_url("sqlite:///./test.db") == "sqlite+aiosqlite:///./test.db"

    def test_already_async(self):
        assert _to_async_url("postgresql+asyncpg://h/db") == "postgresql+asyncpg://h/db"
