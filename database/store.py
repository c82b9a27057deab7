"""
SqlTrackingStore — Portable SQL queries for PostgreSQL and SQLite.

Regrade request locations come from ``submission_regrade_requests``, a table
owned by the grading application. It is read with a plain text query and is
not part of this package's metadata.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from sqlalchemy import delete, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import TrackingPersistenceError
from database.models import DeadLetterRow, DiscordChannelRow, DiscordMessageRow, DiscordRoleRow
from database.session import close_db, get_session
from database.store_base import BaseTrackingStore
from models.schemas import DeadLetterRecord, TrackedChannel, TrackedMessage, TrackedRole

logger = structlog.get_logger()

_REGRADE_LOCATION_SQL = text(
    "SELECT assignment_id, submission_id FROM submission_regrade_requests WHERE id = :id"
)


class SqlTrackingStore(BaseTrackingStore):
    """Tracking store backed by any SQLAlchemy-supported database."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._factory = session_factory

    def _session(self):
        return get_session(self._factory)

    async def close(self) -> None:
        """Dispose the shared engine (also used by the pgmq queue client)."""
        await close_db()

    # ── Messages ───────────────────────────────────────────

    async def record_message(self, message: TrackedMessage) -> None:
        try:
            async with self._session() as db:
                db.add(DiscordMessageRow(**message.model_dump()))
        except SQLAlchemyError as e:
            raise TrackingPersistenceError(f"Failed to track message: {e}", table="discord_messages") from e

    async def find_message(self, discord_message_id: str, discord_channel_id: str) -> Optional[TrackedMessage]:
        try:
            async with self._session() as db:
                stmt = (
                    select(DiscordMessageRow)
                    .where(DiscordMessageRow.discord_message_id == discord_message_id)
                    .where(DiscordMessageRow.discord_channel_id == discord_channel_id)
                    .limit(1)
                )
                row = (await db.execute(stmt)).scalar_one_or_none()
                return TrackedMessage(**row.to_dict()) if row else None
        except SQLAlchemyError as e:
            raise TrackingPersistenceError(f"Failed to look up message: {e}", table="discord_messages") from e

    # ── Channels ───────────────────────────────────────────

    async def record_channel(self, channel: TrackedChannel) -> None:
        try:
            async with self._session() as db:
                db.add(DiscordChannelRow(**channel.model_dump()))
        except SQLAlchemyError as e:
            raise TrackingPersistenceError(f"Failed to track channel: {e}", table="discord_channels") from e

    async def delete_channel(self, class_id: int, discord_channel_id: str) -> int:
        try:
            async with self._session() as db:
                result = await db.execute(
                    delete(DiscordChannelRow)
                    .where(DiscordChannelRow.class_id == class_id)
                    .where(DiscordChannelRow.discord_channel_id == discord_channel_id)
                )
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise TrackingPersistenceError(f"Failed to untrack channel: {e}", table="discord_channels") from e

    # ── Roles ──────────────────────────────────────────────

    async def record_role(self, role: TrackedRole) -> None:
        try:
            async with self._session() as db:
                db.add(DiscordRoleRow(**role.model_dump()))
        except SQLAlchemyError as e:
            raise TrackingPersistenceError(f"Failed to track role: {e}", table="discord_roles") from e

    async def delete_role(self, class_id: int, discord_role_id: str) -> int:
        try:
            async with self._session() as db:
                result = await db.execute(
                    delete(DiscordRoleRow)
                    .where(DiscordRoleRow.class_id == class_id)
                    .where(DiscordRoleRow.discord_role_id == discord_role_id)
                )
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise TrackingPersistenceError(f"Failed to untrack role: {e}", table="discord_roles") from e

    # ── Dead letters ───────────────────────────────────────

    async def record_dead_letter(self, record: DeadLetterRecord) -> None:
        try:
            async with self._session() as db:
                db.add(DeadLetterRow(**record.model_dump()))
        except SQLAlchemyError as e:
            raise TrackingPersistenceError(
                f"Failed to record dead letter: {e}", table="discord_async_worker_dlq_messages",
            ) from e

    async def list_dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        async with self._session() as db:
            stmt = select(DeadLetterRow).order_by(DeadLetterRow.created_at.desc(), DeadLetterRow.id.desc()).limit(limit)
            return [row.to_dict() for row in (await db.execute(stmt)).scalars()]

    # ── Course resources ───────────────────────────────────

    async def get_regrade_request_location(self, regrade_request_id: int) -> Optional[dict[str, int]]:
        try:
            async with self._session() as db:
                row = (await db.execute(_REGRADE_LOCATION_SQL, {"id": regrade_request_id})).first()
        except SQLAlchemyError as e:
            raise TrackingPersistenceError(
                f"Failed to look up regrade request: {e}", table="submission_regrade_requests",
            ) from e
        if row is None:
            return None
        return {"assignment_id": row.assignment_id, "submission_id": row.submission_id}
