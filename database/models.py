"""
SQLAlchemy ORM models — tracking tables and the dead-letter table.

Supports: PostgreSQL, SQLite.

The tracking tables tie Discord objects back to the course resources they
belong to, so later updates (message edits, channel or role deletes) can
find them. Column names match the tables the rest of the platform reads.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import BigInteger, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# SQLite only autoincrements INTEGER PRIMARY KEY
_Id = BigInteger().with_variant(Integer, "sqlite")


# ──────────────────────────────────────────────────────────────
#  Tracking
# ──────────────────────────────────────────────────────────────

class DiscordMessageRow(Base):
    __tablename__ = "discord_messages"

    id: Mapped[int] = mapped_column(_Id, primary_key=True, autoincrement=True)
    class_id: Mapped[int] = mapped_column(Integer, nullable=False)
    discord_message_id: Mapped[str] = mapped_column(String(64), nullable=False)
    discord_channel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_discord_messages_lookup", "discord_message_id", "discord_channel_id"),
        Index("ix_discord_messages_resource", "resource_type", "resource_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "class_id": self.class_id,
            "discord_message_id": self.discord_message_id,
            "discord_channel_id": self.discord_channel_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
        }


class DiscordChannelRow(Base):
    __tablename__ = "discord_channels"

    id: Mapped[int] = mapped_column(_Id, primary_key=True, autoincrement=True)
    class_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    discord_channel_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    channel_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "class_id": self.class_id,
            "discord_channel_id": self.discord_channel_id,
            "channel_type": self.channel_type,
            "resource_id": self.resource_id,
        }


class DiscordRoleRow(Base):
    __tablename__ = "discord_roles"

    id: Mapped[int] = mapped_column(_Id, primary_key=True, autoincrement=True)
    class_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    discord_role_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role_type: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "class_id": self.class_id,
            "discord_role_id": self.discord_role_id,
            "role_type": self.role_type,
        }


# ──────────────────────────────────────────────────────────────
#  Dead letters
# ──────────────────────────────────────────────────────────────

class DeadLetterRow(Base):
    __tablename__ = "discord_async_worker_dlq_messages"

    id: Mapped[int] = mapped_column(_Id, primary_key=True, autoincrement=True)
    original_msg_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    method: Mapped[str] = mapped_column(String(64), nullable=False)
    envelope: Mapped[Any] = mapped_column(JSON, nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_type: Mapped[str] = mapped_column(String(128), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error_context: Mapped[Any] = mapped_column(JSON, default=dict)
    class_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    debug_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    log_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_msg_id": self.original_msg_id,
            "method": self.method,
            "envelope": self.envelope,
            "error_message": self.error_message,
            "error_type": self.error_type,
            "retry_count": self.retry_count,
            "last_error_context": self.last_error_context or {},
            "class_id": self.class_id,
            "debug_id": self.debug_id,
            "log_id": self.log_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
