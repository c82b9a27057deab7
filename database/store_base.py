"""
Abstract Tracking Store — Interface for all storage backends.

Implementations:
  - SqlTrackingStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryTrackingStore (dict-based, single-process, no persistence)

Every write raises TrackingPersistenceError on failure. Callers decide
whether that failure matters; for tracking rows it never fails the message.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import DeadLetterRecord, TrackedChannel, TrackedMessage, TrackedRole


class BaseTrackingStore(ABC):
    """Interface that all tracking store backends must implement."""

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def record_message(self, message: TrackedMessage) -> None:
        ...

    @abstractmethod
    async def find_message(self, discord_message_id: str, discord_channel_id: str) -> Optional[TrackedMessage]:
        ...

    # ── Channels ──────────────────────────────────────────────

    @abstractmethod
    async def record_channel(self, channel: TrackedChannel) -> None:
        ...

    @abstractmethod
    async def delete_channel(self, class_id: int, discord_channel_id: str) -> int:
        """Remove tracking rows for a channel. Returns the number removed."""
        ...

    # ── Roles ─────────────────────────────────────────────────

    @abstractmethod
    async def record_role(self, role: TrackedRole) -> None:
        ...

    @abstractmethod
    async def delete_role(self, class_id: int, discord_role_id: str) -> int:
        ...

    # ── Dead letters ──────────────────────────────────────────

    @abstractmethod
    async def record_dead_letter(self, record: DeadLetterRecord) -> None:
        ...

    @abstractmethod
    async def list_dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent dead letters first."""
        ...

    # ── Course resources ──────────────────────────────────────

    @abstractmethod
    async def get_regrade_request_location(self, regrade_request_id: int) -> Optional[dict[str, int]]:
        """Return {"assignment_id", "submission_id"} for a regrade request, or None."""
        ...

    async def close(self) -> None:
        pass
