"""
InMemoryTrackingStore — Dict-backed store for development and testing.

All data is lost on process restart. Regrade request locations can be
seeded with ``add_regrade_request`` since the owning table lives elsewhere.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from database.store_base import BaseTrackingStore
from models.schemas import DeadLetterRecord, TrackedChannel, TrackedMessage, TrackedRole

logger = structlog.get_logger()


class InMemoryTrackingStore(BaseTrackingStore):

    def __init__(self):
        self.messages: list[TrackedMessage] = []
        self.channels: list[TrackedChannel] = []
        self.roles: list[TrackedRole] = []
        self.dead_letters: list[DeadLetterRecord] = []
        self._regrade_requests: dict[int, dict[str, int]] = {}  # id → {assignment_id, submission_id}
        logger.info("inmemory_store_initialized")

    # ── Messages ──────────────────────────────────────────

    async def record_message(self, message: TrackedMessage) -> None:
        self.messages.append(message)

    async def find_message(self, discord_message_id: str, discord_channel_id: str) -> Optional[TrackedMessage]:
        for message in self.messages:
            if (message.discord_message_id == discord_message_id
                    and message.discord_channel_id == discord_channel_id):
                return message
        return None

    # ── Channels ──────────────────────────────────────────

    async def record_channel(self, channel: TrackedChannel) -> None:
        self.channels.append(channel)

    async def delete_channel(self, class_id: int, discord_channel_id: str) -> int:
        before = len(self.channels)
        self.channels = [
            c for c in self.channels
            if not (c.class_id == class_id and c.discord_channel_id == discord_channel_id)
        ]
        return before - len(self.channels)

    # ── Roles ─────────────────────────────────────────────

    async def record_role(self, role: TrackedRole) -> None:
        self.roles.append(role)

    async def delete_role(self, class_id: int, discord_role_id: str) -> int:
        before = len(self.roles)
        self.roles = [
            r for r in self.roles
            if not (r.class_id == class_id and r.discord_role_id == discord_role_id)
        ]
        return before - len(self.roles)

    # ── Dead letters ──────────────────────────────────────

    async def record_dead_letter(self, record: DeadLetterRecord) -> None:
        self.dead_letters.append(record)

    async def list_dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        # newest insert first when timestamps tie
        ordered = sorted(reversed(self.dead_letters), key=lambda r: r.created_at, reverse=True)
        return [r.model_dump(mode="json") for r in ordered[:limit]]

    # ── Course resources ──────────────────────────────────

    def add_regrade_request(self, regrade_request_id: int, assignment_id: int, submission_id: int) -> None:
        self._regrade_requests[regrade_request_id] = {
            "assignment_id": assignment_id,
            "submission_id": submission_id,
        }

    async def get_regrade_request_location(self, regrade_request_id: int) -> Optional[dict[str, int]]:
        return self._regrade_requests.get(regrade_request_id)
