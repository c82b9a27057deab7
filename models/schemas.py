"""
Core data models for the Discord async worker.

Envelopes are immutable pydantic models discriminated by ``method``. A retry
never edits an envelope in place; ``with_retry()`` returns a new one.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from core.errors import InvalidEnvelopeError, UnknownMethodError


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ResourceType(str, Enum):
    HELP_REQUEST = "help_request"
    REGRADE_REQUEST = "regrade_request"


# ──────────────────────────────────────────────────────────────
#  Method arguments
# ──────────────────────────────────────────────────────────────

class _Args(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")


class SendMessageArgs(_Args):
    channel_id: str
    content: Optional[str] = None
    embeds: Optional[list[dict[str, Any]]] = None
    allowed_mentions: Optional[dict[str, Any]] = None


class UpdateMessageArgs(_Args):
    channel_id: str
    message_id: str
    content: Optional[str] = None
    embeds: Optional[list[dict[str, Any]]] = None
    allowed_mentions: Optional[dict[str, Any]] = None


class CreateChannelArgs(_Args):
    guild_id: str
    name: str
    type: int = 0
    parent_id: Optional[str] = None
    topic: Optional[str] = None
    position: Optional[int] = None


class DeleteChannelArgs(_Args):
    channel_id: str


class CreateRoleArgs(_Args):
    guild_id: str
    name: str
    color: Optional[int] = None
    hoist: Optional[bool] = None
    mentionable: Optional[bool] = None
    permissions: Optional[str] = None


class DeleteRoleArgs(_Args):
    guild_id: str
    role_id: str


class AddMemberRoleArgs(_Args):
    guild_id: str
    user_id: str
    role_id: str


class RemoveMemberRoleArgs(_Args):
    guild_id: str
    user_id: str
    role_id: str


class AddGuildMemberArgs(_Args):
    guild_id: str
    user_id: str
    access_token: str
    nick: Optional[str] = None
    roles: Optional[list[str]] = None
    mute: Optional[bool] = None
    deaf: Optional[bool] = None


# ──────────────────────────────────────────────────────────────
#  Envelopes
# ──────────────────────────────────────────────────────────────

class EnvelopeBase(BaseModel):
    """Fields shared by every envelope. Unknown correlation fields are kept."""
    model_config = ConfigDict(frozen=True, extra="allow")

    method: str
    class_id: Optional[int] = None
    debug_id: Optional[str] = None
    log_id: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    resource_type: Optional[str] = None
    resource_id: Optional[int] = None
    channel_type: Optional[str] = None
    role_type: Optional[str] = None

    def with_retry(self) -> "EnvelopeBase":
        """Return a copy with retry_count incremented by one."""
        return self.model_copy(update={"retry_count": self.retry_count + 1})

    def to_payload(self) -> dict[str, Any]:
        """The queue payload: fields as received (explicit nulls included), plus retry updates."""
        payload = self.model_dump(mode="json", exclude_unset=True)
        payload.setdefault("method", self.method)
        return payload

    @property
    def correlation(self) -> dict[str, Any]:
        return {
            "class_id": self.class_id,
            "debug_id": self.debug_id,
            "log_id": self.log_id,
        }


class SendMessageEnvelope(EnvelopeBase):
    method: Literal["send_message"] = "send_message"
    args: SendMessageArgs


class UpdateMessageEnvelope(EnvelopeBase):
    method: Literal["update_message"] = "update_message"
    args: UpdateMessageArgs


class CreateChannelEnvelope(EnvelopeBase):
    method: Literal["create_channel"] = "create_channel"
    args: CreateChannelArgs


class DeleteChannelEnvelope(EnvelopeBase):
    method: Literal["delete_channel"] = "delete_channel"
    args: DeleteChannelArgs


class CreateRoleEnvelope(EnvelopeBase):
    method: Literal["create_role"] = "create_role"
    args: CreateRoleArgs


class DeleteRoleEnvelope(EnvelopeBase):
    method: Literal["delete_role"] = "delete_role"
    args: DeleteRoleArgs


class AddMemberRoleEnvelope(EnvelopeBase):
    method: Literal["add_member_role"] = "add_member_role"
    args: AddMemberRoleArgs


class RemoveMemberRoleEnvelope(EnvelopeBase):
    method: Literal["remove_member_role"] = "remove_member_role"
    args: RemoveMemberRoleArgs


class AddGuildMemberEnvelope(EnvelopeBase):
    method: Literal["add_guild_member"] = "add_guild_member"
    args: AddGuildMemberArgs


class UndecodedEnvelope(EnvelopeBase):
    """
    Payload that could not be decoded into a known envelope.
    Still carries retry_count so it can cycle through retry/dead-letter.
    """
    method: str = "unknown"
    args: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "UndecodedEnvelope":
        data = payload if isinstance(payload, dict) else {"payload": payload}
        try:
            return cls.model_validate(data)
        except ValidationError:
            retry_count = data.get("retry_count", 0)
            if not isinstance(retry_count, int) or retry_count < 0:
                retry_count = 0
            return cls(
                method=str(data.get("method", "unknown")),
                retry_count=retry_count,
                payload=data,
            )


Envelope = Annotated[
    Union[
        SendMessageEnvelope,
        UpdateMessageEnvelope,
        CreateChannelEnvelope,
        DeleteChannelEnvelope,
        CreateRoleEnvelope,
        DeleteRoleEnvelope,
        AddMemberRoleEnvelope,
        RemoveMemberRoleEnvelope,
        AddGuildMemberEnvelope,
    ],
    Field(discriminator="method"),
]

ENVELOPE_TYPES: tuple[type[EnvelopeBase], ...] = (
    SendMessageEnvelope,
    UpdateMessageEnvelope,
    CreateChannelEnvelope,
    DeleteChannelEnvelope,
    CreateRoleEnvelope,
    DeleteRoleEnvelope,
    AddMemberRoleEnvelope,
    RemoveMemberRoleEnvelope,
    AddGuildMemberEnvelope,
)

KNOWN_METHODS: frozenset[str] = frozenset(
    t.model_fields["method"].default for t in ENVELOPE_TYPES
)

_envelope_adapter: TypeAdapter = TypeAdapter(Envelope)


def decode_envelope(payload: Any) -> EnvelopeBase:
    """
    Decode a raw queue payload into a typed envelope.

    Raises UnknownMethodError for an unrecognized method tag and
    InvalidEnvelopeError when the args don't match the method.
    """
    if not isinstance(payload, dict):
        raise InvalidEnvelopeError("Envelope payload must be a JSON object")
    method = payload.get("method")
    if method not in KNOWN_METHODS:
        raise UnknownMethodError(str(method))
    try:
        return _envelope_adapter.validate_python(payload)
    except ValidationError as e:
        raise InvalidEnvelopeError(
            f"Invalid envelope for method {method}: {e.error_count()} validation error(s)",
            method=str(method),
        ) from e


# ──────────────────────────────────────────────────────────────
#  Queue delivery
# ──────────────────────────────────────────────────────────────

class QueueMessage(BaseModel):
    """One delivery of a queue message. Owned by the queue client."""
    model_config = ConfigDict(frozen=True)

    msg_id: int
    read_ct: int = 0
    vt: datetime
    enqueued_at: datetime
    message: Any = None

    def latency_ms(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        enqueued = self.enqueued_at
        if enqueued.tzinfo is None:
            enqueued = enqueued.replace(tzinfo=timezone.utc)
        return max(0, int((now - enqueued).total_seconds() * 1000))


class DeliveryMeta(BaseModel):
    """The slice of a delivery the dispatcher and retry policy need."""
    model_config = ConfigDict(frozen=True)

    msg_id: int
    enqueued_at: datetime
    read_ct: int = 0

    @classmethod
    def of(cls, message: QueueMessage) -> "DeliveryMeta":
        return cls(msg_id=message.msg_id, enqueued_at=message.enqueued_at, read_ct=message.read_ct)


# ──────────────────────────────────────────────────────────────
#  Tracking and dead-letter records
# ──────────────────────────────────────────────────────────────

class TrackedMessage(BaseModel):
    class_id: int
    discord_message_id: str
    discord_channel_id: str
    resource_type: str
    resource_id: int


class TrackedChannel(BaseModel):
    class_id: int
    discord_channel_id: str
    channel_type: str
    resource_id: Optional[int] = None


class TrackedRole(BaseModel):
    class_id: int
    discord_role_id: str
    role_type: str


class DeadLetterRecord(BaseModel):
    """Append-only diagnostic row for a message that exhausted its retries."""
    original_msg_id: int
    method: str
    envelope: dict[str, Any]
    error_message: str
    error_type: str
    retry_count: int
    last_error_context: dict[str, Any] = Field(default_factory=dict)
    class_id: Optional[int] = None
    debug_id: Optional[str] = None
    log_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
