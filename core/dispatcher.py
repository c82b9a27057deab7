"""
Dispatcher — decode one queue message and execute its Discord call.

Provides:
  - Dispatcher.process(message) → True only when the external action succeeded
  - A handler per envelope type, checked for completeness at construction
  - Rate-limit admission before every adapter call (channel scope for messages)
  - Best-effort tracking writes and deep-link enrichment

Failures of the primary call go to the FailureHandler (requeue or
dead-letter). Tracking and enrichment failures are logged and reported only.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

import structlog

from core.deep_links import build_deep_link, with_deep_link
from core.errors import ConfigurationError, InvalidEnvelopeError, UnknownMethodError
from database.store_base import BaseTrackingStore
from discord_api.client import GUILD_TEXT_CHANNEL, DiscordClient
from discord_api.errors import DiscordError
from discord_api.limiter import RateLimiter
from job_queue.dead_letter import FailureHandler
from models.schemas import (
    ENVELOPE_TYPES,
    AddGuildMemberEnvelope, AddMemberRoleEnvelope, CreateChannelEnvelope,
    CreateRoleEnvelope, DeleteChannelEnvelope, DeleteRoleEnvelope,
    DeliveryMeta, EnvelopeBase, QueueMessage, RemoveMemberRoleEnvelope,
    SendMessageEnvelope, TrackedChannel, TrackedMessage, TrackedRole,
    UndecodedEnvelope, UpdateMessageEnvelope, decode_envelope,
)
from observability.reporting import ErrorReporter

logger = structlog.get_logger()

INVITE_MAX_AGE = 604800  # 7 days
INVITE_MAX_USES = 1

Handler = Callable[[Any], Awaitable[None]]


class Dispatcher:

    def __init__(
        self,
        client: DiscordClient,
        limiter: RateLimiter,
        store: BaseTrackingStore,
        failures: FailureHandler,
        reporter: ErrorReporter,
        app_url: str = "",
    ):
        self.client = client
        self.limiter = limiter
        self.store = store
        self.failures = failures
        self.reporter = reporter
        self.app_url = app_url

        self._handlers: dict[type[EnvelopeBase], Handler] = {
            SendMessageEnvelope: self._send_message,
            UpdateMessageEnvelope: self._update_message,
            CreateChannelEnvelope: self._create_channel,
            DeleteChannelEnvelope: self._delete_channel,
            CreateRoleEnvelope: self._create_role,
            DeleteRoleEnvelope: self._delete_role,
            AddMemberRoleEnvelope: self._add_member_role,
            RemoveMemberRoleEnvelope: self._remove_member_role,
            AddGuildMemberEnvelope: self._add_guild_member,
        }
        missing = [t.__name__ for t in ENVELOPE_TYPES if t not in self._handlers]
        if missing:
            raise ConfigurationError(f"No dispatcher handler for: {', '.join(missing)}")

    @property
    def methods(self) -> list[str]:
        return sorted(t.model_fields["method"].default for t in self._handlers)

    # ══════════════════════════════════════════════════════════════
    #  ENTRY POINT
    # ══════════════════════════════════════════════════════════════

    async def process(self, message: QueueMessage) -> bool:
        meta = DeliveryMeta.of(message)
        try:
            envelope = decode_envelope(message.message)
        except (UnknownMethodError, InvalidEnvelopeError) as e:
            logger.error("envelope_decode_failed", msg_id=meta.msg_id, error=str(e))
            await self.failures.handle(UndecodedEnvelope.from_payload(message.message), e, meta)
            return False

        with structlog.contextvars.bound_contextvars(
            msg_id=meta.msg_id, method=envelope.method, retry_count=envelope.retry_count,
            class_id=envelope.class_id, debug_id=envelope.debug_id,
        ):
            logger.info("envelope_processing")
            try:
                await self._handlers[type(envelope)](envelope)
            except Exception as e:
                await self.failures.handle(envelope, e, meta)
                return False
            logger.info("envelope_processed")
            return True

    # ── Helpers ───────────────────────────────────────────────

    def _report_tracking_failure(self, error: Exception, envelope: EnvelopeBase, context_name: str, **context) -> None:
        logger.error("tracking_write_failed", context=context_name, error=str(error))
        self.reporter.capture_exception(
            error,
            tags={"method": envelope.method},
            context={context_name: {"error_message": str(error), **context}},
        )

    async def _resolve_deep_link(self, resource_type: str, class_id: int, resource_id: int) -> Optional[str]:
        if not self.app_url:
            logger.warning("deep_link_skipped", reason="APP_URL not configured")
            return None
        location = None
        if resource_type == "regrade_request":
            try:
                location = await self.store.get_regrade_request_location(resource_id)
            except Exception as e:
                logger.warning("regrade_request_lookup_failed", resource_id=resource_id, error=str(e))
                return None
            if location is None:
                logger.warning("regrade_request_not_found", resource_id=resource_id)
        return build_deep_link(self.app_url, resource_type, class_id, resource_id, location)

    # ══════════════════════════════════════════════════════════════
    #  MESSAGES
    # ══════════════════════════════════════════════════════════════

    async def _send_message(self, envelope: SendMessageEnvelope) -> None:
        args = envelope.args
        self.reporter.add_breadcrumb(f"Sending Discord message to channel {args.channel_id}")

        tracked = envelope.resource_type and envelope.resource_id and envelope.class_id
        if tracked:
            url = await self._resolve_deep_link(envelope.resource_type, envelope.class_id, envelope.resource_id)
            if url and args.embeds:
                args = args.model_copy(update={"embeds": with_deep_link(args.embeds, url)})
                logger.info("deep_link_added", url=url)

        await self.limiter.admit(args.channel_id)
        result = await self.client.send_message(args)
        logger.info("discord_message_sent", message_id=result["id"], channel_id=result["channel_id"])

        if tracked:
            try:
                await self.store.record_message(TrackedMessage(
                    class_id=envelope.class_id,
                    discord_message_id=result["id"],
                    discord_channel_id=result["channel_id"],
                    resource_type=envelope.resource_type,
                    resource_id=envelope.resource_id,
                ))
            except Exception as e:
                self._report_tracking_failure(e, envelope, "message_tracking_error")

    async def _update_message(self, envelope: UpdateMessageEnvelope) -> None:
        args = envelope.args
        self.reporter.add_breadcrumb(f"Updating Discord message {args.message_id} in channel {args.channel_id}")

        resource_type = envelope.resource_type
        resource_id = envelope.resource_id
        class_id = envelope.class_id
        if not (resource_type and resource_id and class_id):
            try:
                record = await self.store.find_message(args.message_id, args.channel_id)
            except Exception as e:
                logger.warning("message_record_lookup_failed", message_id=args.message_id, error=str(e))
                record = None
            if record is not None:
                resource_type = record.resource_type
                resource_id = record.resource_id
                class_id = record.class_id

        if resource_type and resource_id and class_id:
            url = await self._resolve_deep_link(resource_type, class_id, resource_id)
            if url and args.embeds:
                args = args.model_copy(update={"embeds": with_deep_link(args.embeds, url, replace_existing=True)})
                logger.info("deep_link_updated", url=url)

        await self.limiter.admit(args.channel_id)
        await self.client.update_message(args)

    # ══════════════════════════════════════════════════════════════
    #  CHANNELS
    # ══════════════════════════════════════════════════════════════

    async def _create_channel(self, envelope: CreateChannelEnvelope) -> None:
        args = envelope.args
        self.reporter.add_breadcrumb(f"Creating Discord channel {args.name} in guild {args.guild_id}")

        await self.limiter.admit()
        result = await self.client.create_channel(args)
        logger.info("discord_channel_created", channel_id=result["id"])

        if not envelope.class_id:
            return
        if not envelope.channel_type:
            logger.warning("channel_tracking_skipped", reason="missing channel_type")
            self.reporter.capture_message(
                "create_channel envelope missing channel_type",
                level="warning",
                tags={"method": envelope.method, "class_id": str(envelope.class_id)},
            )
            return
        try:
            await self.store.record_channel(TrackedChannel(
                class_id=envelope.class_id,
                discord_channel_id=result["id"],
                channel_type=envelope.channel_type,
                resource_id=envelope.resource_id,
            ))
        except Exception as e:
            self._report_tracking_failure(e, envelope, "channel_tracking_error",
                                          channel_type=envelope.channel_type, resource_id=envelope.resource_id)

    async def _delete_channel(self, envelope: DeleteChannelEnvelope) -> None:
        args = envelope.args
        self.reporter.add_breadcrumb(f"Deleting Discord channel {args.channel_id}")

        await self.limiter.admit()
        await self.client.delete_channel(args)

        if envelope.class_id:
            try:
                await self.store.delete_channel(envelope.class_id, args.channel_id)
            except Exception as e:
                self._report_tracking_failure(e, envelope, "channel_tracking_error")

    # ══════════════════════════════════════════════════════════════
    #  ROLES
    # ══════════════════════════════════════════════════════════════

    async def _create_role(self, envelope: CreateRoleEnvelope) -> None:
        args = envelope.args
        self.reporter.add_breadcrumb(f"Creating Discord role {args.name} in guild {args.guild_id}")

        await self.limiter.admit()
        result = await self.client.create_role(args)
        logger.info("discord_role_created", role_id=result["id"])

        if envelope.class_id and envelope.role_type:
            try:
                await self.store.record_role(TrackedRole(
                    class_id=envelope.class_id,
                    discord_role_id=result["id"],
                    role_type=envelope.role_type,
                ))
            except Exception as e:
                self._report_tracking_failure(e, envelope, "role_tracking_error")

    async def _delete_role(self, envelope: DeleteRoleEnvelope) -> None:
        args = envelope.args
        self.reporter.add_breadcrumb(f"Deleting Discord role {args.role_id} from guild {args.guild_id}")

        await self.limiter.admit()
        await self.client.delete_role(args)

        if envelope.class_id:
            try:
                await self.store.delete_role(envelope.class_id, args.role_id)
            except Exception as e:
                self._report_tracking_failure(e, envelope, "role_tracking_error")

    async def _add_member_role(self, envelope: AddMemberRoleEnvelope) -> None:
        """Adds the role, or invites the user first when they are not in the guild."""
        args = envelope.args
        self.reporter.add_breadcrumb(f"Adding role {args.role_id} to user {args.user_id} in guild {args.guild_id}")

        await self.limiter.admit()
        member = await self.client.get_guild_member(args.guild_id, args.user_id)
        if member is not None:
            await self.limiter.admit()
            await self.client.add_member_role(args)
            return

        # Not in the guild yet; the role is applied by a later sync once they join.
        await self.limiter.admit()
        channels = await self.client.list_guild_channels(args.guild_id)
        text_channel = next((c for c in channels if c.get("type") == GUILD_TEXT_CHANNEL), None)
        if text_channel is None:
            raise DiscordError(
                f"No text channels found in guild {args.guild_id} to create invite",
                endpoint=f"/guilds/{args.guild_id}/channels",
            )

        await self.limiter.admit()
        invite = await self.client.create_channel_invite(text_channel["id"], INVITE_MAX_AGE, INVITE_MAX_USES)
        logger.info("discord_invite_created", user_id=args.user_id, guild_id=args.guild_id, invite_url=invite["url"])
        self.reporter.capture_message(
            f"Discord invite created for user not in server: {invite['url']}",
            level="info",
            tags={"user_id": args.user_id, "guild_id": args.guild_id},
            context={"discord_invite_created": {
                "user_id": args.user_id,
                "guild_id": args.guild_id,
                "invite_code": invite["code"],
                "invite_url": invite["url"],
            }},
        )

    async def _remove_member_role(self, envelope: RemoveMemberRoleEnvelope) -> None:
        args = envelope.args
        self.reporter.add_breadcrumb(f"Removing role {args.role_id} from user {args.user_id} in guild {args.guild_id}")
        await self.limiter.admit()
        await self.client.remove_member_role(args)

    # ══════════════════════════════════════════════════════════════
    #  MEMBERS
    # ══════════════════════════════════════════════════════════════

    async def _add_guild_member(self, envelope: AddGuildMemberEnvelope) -> None:
        args = envelope.args
        self.reporter.add_breadcrumb(f"Adding user {args.user_id} to guild {args.guild_id}")
        await self.limiter.admit()
        result = await self.client.add_guild_member(args)
        logger.info("discord_guild_member_added", username=result["user"]["username"])
