"""
Discord API adapter — one method per REST call the worker makes.

The adapter does the HTTP and nothing else: no rate limiting (the dispatcher
admits every call first) and no retries (failures go to the retry policy).
Non-2xx responses raise typed errors:

  429            → RateLimitError(retry_after from X-RateLimit-Reset-After)
  5xx / network  → TransientExternalError
  timeout        → TransientExternalError
  other          → DiscordAPIError
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from config.settings import DiscordConfig
from core.errors import ConfigurationError
from discord_api.errors import DiscordAPIError, RateLimitError, TransientExternalError
from models.schemas import (
    AddGuildMemberArgs, AddMemberRoleArgs, CreateChannelArgs, CreateRoleArgs,
    DeleteChannelArgs, DeleteRoleArgs, RemoveMemberRoleArgs, SendMessageArgs,
    UpdateMessageArgs,
)

logger = structlog.get_logger()

GUILD_TEXT_CHANNEL = 0


def _drop_none(body: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in body.items() if v is not None}


class DiscordClient:
    """Async Discord REST client authenticated with a bot token."""

    def __init__(self, config: DiscordConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or DiscordConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            if not self.config.bot_token:
                raise ConfigurationError("DISCORD_BOT_TOKEN environment variable is not set")
            self._client = httpx.AsyncClient(
                base_url=self.config.api_base,
                headers={
                    "Authorization": f"Bot {self.config.bot_token}",
                    "Content-Type": "application/json",
                    "User-Agent": self.config.user_agent,
                },
                timeout=httpx.Timeout(self.config.request_timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _request(self, method: str, endpoint: str, body: Optional[dict[str, Any]] = None) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, endpoint, json=body)
        except httpx.TimeoutException as e:
            timeout_ms = int(self.config.request_timeout * 1000)
            logger.error("discord_request_timeout", method=method, endpoint=endpoint, timeout_ms=timeout_ms)
            raise TransientExternalError(
                f"Discord API timeout after {timeout_ms}ms: {method} {endpoint}", endpoint,
            ) from e
        except httpx.TransportError as e:
            logger.error("discord_request_failed", method=method, endpoint=endpoint, error=str(e))
            raise TransientExternalError(f"Discord API network error: {e}", endpoint) from e

        remaining = response.headers.get("X-RateLimit-Remaining")
        reset_after = response.headers.get("X-RateLimit-Reset-After")

        if response.status_code == 429:
            retry_after = self._retry_after(response, reset_after)
            logger.warning("discord_rate_limited",
                           endpoint=endpoint, retry_after_s=retry_after, remaining=remaining)
            raise RateLimitError(endpoint, retry_after)

        if response.status_code >= 500:
            raise TransientExternalError(
                f"Discord API error: {response.status_code} {response.reason_phrase} - {response.text}",
                endpoint,
                status=response.status_code,
            )

        if response.is_error:
            raise DiscordAPIError(response.status_code, response.reason_phrase, response.text, endpoint)

        logger.debug("discord_request_ok", method=method, endpoint=endpoint,
                     status=response.status_code, remaining=remaining)
        return response

    @staticmethod
    def _retry_after(response: httpx.Response, reset_after: Optional[str]) -> float:
        if reset_after:
            try:
                return float(reset_after)
            except ValueError:
                pass
        try:
            body = response.json()
        except ValueError:
            return 1.0
        value = body.get("retry_after") if isinstance(body, dict) else None
        return float(value) if isinstance(value, (int, float)) else 1.0

    # ── Messages ──────────────────────────────────────────────

    async def send_message(self, args: SendMessageArgs) -> dict[str, str]:
        response = await self._request("POST", f"/channels/{args.channel_id}/messages", _drop_none({
            "content": args.content,
            "embeds": args.embeds,
            "allowed_mentions": args.allowed_mentions,
        }))
        data = response.json()
        return {"id": data["id"], "channel_id": data.get("channel_id", args.channel_id)}

    async def update_message(self, args: UpdateMessageArgs) -> dict[str, str]:
        response = await self._request(
            "PATCH", f"/channels/{args.channel_id}/messages/{args.message_id}", _drop_none({
                "content": args.content,
                "embeds": args.embeds,
                "allowed_mentions": args.allowed_mentions,
            }),
        )
        data = response.json()
        return {"id": data.get("id", args.message_id), "channel_id": data.get("channel_id", args.channel_id)}

    # ── Channels ──────────────────────────────────────────────

    async def create_channel(self, args: CreateChannelArgs) -> dict[str, str]:
        response = await self._request("POST", f"/guilds/{args.guild_id}/channels", _drop_none({
            "name": args.name,
            "type": args.type,
            "parent_id": args.parent_id,
            "topic": args.topic,
            "position": args.position,
        }))
        data = response.json()
        return {"id": data["id"], "name": data.get("name", args.name)}

    async def delete_channel(self, args: DeleteChannelArgs) -> None:
        await self._request("DELETE", f"/channels/{args.channel_id}")

    async def list_guild_channels(self, guild_id: str) -> list[dict[str, Any]]:
        response = await self._request("GET", f"/guilds/{guild_id}/channels")
        return response.json()

    async def create_channel_invite(self, channel_id: str, max_age: int = 604800, max_uses: int = 1) -> dict[str, str]:
        response = await self._request("POST", f"/channels/{channel_id}/invites", {
            "max_age": max_age,
            "max_uses": max_uses,
            "unique": True,
        })
        code = response.json()["code"]
        return {"code": code, "url": f"https://discord.gg/{code}"}

    # ── Roles ─────────────────────────────────────────────────

    async def create_role(self, args: CreateRoleArgs) -> dict[str, str]:
        response = await self._request("POST", f"/guilds/{args.guild_id}/roles", _drop_none({
            "name": args.name,
            "color": args.color,
            "hoist": args.hoist,
            "mentionable": args.mentionable,
            "permissions": args.permissions,
        }))
        data = response.json()
        return {"id": data["id"], "name": data.get("name", args.name)}

    async def delete_role(self, args: DeleteRoleArgs) -> None:
        await self._request("DELETE", f"/guilds/{args.guild_id}/roles/{args.role_id}")

    async def add_member_role(self, args: AddMemberRoleArgs) -> None:
        await self._request("PUT", f"/guilds/{args.guild_id}/members/{args.user_id}/roles/{args.role_id}")

    async def remove_member_role(self, args: RemoveMemberRoleArgs) -> None:
        await self._request("DELETE", f"/guilds/{args.guild_id}/members/{args.user_id}/roles/{args.role_id}")

    # ── Members ───────────────────────────────────────────────

    async def get_guild_member(self, guild_id: str, user_id: str) -> Optional[dict[str, Any]]:
        """Return the member, or None when the user is not in the guild (404)."""
        try:
            response = await self._request("GET", f"/guilds/{guild_id}/members/{user_id}")
        except DiscordAPIError as e:
            if e.status == 404:
                return None
            raise
        data = response.json()
        user = data.get("user") or {}
        return {
            "user": {"id": user.get("id", user_id), "username": user.get("username", "")},
            "roles": data.get("roles", []),
        }

    async def add_guild_member(self, args: AddGuildMemberArgs) -> dict[str, Any]:
        response = await self._request("PUT", f"/guilds/{args.guild_id}/members/{args.user_id}", _drop_none({
            "access_token": args.access_token,
            "nick": args.nick,
            "roles": args.roles,
            "mute": args.mute,
            "deaf": args.deaf,
        }))
        # 204 means the user was already a member
        data = response.json() if response.content else {}
        user = data.get("user") or {}
        return {"user": {"id": user.get("id", args.user_id), "username": user.get("username", "")}}
