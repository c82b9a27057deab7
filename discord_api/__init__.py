"""
Discord API layer — REST adapter, typed errors, and rate limiting.

  from discord_api import DiscordClient, create_rate_limiter
"""
from discord_api.client import DiscordClient
from discord_api.errors import DiscordAPIError, DiscordError, RateLimitError, TransientExternalError
from discord_api.limiter import (
    BucketSpec, LocalTokenBucket, RateLimiter, RedisTokenBucket, TokenBucket, create_rate_limiter,
)

__all__ = [
    "DiscordClient",
    "DiscordError", "RateLimitError", "TransientExternalError", "DiscordAPIError",
    "BucketSpec", "TokenBucket", "LocalTokenBucket", "RedisTokenBucket",
    "RateLimiter", "create_rate_limiter",
]
