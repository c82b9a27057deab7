"""Errors raised by the Discord API adapter."""
from __future__ import annotations

from typing import Optional


class DiscordError(Exception):
    """Base exception for all Discord API operations."""

    def __init__(self, message: str, endpoint: str = "", retryable: bool = False):
        self.endpoint = endpoint
        self.retryable = retryable
        super().__init__(message)


class RateLimitError(DiscordError):
    """HTTP 429. ``retry_after`` is in seconds when Discord supplied a hint."""

    def __init__(self, endpoint: str = "", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        retry_after_ms = int((retry_after if retry_after is not None else 1.0) * 1000)
        super().__init__(
            f"Discord rate limit: retry after {retry_after_ms}ms",
            endpoint,
            retryable=True,
        )


class TransientExternalError(DiscordError):
    """Network failure, timeout, or 5xx response."""

    def __init__(self, message: str, endpoint: str = "", status: Optional[int] = None):
        self.status = status
        super().__init__(message, endpoint, retryable=True)


class DiscordAPIError(DiscordError):
    """Any other non-2xx response."""

    def __init__(self, status: int, reason: str, body: str = "", endpoint: str = ""):
        self.status = status
        self.body = body
        super().__init__(
            f"Discord API error: {status} {reason} - {body}",
            endpoint,
            retryable=False,
        )
