"""
Retry Policy — classify a failure and decide requeue vs dead-letter.

  rate limited  → exponential backoff from the retry-after hint, with jitter
  anything else → fixed delay (error_delay, default 120s), no jitter
  retry_count >= max_retries → dead letter

Backoff for rate limits:
    base    = max(min_backoff, hint or default_retry_after)
    backoff = min(max_backoff, base * 2 ** min(max_exponent, retry_count))
    jitter  = random int in [0, floor(backoff * jitter_ratio))
    delay   = min(max_backoff, backoff + jitter)
"""
from __future__ import annotations

import math
import random
import re
from dataclasses import dataclass
from typing import Optional

from config.settings import RetryConfig
from core.errors import UnknownMethodError
from discord_api.errors import DiscordError, RateLimitError
from models.schemas import EnvelopeBase

_RETRY_AFTER_PATTERN = re.compile(r"retry after (\d+)ms", re.IGNORECASE)

REQUEUE = "requeue"
DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class RateLimitInfo:
    is_rate_limit: bool
    retry_after: Optional[int] = None  # whole seconds


@dataclass(frozen=True)
class RetryDecision:
    action: str                            # REQUEUE | DEAD_LETTER
    delay_seconds: int = 0
    rate_limited: bool = False
    retry_after: Optional[int] = None
    envelope: Optional[EnvelopeBase] = None  # the envelope to requeue


def detect_rate_limit(error: BaseException) -> RateLimitInfo:
    """Recognise rate limiting from a typed error or from the message text."""
    if isinstance(error, RateLimitError):
        hint = math.ceil(error.retry_after) if error.retry_after is not None else None
        return RateLimitInfo(True, hint)
    # typed adapter errors already say what they are; their text can carry
    # endpoints and response bodies
    if isinstance(error, DiscordError):
        return RateLimitInfo(False)

    message = str(error)
    if "rate limit" not in message.lower() and "429" not in message:
        return RateLimitInfo(False)
    return RateLimitInfo(True, parse_retry_after(message))


def parse_retry_after(message: str) -> Optional[int]:
    """Extract "retry after Nms" and round up to whole seconds."""
    match = _RETRY_AFTER_PATTERN.search(message)
    if not match:
        return None
    return math.ceil(int(match.group(1)) / 1000)


class RetryPolicy:

    def __init__(self, config: RetryConfig = None, rng: random.Random = None):
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()

    def compute_backoff(self, retry_after: Optional[int], retry_count: int) -> int:
        """Rate-limit delay in seconds, always within [min_backoff, max_backoff]."""
        cfg = self.config
        hint = retry_after if retry_after is not None else cfg.default_retry_after
        base = max(cfg.min_backoff, hint)
        exponent = min(cfg.max_exponent, max(0, retry_count))
        backoff = min(cfg.max_backoff, base * 2 ** exponent)
        jitter_span = math.floor(backoff * cfg.jitter_ratio)
        jitter = self._rng.randrange(jitter_span) if jitter_span > 0 else 0
        return int(min(cfg.max_backoff, backoff + jitter))

    def is_exhausted(self, envelope: EnvelopeBase) -> bool:
        return envelope.retry_count >= self.config.max_retries

    def decide(self, envelope: EnvelopeBase, error: BaseException) -> RetryDecision:
        info = detect_rate_limit(error)

        if self.is_exhausted(envelope) or (
            self.config.fast_track_unknown_methods and isinstance(error, UnknownMethodError)
        ):
            return RetryDecision(DEAD_LETTER, rate_limited=info.is_rate_limit, retry_after=info.retry_after)

        if info.is_rate_limit:
            delay = self.compute_backoff(info.retry_after, envelope.retry_count)
        else:
            delay = self.config.error_delay

        return RetryDecision(
            REQUEUE,
            delay_seconds=delay,
            rate_limited=info.is_rate_limit,
            retry_after=info.retry_after,
            envelope=envelope.with_retry(),
        )
