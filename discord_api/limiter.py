"""
Rate Limiter — Two-tier token buckets in front of the Discord API.

Discord limits:
  - Global: 50 requests per second
  - Per-channel messages: 5 requests per 5 seconds per channel

Every call takes a token from the global bucket; message operations then take
one from their channel bucket too. Tokens are consumed, never handed back, so
a caller that got past the global check keeps its slot while it waits on the
channel.

Buckets refill in discrete steps: every ``refill_interval`` seconds the bucket
gains ``refill_amount`` tokens, capped at ``capacity``. A full bucket can be
drained in a single burst.

Backends:
  - RedisTokenBucket — state in Redis, updated by one Lua script, so every
    worker process draws from the same budget (Redis >= 5 for TIME in scripts)
  - LocalTokenBucket — asyncio-only, per process
"""
from __future__ import annotations

import abc
import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

import structlog

from config.settings import RateLimitConfig

logger = structlog.get_logger()


@dataclass(frozen=True)
class BucketSpec:
    key: str
    capacity: int
    refill_amount: int
    refill_interval: float  # seconds


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKETS
# ══════════════════════════════════════════════════════════════

class TokenBucket(abc.ABC):
    """One rate-limit scope. ``acquire`` blocks until a token is taken; it never fails."""

    def __init__(self, spec: BucketSpec):
        self.spec = spec
        self._lock = asyncio.Lock()

    @abc.abstractmethod
    async def try_acquire(self) -> Optional[float]:
        """Take one token. Returns None on success, else seconds until the next refill."""
        ...

    async def acquire(self) -> None:
        # The lock keeps waiters in this process FIFO.
        async with self._lock:
            while True:
                wait = await self.try_acquire()
                if wait is None:
                    return
                logger.debug("rate_limit_wait", scope=self.spec.key, wait_s=round(wait, 3))
                await asyncio.sleep(wait)


class LocalTokenBucket(TokenBucket):
    """In-process bucket. Under-shares capacity if several processes run without Redis."""

    def __init__(self, spec: BucketSpec, clock: Callable[[], float] = time.monotonic):
        super().__init__(spec)
        self._clock = clock
        self._tokens = spec.capacity
        self._last_refill = clock()

    @property
    def tokens(self) -> int:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        periods = int((now - self._last_refill) // self.spec.refill_interval)
        if periods > 0:
            self._tokens = min(self.spec.capacity, self._tokens + periods * self.spec.refill_amount)
            self._last_refill += periods * self.spec.refill_interval

    async def try_acquire(self) -> Optional[float]:
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return None
        wait = self._last_refill + self.spec.refill_interval - self._clock()
        return max(wait, 0.001)


_TOKEN_BUCKET_LUA = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local amount = tonumber(ARGV[2])
local interval_ms = tonumber(ARGV[3])

local t = redis.call('TIME')
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)

local state = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(state[1])
local last = tonumber(state[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local periods = math.floor((now - last) / interval_ms)
if periods > 0 then
  tokens = math.min(capacity, tokens + periods * amount)
  last = last + periods * interval_ms
end

local wait = 0
if tokens >= 1 then
  tokens = tokens - 1
else
  wait = last + interval_ms - now
  if wait < 1 then
    wait = 1
  end
end

redis.call('HSET', key, 'tokens', tokens, 'last_refill', last)
redis.call('PEXPIRE', key, interval_ms * 2 + 1000)
return wait
"""


class RedisTokenBucket(TokenBucket):
    """
    Bucket whose counter and refill timestamp live in Redis.
    Uses the Redis server clock so processes on different hosts agree.
    Falls back to a local bucket for a call when Redis is unreachable.
    """

    def __init__(self, spec: BucketSpec, redis_client: Any, reporter: Any = None):
        super().__init__(spec)
        self._redis = redis_client
        self._script = redis_client.register_script(_TOKEN_BUCKET_LUA)
        self._reporter = reporter
        self._fallback: Optional[LocalTokenBucket] = None
        self._degraded = False

    async def try_acquire(self) -> Optional[float]:
        try:
            wait_ms = await self._script(
                keys=[f"ratelimit:{self.spec.key}"],
                args=[
                    self.spec.capacity,
                    self.spec.refill_amount,
                    int(self.spec.refill_interval * 1000),
                ],
            )
        except Exception as e:
            # one report per outage; the rest only go to the debug log
            if self._degraded:
                logger.debug("rate_limit_store_still_unavailable", scope=self.spec.key, error=str(e))
            else:
                self._degraded = True
                logger.warning("rate_limit_store_unavailable", scope=self.spec.key, error=str(e))
                if self._reporter:
                    self._reporter.capture_exception(e, tags={"rate_limit_scope": self.spec.key})
            if self._fallback is None:
                self._fallback = LocalTokenBucket(self.spec)
            return await self._fallback.try_acquire()

        if self._degraded:
            self._degraded = False
            logger.info("rate_limit_store_recovered", scope=self.spec.key)

        wait_ms = int(wait_ms)
        if wait_ms <= 0:
            return None
        return wait_ms / 1000.0


# ══════════════════════════════════════════════════════════════
#  TWO-TIER LIMITER
# ══════════════════════════════════════════════════════════════

BucketFactory = Callable[[BucketSpec], TokenBucket]


class RateLimiter:
    """
    Global + per-channel admission control.

    Usage:
        limiter = create_rate_limiter(settings.rate_limit)
        await limiter.admit()                  # global only
        await limiter.admit(channel_id="123")  # global, then channel 123
    """

    def __init__(
        self,
        bucket_factory: BucketFactory,
        global_spec: BucketSpec,
        channel_spec: BucketSpec,
        backend: str = "local",
        redis_client: Any = None,
    ):
        self._factory = bucket_factory
        self._global_spec = global_spec
        self._channel_spec = channel_spec
        self.backend = backend
        self._redis = redis_client
        self._global: Optional[TokenBucket] = None
        self._channels: dict[str, TokenBucket] = {}

    def global_scope(self) -> TokenBucket:
        if self._global is None:
            self._global = self._factory(self._global_spec)
        return self._global

    def channel_scope(self, channel_id: str) -> TokenBucket:
        bucket = self._channels.get(channel_id)
        if bucket is None:
            spec = replace(self._channel_spec, key=f"{self._channel_spec.key}:{channel_id}")
            bucket = self._factory(spec)
            self._channels[channel_id] = bucket
        return bucket

    async def admit(self, channel_id: Optional[str] = None) -> None:
        """Block until the call may proceed. Never raises on limit exhaustion."""
        await self.global_scope().acquire()
        if channel_id:
            await self.channel_scope(channel_id).acquire()

    @property
    def scope_count(self) -> int:
        return len(self._channels) + (1 if self._global else 0)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def _specs(config: RateLimitConfig) -> tuple[BucketSpec, BucketSpec]:
    global_spec = BucketSpec(
        key=f"{config.key_prefix}_global",
        capacity=config.global_capacity,
        refill_amount=config.global_refill_amount,
        refill_interval=config.global_refill_interval,
    )
    channel_spec = BucketSpec(
        key=f"{config.key_prefix}_channel",
        capacity=config.channel_capacity,
        refill_amount=config.channel_refill_amount,
        refill_interval=config.channel_refill_interval,
    )
    return global_spec, channel_spec


def create_rate_limiter(config: RateLimitConfig = None, reporter: Any = None) -> RateLimiter:
    """Factory: Redis-backed buckets when a redis_url is configured, local otherwise."""
    config = config or RateLimitConfig()
    global_spec, channel_spec = _specs(config)

    if config.redis_url:
        import redis.asyncio as aioredis
        client = aioredis.from_url(config.redis_url, decode_responses=True)
        logger.info("rate_limiter_created", backend="redis")
        return RateLimiter(
            lambda spec: RedisTokenBucket(spec, client, reporter),
            global_spec, channel_spec,
            backend="redis",
            redis_client=client,
        )

    logger.warning("rate_limiter_local_fallback",
                   reason="No shared rate limit store configured, using local limiter")
    if reporter:
        reporter.capture_message(
            "No shared rate limit store configured, using local Discord limiter",
            level="warning",
        )
    return RateLimiter(LocalTokenBucket, global_spec, channel_spec, backend="local")
