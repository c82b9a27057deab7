"""
Worker assembly — builds the component graph from Settings.

    queue ─▶ Supervisor ─▶ Dispatcher ─▶ RateLimiter ─▶ DiscordClient
                               │
                               └─▶ FailureHandler ─▶ RetryPolicy / DeadLetterManager

Any component can be passed in ready-made (tests, debug script); the rest
come from the factories.
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

import structlog

from config.settings import Settings, get_settings
from core.dispatcher import Dispatcher
from database.store_base import BaseTrackingStore
from database.store_factory import create_store
from discord_api.client import DiscordClient
from discord_api.limiter import RateLimiter, create_rate_limiter
from job_queue.consumer import Supervisor
from job_queue.dead_letter import DeadLetterManager, FailureHandler
from job_queue.message_queue import QueueClient, create_queue_client
from job_queue.retry import RetryPolicy
from observability.reporting import ErrorReporter, SentryReporter

logger = structlog.get_logger()


@dataclass
class Worker:
    settings: Settings
    reporter: ErrorReporter
    queue: QueueClient
    store: BaseTrackingStore
    client: DiscordClient
    limiter: RateLimiter
    dispatcher: Dispatcher
    supervisor: Supervisor

    async def close(self) -> None:
        await self.supervisor.stop()
        await self.client.close()
        await self.limiter.close()
        await self.store.close()
        await self.queue.close()


def build_worker(
    settings: Settings = None,
    reporter: ErrorReporter = None,
    queue: QueueClient = None,
    store: BaseTrackingStore = None,
    client: DiscordClient = None,
    limiter: RateLimiter = None,
    rng: Optional[random.Random] = None,
) -> Worker:
    settings = settings or get_settings()
    reporter = reporter or SentryReporter(base_tags={"function": "discord_async_worker"})
    queue = queue or create_queue_client(settings.queue)
    store = store or create_store(settings.database)
    client = client or DiscordClient(settings.discord)
    limiter = limiter or create_rate_limiter(settings.rate_limit, reporter)

    policy = RetryPolicy(settings.retry, rng)
    dead_letters = DeadLetterManager(queue, store, reporter, settings.queue)
    failures = FailureHandler(queue, policy, dead_letters, reporter, settings.queue)
    dispatcher = Dispatcher(client, limiter, store, failures, reporter, app_url=settings.worker.app_url)
    supervisor = Supervisor(queue, dispatcher, reporter, settings.queue)

    logger.info("worker_built",
                queue_backend=type(queue).__name__,
                store_backend=type(store).__name__,
                limiter_backend=limiter.backend,
                methods=dispatcher.methods)
    return Worker(settings, reporter, queue, store, client, limiter, dispatcher, supervisor)
