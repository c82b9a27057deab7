"""
Supervisor — the single-flight queue consumer loop for this process.

    IDLE ──read──▶ READING ──batch──▶ PROCESSING ──▶ (ARCHIVING | REQUEUING) ──▶ IDLE
      ▲                │ empty                                                   │
      └── sleep 15s ◀──┘                                      re-poll at once ◀──┘

All messages of a batch run concurrently and settle independently; the next
read happens only once the whole batch has settled. An exception escaping a
batch (read failure etc.) is reported, followed by a 5s pause. The loop
itself never exits on error.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from config.settings import QueueConfig
from core.dispatcher import Dispatcher
from job_queue.dead_letter import archive_message
from job_queue.message_queue import QueueClient
from models.schemas import QueueMessage
from observability.reporting import ErrorReporter

logger = structlog.get_logger()


class Supervisor:
    """
    Owns the consumer task. ``start`` is one-shot: later calls are no-ops.

    Usage:
        supervisor = Supervisor(queue, dispatcher, reporter, settings.queue)
        already_running = supervisor.start()   # needs a running event loop
        await supervisor.stop()
    """

    def __init__(
        self,
        queue: QueueClient,
        dispatcher: Dispatcher,
        reporter: ErrorReporter,
        config: QueueConfig = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.dispatcher = dispatcher
        self.reporter = reporter
        self.config = config or QueueConfig()
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.batches_processed = 0
        self.last_batch_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """Start the loop in the background. Returns True if it was already running."""
        if self._running:
            logger.info("supervisor_already_running")
            return True
        self._running = True
        self._task = asyncio.create_task(self.run_forever())
        logger.info("supervisor_started",
                    queue=self.config.queue_name, batch_size=self.config.batch_size)
        return False

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("supervisor_stopped")

    async def run_forever(self) -> None:
        self._running = True
        while self._running:
            try:
                has_work = await self.process_batch()
            except Exception as e:
                logger.error("batch_failed", error=str(e), retry_in_s=self.config.error_sleep)
                self.reporter.capture_exception(e, tags={"operation": "process_batch"})
                await self._sleep(self.config.error_sleep)
                continue

            if not has_work:
                logger.debug("queue_idle", sleep_s=self.config.idle_sleep)
                await self._sleep(self.config.idle_sleep)

    async def process_batch(self) -> bool:
        """Read and process one batch. Returns False when the queue was empty."""
        messages = await self.queue.read(
            self.config.queue_name, self.config.visibility_timeout, self.config.batch_size,
        )
        if not messages:
            return False

        logger.info("batch_read", count=len(messages))
        results = await asyncio.gather(
            *(self._process_one(m) for m in messages),
            return_exceptions=True,
        )
        for message, result in zip(messages, results):
            if isinstance(result, Exception):
                logger.error("message_processing_crashed", msg_id=message.msg_id, error=str(result))
                self.reporter.capture_exception(result, tags={"msg_id": str(message.msg_id)})

        self.batches_processed += 1
        self.last_batch_at = datetime.now(timezone.utc)
        return True

    async def _process_one(self, message: QueueMessage) -> None:
        if message.read_ct > self.config.stuck_read_threshold:
            logger.error("message_stuck", msg_id=message.msg_id, read_ct=message.read_ct)
            self.reporter.capture_message(
                f"Message {message.msg_id} has been read {message.read_ct} times without being archived",
                level="error",
                tags={"msg_id": str(message.msg_id), "stuck": "true"},
                context={"stuck_message": {
                    "msg_id": message.msg_id,
                    "read_ct": message.read_ct,
                    "enqueued_at": message.enqueued_at.isoformat(),
                }},
            )

        logger.info("message_processing", msg_id=message.msg_id, latency_ms=message.latency_ms())
        if await self.dispatcher.process(message):
            await archive_message(self.queue, self.config.queue_name, message.msg_id, self.reporter)
