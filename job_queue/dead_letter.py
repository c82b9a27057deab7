"""
Dead-Letter Manager and failure handling.

A failed delivery ends in exactly one of:
  requeued      — new envelope (retry_count + 1) sent with a delay, original archived
  dead-lettered — DLQ send + dead-letter row + error report, original archived
  left alone    — a write failed; the original reappears after its visibility timeout

The original is never archived unless the write that replaces it succeeded.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any

from config.settings import QueueConfig
from core.errors import DeadLetterWriteError
from database.store_base import BaseTrackingStore
from job_queue.message_queue import QueueClient
from job_queue.retry import DEAD_LETTER, RetryPolicy
from models.schemas import DeadLetterRecord, DeliveryMeta, EnvelopeBase
from observability.reporting import ErrorReporter

logger = structlog.get_logger()


async def archive_message(
    queue: QueueClient, queue_name: str, msg_id: int, reporter: ErrorReporter,
) -> bool:
    """Archive one delivery. A failure is reported and the message is redelivered later."""
    try:
        archived = await queue.archive(queue_name, msg_id)
    except Exception as e:
        logger.error("queue_archive_failed", msg_id=msg_id, queue=queue_name, error=str(e))
        reporter.capture_exception(e, tags={"operation": "archive"}, context={"archive": {"msg_id": msg_id}})
        return False
    logger.info("queue_message_archived", msg_id=msg_id, archived=archived)
    return True


class DeadLetterManager:
    """Moves an exhausted envelope to the DLQ queue and the dead-letter table."""

    def __init__(
        self,
        queue: QueueClient,
        store: BaseTrackingStore,
        reporter: ErrorReporter,
        config: QueueConfig = None,
    ):
        self.queue = queue
        self.store = store
        self.reporter = reporter
        self.config = config or QueueConfig()

    async def dead_letter(self, envelope: EnvelopeBase, error: BaseException, meta: DeliveryMeta) -> DeadLetterRecord:
        """Raises DeadLetterWriteError if either write fails."""
        error_message = str(error)
        error_type = type(error).__name__
        payload = envelope.to_payload()
        logger.warning("dead_lettering_message",
                       msg_id=meta.msg_id, method=envelope.method,
                       retry_count=envelope.retry_count, error=error_message)

        try:
            await self.queue.send(self.config.dlq_name, payload, 0)
        except Exception as e:
            self.reporter.capture_exception(e, context={
                "dlq_send_error": {"error_message": str(e), "original_msg_id": meta.msg_id},
            })
            raise DeadLetterWriteError(f"DLQ send failed for message {meta.msg_id}: {e}") from e

        record = DeadLetterRecord(
            original_msg_id=meta.msg_id,
            method=envelope.method,
            envelope=payload,
            error_message=error_message,
            error_type=error_type,
            retry_count=envelope.retry_count,
            last_error_context={
                "error_message": error_message,
                "error_type": error_type,
                "enqueued_at": meta.enqueued_at.isoformat(),
                "failed_at": datetime.now(timezone.utc).isoformat(),
            },
            class_id=envelope.class_id,
            debug_id=envelope.debug_id,
            log_id=envelope.log_id,
        )
        try:
            await self.store.record_dead_letter(record)
        except Exception as e:
            self.reporter.capture_exception(e, context={
                "dlq_table_insert_error": {"error_message": str(e), "original_msg_id": meta.msg_id},
            })
            raise DeadLetterWriteError(f"Dead-letter insert failed for message {meta.msg_id}: {e}") from e

        self.reporter.capture_message(
            f"Message sent to dead letter queue after {envelope.retry_count} retries: {envelope.method}",
            level="error",
            tags={"dlq": "true", "method": envelope.method, "retry_count": str(envelope.retry_count)},
            context={"dead_letter_queue": {
                "original_msg_id": meta.msg_id,
                "method": envelope.method,
                "retry_count": envelope.retry_count,
                "error_message": error_message,
                "error_type": error_type,
                "enqueued_at": meta.enqueued_at.isoformat(),
                **envelope.correlation,
            }},
        )
        return record


class FailureHandler:
    """Applies a RetryPolicy decision: requeue or dead-letter, then archive."""

    def __init__(
        self,
        queue: QueueClient,
        policy: RetryPolicy,
        dead_letters: DeadLetterManager,
        reporter: ErrorReporter,
        config: QueueConfig = None,
    ):
        self.queue = queue
        self.policy = policy
        self.dead_letters = dead_letters
        self.reporter = reporter
        self.config = config or QueueConfig()

    async def handle(self, envelope: EnvelopeBase, error: BaseException, meta: DeliveryMeta) -> str:
        """Returns "requeued", "dead_lettered" or "unarchived"."""
        decision = self.policy.decide(envelope, error)
        tags = {"method": envelope.method, "rate_limit": "true" if decision.rate_limited else "false"}
        logger.warning("envelope_failed",
                       msg_id=meta.msg_id, method=envelope.method,
                       retry_count=envelope.retry_count, error=str(error),
                       error_type=type(error).__name__, rate_limited=decision.rate_limited)
        self.reporter.capture_exception(error, tags=tags, context={"envelope": self._context(envelope, meta)})

        if decision.action == DEAD_LETTER:
            try:
                await self.dead_letters.dead_letter(envelope, error, meta)
            except DeadLetterWriteError as e:
                logger.error("dead_letter_failed_leaving_unarchived", msg_id=meta.msg_id, error=str(e))
                self.reporter.capture_message(
                    f"Message {meta.msg_id} not archived due to DLQ failure",
                    level="error",
                    context={"dlq_archive_skipped": {"msg_id": meta.msg_id, "reason": str(e)}},
                )
                return "unarchived"
            await archive_message(self.queue, self.config.queue_name, meta.msg_id, self.reporter)
            return "dead_lettered"

        retry_envelope = decision.envelope
        try:
            new_msg_id = await self.queue.send(
                self.config.queue_name, retry_envelope.to_payload(), decision.delay_seconds,
            )
        except Exception as e:
            logger.error("requeue_failed_leaving_unarchived", msg_id=meta.msg_id, error=str(e))
            self.reporter.capture_exception(e, tags={"operation": "requeue"},
                                            context={"requeue": {"msg_id": meta.msg_id}})
            return "unarchived"

        logger.info("envelope_requeued",
                    msg_id=meta.msg_id, new_msg_id=new_msg_id, method=envelope.method,
                    retry_count=retry_envelope.retry_count, delay_s=decision.delay_seconds,
                    retry_after=decision.retry_after)
        await archive_message(self.queue, self.config.queue_name, meta.msg_id, self.reporter)
        return "requeued"

    @staticmethod
    def _context(envelope: EnvelopeBase, meta: DeliveryMeta) -> dict[str, Any]:
        return {
            "msg_id": meta.msg_id,
            "method": envelope.method,
            "retry_count": envelope.retry_count,
            "enqueued_at": meta.enqueued_at.isoformat(),
            **envelope.correlation,
        }
