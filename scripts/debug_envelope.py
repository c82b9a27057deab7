#!/usr/bin/env python3
"""
Run one envelope through the dispatcher, outside the queue.

Usage:
    python scripts/debug_envelope.py '{"method": "send_message", "args": {...}}'
    echo '{...}' | python scripts/debug_envelope.py -

The Discord call and tracking writes are real (configured bot token and
store). Failures go to a throwaway in-memory queue, so nothing is requeued
or dead-lettered on the production queue. The message id is -1.
"""
import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timezone

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

EXAMPLE_ENVELOPE = {
    "method": "send_message",
    "class_id": 123,
    "debug_id": "debug-test",
    "args": {
        "channel_id": "123456789012345678",
        "content": "Test message",
        "embeds": [{"title": "Test Embed", "description": "This is a test", "color": 3447003}],
    },
    "resource_type": "help_request",
    "resource_id": 456,
}

DEBUG_MSG_ID = -1


async def debug_envelope(payload: dict) -> bool:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from core.worker import build_worker
    from job_queue.message_queue import InMemoryQueueClient
    from models.schemas import QueueMessage
    from observability.logging import configure_logging
    from observability.reporting import SentryReporter, init_sentry

    settings = load_settings()
    configure_logging(settings.observability.log_level, "console")
    init_sentry(settings.observability)

    queue = InMemoryQueueClient()
    worker = build_worker(
        settings,
        reporter=SentryReporter(base_tags={"function": "discord_async_worker_debug", "debug_mode": "true"}),
        queue=queue,
    )
    now = datetime.now(timezone.utc)
    message = QueueMessage(msg_id=DEBUG_MSG_ID, read_ct=1, vt=now, enqueued_at=now, message=payload)

    print(f"Method:      {payload.get('method')}")
    if payload.get("class_id"):
        print(f"Class ID:    {payload['class_id']}")
    if payload.get("debug_id"):
        print(f"Debug ID:    {payload['debug_id']}")
    print(f"Retry count: {payload.get('retry_count', 0)}")
    print(f"Started at:  {now.isoformat()}\n")

    try:
        ok = await worker.dispatcher.process(message)
    finally:
        await worker.close()

    print(f"\nCompleted at: {datetime.now(timezone.utc).isoformat()}")
    if ok:
        print("Operation completed successfully ✓")
    else:
        print("Operation failed, see logs above")
        for pending in queue.pending(settings.queue.queue_name):
            print(f"  would requeue (visible at {pending['vt'].isoformat()}): "
                  f"retry_count={pending['message'].get('retry_count')}")
        for pending in queue.pending(settings.queue.dlq_name):
            print(f"  would dead-letter: {json.dumps(pending['message'])}")
    return ok


def main():
    parser = argparse.ArgumentParser(description="Process a single Discord async envelope")
    parser.add_argument("envelope", nargs="?", help="Envelope JSON, or '-' to read stdin")
    args = parser.parse_args()

    if args.envelope is None:
        parser.print_help()
        print(f"\nExample:\n  python scripts/debug_envelope.py '{json.dumps(EXAMPLE_ENVELOPE)}'")
        return

    raw = sys.stdin.read().strip() if args.envelope == "-" else args.envelope
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        print(f"Invalid JSON: {e}")
        print(f"Example envelope:\n{json.dumps(EXAMPLE_ENVELOPE, indent=2)}")
        sys.exit(2)

    if not isinstance(payload, dict) or "method" not in payload or "args" not in payload:
        print("Invalid envelope structure. Must have 'method' and 'args' fields")
        sys.exit(2)

    ok = asyncio.run(debug_envelope(payload))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
