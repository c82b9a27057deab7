"""
Job queue — consumes queued Discord calls and decides what happens on failure.

- message_queue: pgmq client (production) and in-memory client (dev, tests)
- consumer: Supervisor loop that reads batches and hands them to the dispatcher
- retry: rate-limit detection and backoff policy
- dead_letter: requeue / dead-letter writes, archived only after they succeed
"""
