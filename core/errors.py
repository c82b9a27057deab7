"""Worker-side error hierarchy (envelope decoding, tracking, dead-letter writes)."""
from __future__ import annotations


class WorkerError(Exception):
    """Base exception for failures raised by the worker itself."""


class UnknownMethodError(WorkerError):
    """Envelope carries a method tag the dispatcher has no handler for. Never succeeds."""

    def __init__(self, method: str):
        self.method = method
        super().__init__(f"Unknown async method: {method}")


class InvalidEnvelopeError(WorkerError):
    """Envelope payload does not validate against its method's argument schema."""

    def __init__(self, message: str, method: str = ""):
        self.method = method
        super().__init__(message)


class TrackingPersistenceError(WorkerError):
    """A tracking-table write failed after the external action already happened."""

    def __init__(self, message: str, table: str = ""):
        self.table = table
        super().__init__(message)


class DeadLetterWriteError(WorkerError):
    """Dead-letter queue send or table insert failed; the delivery stays unarchived."""


class ConfigurationError(WorkerError):
    """A required setting is missing."""
