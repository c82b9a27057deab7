"""
Error reporting — the worker's observability sink.

Operators watch two things: the dead-letter table and the events sent here.
SentryReporter isolates each event in its own scope so tags from one message
never leak into another message's report.
"""
from __future__ import annotations

import abc
from typing import Any, Optional

import sentry_sdk
import structlog

from config.settings import ObservabilityConfig

logger = structlog.get_logger()


class ErrorReporter(abc.ABC):
    """Interface every component reports through."""

    @abc.abstractmethod
    def capture_exception(
        self,
        error: BaseException,
        tags: Optional[dict[str, str]] = None,
        context: Optional[dict[str, dict[str, Any]]] = None,
    ) -> Optional[str]:
        ...

    @abc.abstractmethod
    def capture_message(
        self,
        message: str,
        level: str = "info",
        tags: Optional[dict[str, str]] = None,
        context: Optional[dict[str, dict[str, Any]]] = None,
    ) -> Optional[str]:
        ...

    def add_breadcrumb(self, message: str, level: str = "info", data: Optional[dict[str, Any]] = None) -> None:
        pass


class SentryReporter(ErrorReporter):

    def __init__(self, base_tags: Optional[dict[str, str]] = None):
        self.base_tags = dict(base_tags or {})

    def _prepare(self, scope, tags, context) -> None:
        for key, value in {**self.base_tags, **(tags or {})}.items():
            scope.set_tag(key, str(value))
        for name, data in (context or {}).items():
            scope.set_context(name, data)

    def capture_exception(self, error, tags=None, context=None):
        with sentry_sdk.new_scope() as scope:
            self._prepare(scope, tags, context)
            return sentry_sdk.capture_exception(error)

    def capture_message(self, message, level="info", tags=None, context=None):
        with sentry_sdk.new_scope() as scope:
            self._prepare(scope, tags, context)
            return sentry_sdk.capture_message(message, level=level)

    def add_breadcrumb(self, message, level="info", data=None):
        sentry_sdk.add_breadcrumb(message=message, level=level, data=data or {})


class NullReporter(ErrorReporter):
    """Drops everything. Used by scripts that only want log output."""

    def capture_exception(self, error, tags=None, context=None):
        return None

    def capture_message(self, message, level="info", tags=None, context=None):
        return None


def init_sentry(config: ObservabilityConfig, release: str = "") -> bool:
    """Initialise the Sentry SDK when a DSN is configured. Returns True if enabled."""
    if not config.sentry_dsn:
        logger.info("sentry_disabled", reason="no DSN configured")
        return False
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        environment=config.environment,
        release=release or None,
        traces_sample_rate=0.0,
    )
    logger.info("sentry_initialized", environment=config.environment)
    return True
