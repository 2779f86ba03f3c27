"""Concrete implementations for error trackers."""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class Tracker(ABC):
    """Interface for reporting unexpected errors. Fire-and-forget."""

    @abstractmethod
    def capture_exception(self, error: BaseException) -> None:
        pass


class LogTracker(Tracker):
    """Default tracker that writes unexpected errors to the log."""

    def capture_exception(self, error: BaseException) -> None:
        logger.error("Unexpected error", exc_info=error)


class Sentry(Tracker):
    """Reports unexpected errors to Sentry."""

    def __init__(self, dsn: str, **options):
        import sentry_sdk

        self._sdk = sentry_sdk
        sentry_sdk.init(dsn=dsn, **options)

    def capture_exception(self, error: BaseException) -> None:
        self._sdk.capture_exception(error)
