"""Per-provider adapter cache and connection status."""

import logging
import time
from typing import Callable, Dict, Optional

from .errors import ApiError, NetworkError
from .llm import LLM
from .models import ConnectionStatus, ModelProvider
from .settings import Settings
from .tracking import LogTracker, Tracker

logger = logging.getLogger(__name__)

STATUS_TTL_SECONDS = 30.0


def _create_llm(settings: Settings) -> LLM:
    return settings.create_llm()


class ModelCache:
    """Memoizes one adapter per provider plus its last connection check.

    Validation is advisory: a provider whose check failed keeps no cached
    adapter, but ``get_or_create`` will still build one for a chat attempt.
    """

    def __init__(
        self,
        factory: Callable[[Settings], LLM] = _create_llm,
        tracker: Optional[Tracker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.factory = factory
        self.tracker = tracker if tracker is not None else LogTracker()
        self._clock = clock
        self._models: Dict[str, LLM] = {}
        self._statuses: Dict[str, ConnectionStatus] = {}

    @staticmethod
    def _provider(settings: Settings) -> str:
        return ModelProvider(settings.ai_provider).value

    def get_or_create(self, settings: Settings) -> LLM:
        provider = self._provider(settings)
        model = self._models.get(provider)
        if model is not None:
            logger.debug(f"Using cached {provider} adapter")
            return model

        logger.info(f"Creating {provider} adapter")
        model = self.factory(settings)
        self._models[provider] = model
        return model

    def status(self, provider: str) -> Optional[ConnectionStatus]:
        return self._statuses.get(ModelProvider(provider).value)

    async def initialize_provider(self, settings: Settings) -> ConnectionStatus:
        provider = self._provider(settings)

        cached = self._statuses.get(provider)
        if cached is not None and self._clock() - cached.last_checked < STATUS_TTL_SECONDS:
            logger.debug(f"Using cached {provider} connection status: {cached.status}")
            return cached

        self._statuses[provider] = ConnectionStatus(
            provider=provider, status="pending", last_checked=self._clock()
        )

        try:
            model = self.factory(settings)
            started = self._clock()
            if not await model.validate_connection():
                raise NetworkError(f"Could not connect to {model.name}")
            elapsed = self._clock() - started
        except Exception as e:
            logger.error(f"{provider} connection failed: {e}")
            if not isinstance(e, (ApiError, NetworkError)):
                self.tracker.capture_exception(e)
            self._models.pop(provider, None)
            status = ConnectionStatus(
                provider=provider,
                status="error",
                error=str(e) or type(e).__name__,
                last_checked=self._clock(),
            )
            self._statuses[provider] = status
            return status

        self._models[provider] = model
        status = ConnectionStatus(
            provider=provider, status="connected", last_checked=self._clock()
        )
        self._statuses[provider] = status
        logger.info(f"{provider} connected, validation took {elapsed:.3f}s")
        return status

    def invalidate(self, provider: str) -> None:
        key = ModelProvider(provider).value
        logger.info(f"Clearing cached {key} adapter")
        self._models.pop(key, None)
        self._statuses.pop(key, None)

    def invalidate_all(self) -> None:
        logger.info("Clearing all cached adapters")
        self._models.clear()
        self._statuses.clear()
