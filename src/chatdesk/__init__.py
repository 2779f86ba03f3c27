"""
The main entrypoint for the chatdesk package.

This module contains the ``ChatDesk`` application handle, which wires the
pillars of a desktop chat client together: the key-value store, the session
store, the per-provider model cache, the error tracker and the generation
engine. Each pillar is injected, so tests can build isolated instances.
"""

import logging
from typing import Any, Dict, Optional

from .cache import ModelCache
from .engine import Engine
from .models import USER_ROLE, Message, ModelProvider, Session, create_message
from .sessions import SessionStore
from .settings import Settings
from .store import InMemory, Storage, Store, StorageKey
from .tracking import LogTracker, Tracker

logger = logging.getLogger(__name__)

__all__ = ["ChatDesk"]


class ChatDesk:
    """
    Application state for one chat client.

    The constructor uses concrete default implementations, so
    ``await ChatDesk.open()`` gives a working in-memory client, while every
    pillar stays replaceable.
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        models: Optional[ModelCache] = None,
        tracker: Optional[Tracker] = None,
        engine: Optional[Engine] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize the application with configurable pillars.

        Parameters
        ----------
        store : store.Store, optional
            Host key-value persistence. Defaults to store.InMemory().
        models : cache.ModelCache, optional
            Adapter cache. Defaults to a cache building adapters from the
            active settings.
        tracker : tracking.Tracker, optional
            Receiver of unexpected errors. Defaults to tracking.LogTracker().
        engine : engine.Engine, optional
            Generation pipeline. Defaults to engine.Engine(); it is bound to
            this app either way.
        settings : settings.Settings, optional
            Explicit settings. When omitted, ``load`` reads the stored
            settings merged over the defaults.

        Examples
        --------
        >>> app = await ChatDesk.open()

        >>> app = await ChatDesk.open(
        ...     store=store.File("./data"),
        ...     settings=Settings(ai_provider="claude"),
        ... )
        """
        self.storage = Storage(store if store is not None else InMemory())
        self.tracker = tracker if tracker is not None else LogTracker()
        self.models = models if models is not None else ModelCache(tracker=self.tracker)
        self.engine = engine if engine is not None else Engine()
        self.engine.app = self

        self._explicit_settings = settings is not None
        self._settings = settings if settings is not None else Settings()
        self.sessions = SessionStore(self.storage)

    @classmethod
    async def open(cls, **kwargs: Any) -> "ChatDesk":
        app = cls(**kwargs)
        await app.load()
        return app

    async def load(self) -> None:
        """Reads sessions and settings from the store."""
        self.sessions = await SessionStore.load(self.storage)
        if self._explicit_settings:
            await self.storage.set_item(
                StorageKey.SETTINGS, self._settings.model_dump(mode="json")
            )
        else:
            stored = await self.storage.get_item(
                StorageKey.SETTINGS, self._settings.model_dump(mode="json")
            )
            self._settings = Settings.from_stored(stored)

    async def close(self) -> None:
        """Lets running generations finish, then writes everything out."""
        await self.engine.wait()
        await self.sessions.flush()

    @property
    def settings(self) -> Settings:
        return self._settings

    async def update_settings(self, new_settings: Settings) -> None:
        """Persists new settings and drops adapters whose config changed."""
        for provider in ModelProvider:
            old_config = self._settings.provider_config(provider)
            if old_config != new_settings.provider_config(provider):
                self.models.invalidate(provider)
        self._settings = new_settings
        await self.storage.set_item(
            StorageKey.SETTINGS, new_settings.model_dump(mode="json")
        )

    async def initialize_default_provider(self) -> Dict[str, Any]:
        """Checks the selected provider and warms the adapter cache."""
        settings = self.settings
        provider = ModelProvider(settings.ai_provider).value
        status = await self.models.initialize_provider(settings)
        try:
            model = self.models.get_or_create(settings)
        except Exception as e:
            logger.error(f"Warming the {provider} adapter failed: {e}")
            return {"status": "error", "error": str(e), "provider": provider}

        logger.info(f"{provider} ready with {model.model_name}: {status.status}")
        if status.status != "connected":
            return {"status": "warning", "error": status.error, "provider": provider}
        return {"status": "success", "provider": provider}

    def new_chat(self) -> Session:
        return self.sessions.create_empty(self.settings.default_prompt)

    async def send(self, content: str, need_generating: bool = True):
        """Submits ``content`` as a user message to the current session."""
        message: Message = create_message(USER_ROLE, content)
        return await self.engine.submit(
            self.sessions.current_session_id(), message, need_generating
        )
