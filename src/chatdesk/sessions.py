"""In-memory session state persisted through the key-value store.

``SessionStore`` is the single owner of the canonical session list. Every
mutation goes through ``update``, which applies the change synchronously to
the latest snapshot and then hands persistence to a background writer, so
interleaved coroutines never clobber each other's changes.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from pydantic import TypeAdapter, ValidationError

from .models import (
    CHAT_SESSION,
    DEFAULT_SESSION_NAME,
    SYSTEM_ROLE,
    Message,
    Session,
    default_sessions,
)
from .settings import DEFAULT_PROMPT
from .store import Storage, StorageKey
from .tokens import count_word, estimate_tokens_from_messages

logger = logging.getLogger(__name__)

_SESSION_LIST = TypeAdapter(List[Session])


def sort_sessions(sessions: List[Session]) -> List[Session]:
    """Display order: most recently created first."""
    return list(reversed(sessions))


def parse_sessions(raw: Any) -> Optional[List[Session]]:
    """Returns the stored sessions, or None when they are unusable."""
    if not isinstance(raw, list) or not raw:
        return None
    try:
        return _SESSION_LIST.validate_python(raw)
    except ValidationError as e:
        logger.error(f"Stored sessions are corrupted, resetting to default: {e}")
        return None


def _is_session_list(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) > 0
        and all(isinstance(s, Session) for s in value)
    )


def _refresh_counts(msg: Message) -> None:
    msg.word_count = count_word(msg.content)
    msg.token_count = estimate_tokens_from_messages([msg])


class SessionStore:
    def __init__(
        self,
        storage: Storage,
        sessions: Optional[List[Session]] = None,
        current_id: Optional[str] = None,
    ):
        self.storage = storage
        self._sessions: List[Session] = (
            list(sessions) if _is_session_list(sessions) else default_sessions()
        )
        self._current_id = current_id or None
        self._sessions_dirty = False
        self._current_dirty = False
        self._writer: Optional[asyncio.Task] = None

    @classmethod
    async def load(cls, storage: Storage) -> "SessionStore":
        raw = await storage.get_item(StorageKey.CHAT_SESSIONS, [])
        sessions = parse_sessions(raw)
        current_id = await storage.get_item(StorageKey.CURRENT_SESSION_ID, "")
        store = cls(storage, sessions, current_id if isinstance(current_id, str) else None)
        if sessions is None:
            logger.info("No usable sessions stored, starting with a default session")
            await storage.set_item(StorageKey.CHAT_SESSIONS, store._dump())
        return store

    # --- persistence ---

    def _dump(self) -> List[dict]:
        return [s.model_dump(mode="json") for s in self._sessions]

    def _schedule_write(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the next flush() writes the latest snapshot.
            return
        if self._writer is None or self._writer.done():
            self._writer = loop.create_task(self._write_pending())

    async def _write_pending(self) -> None:
        while self._sessions_dirty or self._current_dirty:
            if self._sessions_dirty:
                self._sessions_dirty = False
                await self.storage.set_item(StorageKey.CHAT_SESSIONS, self._dump())
            if self._current_dirty:
                self._current_dirty = False
                await self.storage.set_item(
                    StorageKey.CURRENT_SESSION_ID, self._current_id or ""
                )

    async def flush(self) -> None:
        """Waits until every change made so far has been handed to storage."""
        if self._writer is not None and not self._writer.done():
            await self._writer
        await self._write_pending()

    # --- reads ---

    def list(self) -> List[Session]:
        if not self._sessions:
            self._sessions = default_sessions()
            self._sessions_dirty = True
            self._schedule_write()
        return list(self._sessions)

    def sorted(self) -> List[Session]:
        return sort_sessions(self.list())

    def get(self, session_id: str) -> Optional[Session]:
        return next((s for s in self._sessions if s.id == session_id), None)

    def current_session_id(self) -> str:
        sessions = self.sorted()
        if self._current_id and any(s.id == self._current_id for s in sessions):
            return self._current_id
        return sessions[0].id

    def get_current(self) -> Session:
        session_id = self.current_session_id()
        sessions = self.list()
        current = next((s for s in sessions if s.id == session_id), None)
        if current is None:
            return sessions[-1]
        return current

    def get_current_messages(self) -> List[Message]:
        return list(self.get_current().messages)

    # --- writes ---

    def update(self, fn: Callable[[List[Session]], List[Session]]) -> None:
        """Replaces the session list with ``fn(current_list)``.

        A result that is missing, not a list of sessions, or empty is
        discarded in favour of a single default session.
        """
        updated = fn(list(self._sessions))
        if not _is_session_list(updated):
            logger.error("Session update produced an invalid list, using defaults")
            updated = default_sessions()
        self._sessions = list(updated)
        self._sessions_dirty = True
        self._schedule_write()

    def set_current(self, session_id: str) -> None:
        logger.info(f"Switching current session from {self._current_id} to {session_id}")
        self._current_id = session_id
        self._current_dirty = True
        self._schedule_write()

    def create(self, session: Session) -> Session:
        self.update(lambda sessions: [*sessions, session])
        self.set_current(session.id)
        return session

    def create_empty(self, default_prompt: Optional[str] = None) -> Session:
        system = Message(role=SYSTEM_ROLE, content=default_prompt or DEFAULT_PROMPT)
        return self.create(
            Session(name=DEFAULT_SESSION_NAME, type=CHAT_SESSION, messages=[system])
        )

    def modify(self, session: Session) -> None:
        self.update(
            lambda sessions: [session if s.id == session.id else s for s in sessions]
        )

    def modify_name(self, session_id: str, name: str) -> None:
        self.update(
            lambda sessions: [
                s.model_copy(update={"name": name}) if s.id == session_id else s
                for s in sessions
            ]
        )

    def remove(self, session_id: str) -> None:
        self.update(lambda sessions: [s for s in sessions if s.id != session_id])

    def clear(self, session_id: str) -> None:
        """Drops every message except the system prompt."""
        session = self.get(session_id)
        if session is None:
            return
        self.modify(
            session.model_copy(
                update={"messages": [m for m in session.messages if m.role == SYSTEM_ROLE]}
            )
        )

    def copy(self, source: Session) -> Session:
        duplicate = source.model_copy(
            update={"id": str(uuid.uuid4()), "messages": list(source.messages)}
        )

        def insert_after_source(sessions: List[Session]) -> List[Session]:
            index = next((i for i, s in enumerate(sessions) if s.id == source.id), 0)
            return [*sessions[: index + 1], duplicate, *sessions[index + 1 :]]

        self.update(insert_after_source)
        return duplicate

    def insert_message(self, session_id: str, msg: Message) -> None:
        _refresh_counts(msg)
        stored = msg.model_copy()
        self.update(
            lambda sessions: [
                s.model_copy(update={"messages": [*s.messages, stored]})
                if s.id == session_id
                else s
                for s in sessions
            ]
        )

    def modify_message(
        self, session_id: str, updated: Message, refresh_counting: bool = False
    ) -> bool:
        """Replaces the message with ``updated.id`` in the given session.

        Returns whether a message was found and replaced.
        """
        if refresh_counting:
            _refresh_counts(updated)
        updated.timestamp = datetime.now(timezone.utc)
        stored = updated.model_copy()
        handled = False

        def replace(sessions: List[Session]) -> List[Session]:
            nonlocal handled
            result = []
            for s in sessions:
                if s.id == session_id and any(m.id == stored.id for m in s.messages):
                    handled = True
                    s = s.model_copy(
                        update={
                            "messages": [
                                stored if m.id == stored.id else m for m in s.messages
                            ]
                        }
                    )
                result.append(s)
            return result

        self.update(replace)
        return handled

    def has_message(self, session_id: str, message_id: str) -> bool:
        session = self.get(session_id)
        return session is not None and any(m.id == message_id for m in session.messages)
