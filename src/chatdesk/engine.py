"""Generation pipeline: from a submitted user message to a finished reply.

An assistant message moves through ``queued -> generating -> completed`` or
``failed``. The terminal states are final for that message id; regenerating
always mints a new message.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Set

from .errors import EXPECTED_ERRORS, BaseError
from .models import (
    ASSISTANT_ROLE,
    CHAT_SESSION,
    PLACEHOLDER,
    SYSTEM_ROLE,
    Message,
    ModelProvider,
    create_message,
)
from .settings import Settings
from .throttle import Throttle
from .tokens import estimate_tokens_from_messages

if TYPE_CHECKING:
    from . import ChatDesk

logger = logging.getLogger(__name__)

# Above this configured count the message limit is not applied at all.
UNBOUNDED_CONTEXT_THRESHOLD = 20
# Rough per-message prompt overhead used for the logged size estimate.
MESSAGE_OVERHEAD_TOKENS = 20


def build_context(settings: Settings, messages: Sequence[Message]) -> List[Message]:
    """Selects the prior messages replayed to the model for one generation.

    A leading system message is always kept. The remaining messages are taken
    newest first, skipping failed ones, until the configured count is reached;
    so truncation drops the oldest turns. The result is chronological.

    Raises
    ------
    ValueError
        If ``messages`` is empty.
    """
    if not messages:
        raise ValueError("No messages to replay")

    head = messages[0] if messages[0].role == SYSTEM_ROLE else None
    rest = messages[1:] if head is not None else list(messages)

    limit = settings.openai_max_context_message_count
    total_tokens = estimate_tokens_from_messages([head]) if head is not None else 0
    selected: List[Message] = []
    for msg in reversed(rest):
        if msg.error or msg.error_code:
            continue
        if limit <= UNBOUNDED_CONTEXT_THRESHOLD and len(selected) >= max(limit, 0):
            break
        selected.append(msg)
        total_tokens += estimate_tokens_from_messages([msg]) + MESSAGE_OVERHEAD_TOKENS
    selected.reverse()

    logger.debug(f"Context window: {len(selected)} messages, ~{total_tokens} tokens")
    if head is not None:
        return [head, *selected]
    return selected


def is_finished(msg: Optional[Message]) -> bool:
    """Whether ``msg`` reached a terminal state: a reply or an error."""
    if msg is None or msg.generating:
        return False
    return msg.error is not None or msg.content not in ("", PLACEHOLDER)


class Engine:
    """Runs generations against the sessions of the bound app.

    Parameters
    ----------
    app : ChatDesk, optional
        The application handle providing ``sessions``, ``models``,
        ``settings`` and ``tracker``. May be bound after construction.
    throttle_interval : float, default=0.1
        Minimum seconds between two partial-content writes.
    defer : float, default=0.15
        Pause between submitting and starting generation, letting the UI
        render the new messages first.
    """

    def __init__(
        self,
        app: Optional["ChatDesk"] = None,
        throttle_interval: float = 0.1,
        defer: float = 0.15,
    ):
        self.app = app
        self.throttle_interval = throttle_interval
        self.defer = defer
        self._tasks: Set[asyncio.Task] = set()
        self._in_flight: Dict[str, str] = {}

    @property
    def in_flight(self) -> Dict[str, str]:
        """Message id to session id for every running generation."""
        return dict(self._in_flight)

    async def submit(
        self, session_id: str, user_message: Message, need_generating: bool = True
    ) -> Optional[asyncio.Task]:
        """Appends a user message and, if asked, starts generating a reply.

        Returns the background generation task, or None when no reply is
        generated.
        """
        sessions = self.app.sessions
        logger.info(
            f"Submitting message {user_message.id} ({len(user_message.content)} chars) "
            f"to session {session_id}, generating={need_generating}"
        )
        sessions.insert_message(session_id, user_message)
        if not need_generating:
            return None

        assistant = create_message(ASSISTANT_ROLE, "")
        assistant.generating = True
        sessions.insert_message(session_id, assistant)

        task = asyncio.create_task(
            self._generate_in_active_session(session_id, user_message, assistant)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _generate_in_active_session(
        self, session_id: str, user_message: Message, assistant: Message
    ) -> None:
        if self.defer:
            await asyncio.sleep(self.defer)

        sessions = self.app.sessions
        active_id = sessions.current_session_id()
        if active_id != session_id:
            logger.info(
                f"Active session changed from {session_id} to {active_id}, "
                f"continuing generation there"
            )
            if not sessions.has_message(active_id, user_message.id):
                sessions.insert_message(active_id, user_message)
            if not sessions.has_message(active_id, assistant.id):
                sessions.insert_message(active_id, assistant)
            self._close_stale_copy(session_id, assistant.id)
            session_id = active_id

        await self.generate(session_id, assistant)

    async def generate(self, session_id: str, target: Message) -> None:
        """Produces the content of ``target`` and finalizes it.

        Failures end up on the message as ``error``/``error_code``; only
        unexpected kinds are also reported to the tracker. Nothing is raised,
        except cancellation of the calling task.
        """
        if target.id in self._in_flight:
            logger.warning(f"Message {target.id} is already being generated")
            return

        sessions = self.app.sessions
        settings = self.app.settings

        session = sessions.get(session_id)
        if session is None:
            logger.warning(f"Session {session_id} not found, using the current session")
            current = sessions.get_current()
            if current is None:
                logger.error("No session available, abandoning generation")
                return
            session_id = current.id
            if not sessions.has_message(session_id, target.id):
                sessions.insert_message(session_id, target)
            session = sessions.get(session_id)
            if session is None:
                return

        if is_finished(self._find(session_id, target.id)):
            logger.warning(f"Message {target.id} already finished, not regenerating it")
            return

        provider = ModelProvider(settings.ai_provider).value
        target = target.model_copy(
            update={
                "content": PLACEHOLDER,
                "cancel": None,
                "ai_provider": provider,
                "model": settings.provider_config().model or None,
                "generating": True,
                "error": None,
                "error_code": None,
                "error_extra": None,
            }
        )
        sessions.modify_message(session_id, target)
        self._in_flight[target.id] = session_id

        messages = session.messages
        target_index = next(
            (i for i, m in enumerate(messages) if m.id == target.id), len(messages)
        )

        def write_partial(text: str, cancel) -> None:
            nonlocal target
            target = target.model_copy(update={"content": text, "cancel": cancel})
            sessions.modify_message(session_id, target)

        throttled = Throttle(write_partial, self.throttle_interval)
        try:
            model = self.app.models.get_or_create(settings)
            if session.type != CHAT_SESSION:
                raise ValueError(f"Unknown session type: {session.type}, generate failed")

            context = build_context(settings, messages[:target_index])
            logger.info(
                f"Generating {target.id} with {model.name} ({model.model_name}), "
                f"{len(context)} context messages"
            )
            final_text = await model.chat(context, throttled)
            throttled.flush()

            if not final_text and target.content != PLACEHOLDER:
                final_text = target.content
            target = target.model_copy(
                update={
                    "content": final_text,
                    "generating": False,
                    "cancel": None,
                    "model": model.model_name,
                }
            )
            sessions.modify_message(session_id, target, refresh_counting=True)
            logger.info(f"Finished {target.id}: {len(target.content)} chars")
        except asyncio.CancelledError:
            throttled.flush()
            self._finalize_failed(session_id, target)
            raise
        except Exception as err:
            throttled.flush()
            logger.error(f"Generation of {target.id} failed: {err}")
            if not isinstance(err, EXPECTED_ERRORS):
                self.app.tracker.capture_exception(err)
            self._finalize_failed(session_id, target, err, provider)
        finally:
            self._in_flight.pop(target.id, None)

    def _finalize_failed(
        self,
        session_id: str,
        target: Message,
        err: Optional[Exception] = None,
        provider: Optional[str] = None,
    ) -> None:
        # Re-read the working copy the partial writes left in the store.
        stored = self._find(session_id, target.id) or target
        update = {
            "generating": False,
            "cancel": None,
            "content": "" if stored.content == PLACEHOLDER else stored.content,
        }
        if err is not None:
            update.update(
                error=str(err) or type(err).__name__,
                error_code=err.code if isinstance(err, BaseError) else None,
                error_extra={"ai_provider": provider, "host": getattr(err, "host", None)},
            )
        self.app.sessions.modify_message(
            session_id, stored.model_copy(update=update), refresh_counting=True
        )

    def _close_stale_copy(self, session_id: str, message_id: str) -> None:
        # The originating session never receives the terminal write.
        stale = self._find(session_id, message_id)
        if stale is None or not stale.generating:
            return
        content = "" if stale.content == PLACEHOLDER else stale.content
        self.app.sessions.modify_message(
            session_id,
            stale.model_copy(update={"generating": False, "cancel": None, "content": content}),
        )

    def _find(self, session_id: str, message_id: str) -> Optional[Message]:
        session = self.app.sessions.get(session_id)
        if session is None:
            return None
        return next((m for m in session.messages if m.id == message_id), None)

    def cancel(self, message_id: str) -> bool:
        """Asks the stream producing ``message_id`` to stop.

        Returns False when the generation has not started streaming yet, so
        there is no handle to invoke.
        """
        session_id = self._in_flight.get(message_id)
        if session_id is None:
            return False
        msg = self._find(session_id, message_id)
        if msg is None or msg.cancel is None:
            return False
        logger.info(f"Cancelling generation of {message_id}")
        msg.cancel()
        return True

    async def regenerate(self, session_id: str, message_id: str) -> Optional[asyncio.Task]:
        """Replaces an assistant message with a fresh one and generates it."""
        sessions = self.app.sessions
        if self._find(session_id, message_id) is None:
            return None

        fresh = create_message(ASSISTANT_ROLE, "")
        fresh.generating = True
        sessions.update(
            lambda all_sessions: [
                s.model_copy(
                    update={
                        "messages": [fresh if m.id == message_id else m for m in s.messages]
                    }
                )
                if s.id == session_id
                else s
                for s in all_sessions
            ]
        )
        task = asyncio.create_task(self.generate(session_id, fresh))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait(self) -> None:
        """Waits for every background generation started by this engine."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
