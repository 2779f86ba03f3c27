"""
Defines the core Pydantic data models for the application.

These models are the contract between the session store, the model adapters
and the generation pipeline. Message fields mirror what the chat window needs
to render a turn: its content, whether it is still streaming, and how it
failed.
"""

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# --- Constants ---
USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
SYSTEM_ROLE = "system"
Role = Literal[USER_ROLE, ASSISTANT_ROLE, SYSTEM_ROLE]

CHAT_SESSION = "chat"
SessionType = Literal[CHAT_SESSION]

# Content shown while an assistant message waits for its first token.
PLACEHOLDER = "..."

DEFAULT_SESSION_NAME = "New Chat"


class ModelProvider(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    CLAUDE = "claude"
    LM_STUDIO = "lm-studio"
    SILICON_FLOW = "silicon-flow"
    PPIO = "ppio"
    ECHO = "echo"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# --- Models ---
class Message(BaseModel):
    """Represents a single turn within a session."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    role: Role
    content: str = ""
    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=_now)

    generating: bool = False
    error: Optional[str] = None
    error_code: Optional[int] = None
    error_extra: Optional[Dict[str, Any]] = None

    word_count: Optional[int] = None
    token_count: Optional[int] = None

    ai_provider: Optional[str] = None
    model: Optional[str] = None

    # Stop handle supplied by the adapter once a stream is running.
    cancel: Optional[Callable[[], Any]] = Field(default=None, exclude=True)


class Session(BaseModel):
    """Represents one conversation and its ordered message history."""

    id: str = Field(default_factory=_new_id)
    name: str = DEFAULT_SESSION_NAME
    type: SessionType = CHAT_SESSION
    messages: List[Message] = Field(default_factory=list)


class ConnectionStatus(BaseModel):
    """Last known reachability of a provider."""

    provider: str
    status: Literal["pending", "connected", "error"]
    error: Optional[str] = None
    last_checked: float = Field(default_factory=time.monotonic)


def create_message(role: str, content: str = "") -> Message:
    return Message(role=role, content=content)


def default_sessions() -> List[Session]:
    """The list substituted whenever the stored sessions are unusable."""
    return [Session()]
