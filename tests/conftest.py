"""
Core pytest configuration and fixtures for chatdesk testing.

This module provides shared test fixtures, a scriptable fake adapter, and
fully wired application instances that never touch the network.
"""

import asyncio
import tempfile
from pathlib import Path
from typing import List, Optional
from unittest.mock import MagicMock

import pytest
from chatdesk import ChatDesk
from chatdesk.cache import ModelCache
from chatdesk.engine import Engine
from chatdesk.llm import LLM
from chatdesk.models import (
    ASSISTANT_ROLE,
    SYSTEM_ROLE,
    USER_ROLE,
    Message,
    Session,
)
from chatdesk.settings import Settings
from chatdesk.store import InMemory, Storage
from chatdesk.tracking import Tracker

# ===== FAKE ADAPTER =====


class FakeLLM(LLM):
    """Adapter whose stream is scripted by the test."""

    name = "Fake"

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        final: Optional[str] = None,
        error: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
        valid: bool = True,
        validate_error: Optional[BaseException] = None,
    ):
        super().__init__(model="fake-1")
        self.chunks = list(chunks or [])
        self.final = final
        self.error = error
        self.gate = gate
        self.valid = valid
        self.validate_error = validate_error
        self.calls: List[List[Message]] = []
        self.validate_calls = 0

    async def validate_connection(self) -> bool:
        self.validate_calls += 1
        if self.validate_error is not None:
            raise self.validate_error
        return self.valid

    async def call_chat_completion(self, messages, stop, on_result_change) -> str:
        self.calls.append(list(messages))
        result = ""
        for chunk in self.chunks:
            if stop.is_set():
                break
            result += chunk
            on_result_change(result)
            await asyncio.sleep(0)
            if self.gate is not None:
                await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.final if self.final is not None else result


# ===== TEST DATA FIXTURES =====


@pytest.fixture
def system_message() -> Message:
    return Message(role=SYSTEM_ROLE, content="You are a helpful assistant.")


@pytest.fixture
def sample_messages(system_message) -> List[Message]:
    """A system prompt followed by two complete turns."""
    return [
        system_message,
        Message(role=USER_ROLE, content="Hello, how are you?"),
        Message(
            role=ASSISTANT_ROLE,
            content="I'm doing well, thank you! How can I help you today?",
        ),
        Message(role=USER_ROLE, content="Can you explain quantum computing?"),
        Message(
            role=ASSISTANT_ROLE,
            content="Quantum computing uses quantum mechanics principles...",
        ),
    ]


@pytest.fixture
def sample_session(sample_messages) -> Session:
    return Session(id="s-001", name="Quantum", messages=sample_messages)


@pytest.fixture
def settings() -> Settings:
    return Settings(ai_provider="echo")


# ===== DIRECTORY FIXTURES =====


@pytest.fixture
def temp_dir():
    """Temporary directory for file-based tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ===== MOCK FIXTURES =====


@pytest.fixture
def mock_tracker():
    return MagicMock(spec=Tracker)


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM(chunks=["Hi", " there"])


@pytest.fixture
def storage() -> Storage:
    return Storage(InMemory())


@pytest.fixture
def make_llm():
    """The FakeLLM class, for tests that script their own stream."""
    return FakeLLM


# ===== APP FIXTURES =====


@pytest.fixture
async def app(fake_llm, mock_tracker, settings):
    """
    Provides a ChatDesk instance wired to the fake adapter.

    Generation starts without the UI settle delay and partial writes are
    throttled at 10ms, so tests stay fast and deterministic.
    """
    app = await ChatDesk.open(
        store=InMemory(),
        models=ModelCache(factory=lambda s: fake_llm, tracker=mock_tracker),
        tracker=mock_tracker,
        engine=Engine(throttle_interval=0.01, defer=0),
        settings=settings,
    )
    yield app
    await app.engine.wait()
    await app.close()


# ===== CONFIGURATION =====


def pytest_configure(config):
    """Pytest configuration."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow-running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


