"""
Tests for context-window selection.
"""

import pytest
from chatdesk.engine import UNBOUNDED_CONTEXT_THRESHOLD, build_context
from chatdesk.models import ASSISTANT_ROLE, SYSTEM_ROLE, USER_ROLE, Message
from chatdesk.settings import Settings


def _turns(count):
    roles = [USER_ROLE, ASSISTANT_ROLE]
    return [Message(role=roles[i % 2], content=f"m{i}") for i in range(count)]


def _contents(messages):
    return [m.content for m in messages]


@pytest.fixture
def system():
    return Message(role=SYSTEM_ROLE, content="sys")


class TestBuildContext:
    def test_empty_raises(self, settings):
        with pytest.raises(ValueError):
            build_context(settings, [])

    @pytest.mark.parametrize("limit,total", [(0, 5), (3, 5), (5, 5), (5, 3), (10, 25), (20, 25)])
    def test_system_plus_most_recent(self, system, limit, total):
        settings = Settings(openai_max_context_message_count=limit)
        messages = [system, *_turns(total)]

        result = build_context(settings, messages)

        kept = min(limit, total)
        assert result[0] is system
        assert len(result) == 1 + kept
        assert _contents(result[1:]) == [f"m{i}" for i in range(total - kept, total)]

    def test_without_system_message(self):
        settings = Settings(openai_max_context_message_count=2)
        result = build_context(settings, _turns(5))
        assert _contents(result) == ["m3", "m4"]

    def test_limit_above_threshold_keeps_everything(self, system):
        settings = Settings(openai_max_context_message_count=UNBOUNDED_CONTEXT_THRESHOLD + 1)
        messages = [system, *_turns(50)]
        assert build_context(settings, messages) == messages

    def test_limit_at_threshold_is_applied(self, system):
        settings = Settings(openai_max_context_message_count=UNBOUNDED_CONTEXT_THRESHOLD)
        result = build_context(settings, [system, *_turns(30)])
        assert len(result) == 1 + UNBOUNDED_CONTEXT_THRESHOLD

    def test_negative_limit_keeps_only_system(self, system):
        settings = Settings(openai_max_context_message_count=-3)
        assert build_context(settings, [system, *_turns(4)]) == [system]

    def test_failed_messages_are_skipped(self, system):
        settings = Settings(openai_max_context_message_count=2)
        turns = _turns(4)
        turns[3] = turns[3].model_copy(update={"error": "timeout", "error_code": 10002})

        result = build_context(settings, [system, *turns])

        assert _contents(result) == ["sys", "m1", "m2"]

    def test_system_message_not_first_is_ordinary(self, system):
        settings = Settings(openai_max_context_message_count=1)
        result = build_context(settings, [*_turns(2), system])
        assert result == [system]

    def test_result_is_chronological(self, sample_messages, settings):
        result = build_context(settings, sample_messages)
        assert result == sample_messages
