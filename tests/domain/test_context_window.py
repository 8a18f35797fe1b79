"""Tests for token budgeting and window compression."""
import pytest

from convo_agent.domain.context.context_window import ContextWindowManager
from convo_agent.domain.models import Message, MessageRole, ToolCall


def user(text: str) -> Message:
    return Message(role=MessageRole.USER, content=text)


@pytest.fixture
def windows():
    return ContextWindowManager(
        max_tokens=100,
        compress_after_tokens=50,
        recent_messages_to_keep=2,
        high_value_content_length=500
    )


class TestTokenEstimate:
    """Four characters per token, rounded up."""

    def test_estimate_rounds_up(self):
        assert ContextWindowManager.estimate_tokens("") == 0
        assert ContextWindowManager.estimate_tokens("abcd") == 1
        assert ContextWindowManager.estimate_tokens("abcde") == 2


class TestCompression:
    """Compression keeps recent and high-value messages within the budget."""

    def test_push_below_threshold_keeps_everything(self, windows):
        windows.open("c1")
        for _ in range(5):
            assert windows.push("c1", user("x" * 40)) is False

        window = windows.get("c1")
        assert len(window.messages) == 5
        assert window.current_tokens == 50

    def test_overflow_keeps_most_recent_in_order(self, windows):
        windows.open("c1")
        pushed = [user(f"{i}" * 40) for i in range(6)]
        results = [windows.push("c1", message) for message in pushed]

        window = windows.get("c1")
        assert results[-1] is True
        assert [m.id for m in window.messages] == [pushed[4].id, pushed[5].id]
        assert window.current_tokens == 20

    def test_high_value_messages_survive(self, windows):
        windows.open("c1")
        system = Message(role=MessageRole.SYSTEM, content="s" * 40)
        tool = Message(role=MessageRole.AGENT, content="t" * 40, tool_calls=[ToolCall(tool_name="search")])
        windows.push("c1", system)
        windows.push("c1", tool)
        rest = [user("u" * 40) for _ in range(4)]
        for message in rest:
            windows.push("c1", message)

        window = windows.get("c1")
        assert [m.id for m in window.messages] == [system.id, tool.id, rest[2].id, rest[3].id]

    def test_hard_budget_drops_oldest_retained(self):
        windows = ContextWindowManager(
            max_tokens=100,
            compress_after_tokens=50,
            recent_messages_to_keep=10,
            high_value_content_length=10
        )
        windows.open("c1")
        pushed = [user(f"{i}" * 120) for i in range(4)]
        for message in pushed:
            windows.push("c1", message)

        window = windows.get("c1")
        assert window.current_tokens <= window.max_tokens
        assert [m.id for m in window.messages] == [m.id for m in pushed[1:]]

    def test_rebuild_applies_compression(self, windows):
        messages = [user("r" * 40) for _ in range(8)]

        window = windows.rebuild("c1", messages)

        assert [m.id for m in window.messages] == [messages[6].id, messages[7].id]


class TestWindowAccess:
    """Lookup, detachment and removal."""

    def test_get_returns_detached_copy(self, windows):
        windows.open("c1")
        windows.push("c1", user("hello"))

        copy = windows.get("c1")
        copy.messages.clear()

        assert len(windows.get("c1").messages) == 1

    def test_unknown_conversation(self, windows):
        assert windows.get("missing") is None
        assert windows.push("missing", user("hello")) is False
        assert windows.compress("missing") is None
        assert windows.drop("missing") is False

    def test_drop_removes_window(self, windows):
        windows.open("c1")

        assert windows.drop("c1") is True
        assert "c1" not in windows
