"""Tests for the memory manager facade.

Covers conversation lifecycle, append ordering, summarization, extraction,
memory search and the capacity-driven eviction policy.
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import GatedMemoryManager
from convo_agent.domain.context.extraction import BaseMemoryExtractor
from convo_agent.domain.context.memory_manager import MemoryManager
from convo_agent.domain.errors import NotFoundError, RequestValidationError
from convo_agent.domain.models import (
    MemoryDraft, MemorySearchOptions, MemoryType, MessageRole, TimeRange, ToolCall
)
from convo_agent.infrastructure.config import Settings


class ExplodingExtractor(BaseMemoryExtractor):
    def extract(self, message, owner_id):
        raise RuntimeError("extractor broke")


def draft(content="note", confidence=0.8, timestamp=None, **kwargs):
    return MemoryDraft(
        type=kwargs.pop("type", MemoryType.FACT),
        content=content,
        confidence=confidence,
        source="test",
        timestamp=timestamp or datetime.utcnow(),
        **kwargs
    )


class TestConversations:
    """Conversation creation, reads and deletion."""

    @pytest.mark.asyncio
    async def test_hello_hi_there_scenario(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1")
        await memory_manager.add_message(conversation_id, MessageRole.USER, "hello")
        second = await memory_manager.add_message(conversation_id, MessageRole.AGENT, "hi there")

        conversation = await memory_manager.get_conversation(conversation_id)

        assert len(conversation.messages) == 2
        assert conversation.last_activity == second.timestamp
        assert [m.content for m in conversation.messages] == ["hello", "hi there"]

    @pytest.mark.asyncio
    async def test_messages_keep_call_order(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1")
        sent = []
        for i in range(25):
            role = MessageRole.USER if i % 2 == 0 else MessageRole.AGENT
            message = await memory_manager.add_message(conversation_id, role, f"message {i}")
            sent.append(message.id)

        conversation = await memory_manager.get_conversation(conversation_id, include_context=False)

        assert [m.id for m in conversation.messages] == sent
        timestamps = [m.timestamp for m in conversation.messages]
        assert timestamps == sorted(timestamps)

    @pytest.mark.asyncio
    async def test_first_message_is_recorded(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1", title="Trip", first_message="plan a trip")

        conversation = await memory_manager.get_conversation(conversation_id)
        window = await memory_manager.get_context_window(conversation_id)

        assert conversation.title == "Trip"
        assert [m.content for m in conversation.messages] == ["plan a trip"]
        assert len(window.messages) == 1

    @pytest.mark.asyncio
    async def test_add_message_to_unknown_conversation_raises(self, memory_manager):
        with pytest.raises(NotFoundError):
            await memory_manager.add_message("conv-missing", MessageRole.USER, "hello")

    @pytest.mark.asyncio
    async def test_invalid_role_raises_validation_error(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1")

        with pytest.raises(RequestValidationError):
            await memory_manager.add_message(conversation_id, "robot", "beep")

    @pytest.mark.asyncio
    async def test_reads_of_unknown_ids_return_empty(self, memory_manager):
        assert await memory_manager.get_conversation("conv-missing") is None
        assert await memory_manager.get_context_window("conv-missing") is None
        assert await memory_manager.export_conversation("conv-missing") is None
        assert await memory_manager.delete_conversation("conv-missing") is False

    @pytest.mark.asyncio
    async def test_snapshot_is_detached(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1")
        await memory_manager.add_message(conversation_id, MessageRole.USER, "hello")

        snapshot = await memory_manager.get_conversation(conversation_id)
        snapshot.messages.clear()

        again = await memory_manager.get_conversation(conversation_id)
        assert len(again.messages) == 1

    @pytest.mark.asyncio
    async def test_context_enrichment_is_not_persisted(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1", title="coffee")
        await memory_manager.add_memory(draft("coffee is great", confidence=0.9))

        enriched = await memory_manager.get_conversation(conversation_id)
        plain = await memory_manager.get_conversation(conversation_id, include_context=False)

        assert [m.content for m in enriched.context["relevant_memories"]] == ["coffee is great"]
        assert "last_updated" in enriched.context
        assert "relevant_memories" not in plain.context

    @pytest.mark.asyncio
    async def test_delete_removes_conversation_and_window(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1")

        assert await memory_manager.delete_conversation(conversation_id) is True
        assert await memory_manager.get_conversation(conversation_id) is None
        assert await memory_manager.get_context_window(conversation_id) is None

    @pytest.mark.asyncio
    async def test_user_conversations_most_recent_first(self, memory_manager):
        first = await memory_manager.create_conversation("u1")
        second = await memory_manager.create_conversation("u1")
        await memory_manager.create_conversation("u2")
        memory_manager.conversation_store.get(first).last_activity = datetime.utcnow() + timedelta(minutes=5)

        conversations = await memory_manager.get_user_conversations("u1")

        assert [c.id for c in conversations] == [first, second]

    @pytest.mark.asyncio
    async def test_restore_keeps_loaded_conversation(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1")
        await memory_manager.add_message(conversation_id, MessageRole.USER, "hello")

        restored = await memory_manager.restore_conversation(conversation_id, "u1", messages=[])

        assert len(restored.messages) == 1

    @pytest.mark.asyncio
    async def test_import_rejects_malformed_bundle(self, memory_manager):
        assert await memory_manager.import_conversation({"conversation": {"owner_id": 5}}) is None
        assert await memory_manager.import_conversation({}) is None

    @pytest.mark.asyncio
    async def test_export_then_import_into_fresh_manager(self, memory_manager, settings):
        conversation_id = await memory_manager.create_conversation("u1", title="tea")
        await memory_manager.add_message(conversation_id, MessageRole.USER, "tea time")
        bundle = await memory_manager.export_conversation(conversation_id)

        other = MemoryManager(settings=settings)
        imported = await other.import_conversation(bundle)

        conversation = await other.get_conversation(imported, include_context=False)
        assert imported == conversation_id
        assert [m.content for m in conversation.messages] == ["tea time"]
        assert await other.get_context_window(conversation_id) is not None


class TestToolResults:
    """Late tool result attachment."""

    @pytest.mark.asyncio
    async def test_result_attaches_at_most_once(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1")
        call = ToolCall(tool_name="search", parameters={"q": "x"})
        message = await memory_manager.add_message(conversation_id, MessageRole.AGENT, "searching", tool_calls=[call])

        assert await memory_manager.attach_tool_result(conversation_id, message.id, call.id, {"hits": 3}) is True
        assert await memory_manager.attach_tool_result(conversation_id, message.id, call.id, {"hits": 9}) is False

        conversation = await memory_manager.get_conversation(conversation_id, include_context=False)
        assert conversation.messages[0].tool_calls[0].result == {"hits": 3}

    @pytest.mark.asyncio
    async def test_unknown_call_raises(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1")
        message = await memory_manager.add_message(conversation_id, MessageRole.AGENT, "no tools")

        with pytest.raises(NotFoundError):
            await memory_manager.attach_tool_result(conversation_id, message.id, "tc-missing", 1)
        with pytest.raises(NotFoundError):
            await memory_manager.attach_tool_result(conversation_id, "msg-missing", "tc-missing", 1)


class TestSummarization:
    """Extractive summary once the message threshold is reached."""

    @pytest.mark.asyncio
    async def test_summary_after_threshold_and_not_overwritten(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1")

        for i in range(49):
            await memory_manager.add_message(conversation_id, MessageRole.USER, f"turn {i}")
        conversation = await memory_manager.get_conversation(conversation_id, include_context=False)
        assert conversation.summary is None

        for i in range(49, 51):
            await memory_manager.add_message(conversation_id, MessageRole.USER, f"turn {i}")
        conversation = await memory_manager.get_conversation(conversation_id, include_context=False)
        summary = conversation.summary
        assert summary is not None
        assert "turn 49" in summary
        assert "turn 10" not in summary

        await memory_manager.add_message(conversation_id, MessageRole.USER, "turn 51")
        conversation = await memory_manager.get_conversation(conversation_id, include_context=False)
        assert conversation.summary == summary

    @pytest.mark.asyncio
    async def test_summary_truncates_long_messages(self):
        manager = MemoryManager(settings=Settings(background_side_effects=False, summarize_after_messages=2))
        conversation_id = await manager.create_conversation("u1")

        await manager.add_message(conversation_id, MessageRole.USER, "x" * 300)
        await manager.add_message(conversation_id, MessageRole.AGENT, "short")

        conversation = await manager.get_conversation(conversation_id, include_context=False)
        assert "x" * 200 + "..." in conversation.summary
        assert "x" * 201 not in conversation.summary


class TestExtraction:
    """Derived memories and best-effort isolation."""

    @pytest.mark.asyncio
    async def test_preference_is_extracted(self, memory_manager):
        conversation_id = await memory_manager.create_conversation("u1")
        message = await memory_manager.add_message(conversation_id, MessageRole.USER, "I like green tea")

        memories = await memory_manager.memories_for_messages([message.id])

        assert [m.type for m in memories] == [MemoryType.PREFERENCE]
        assert memories[0].metadata["owner_id"] == "u1"
        assert memories[0].source == f"conversation-{message.id}"

    @pytest.mark.asyncio
    async def test_extractor_failure_does_not_fail_append(self, settings, metrics):
        manager = MemoryManager(settings=settings, extractor=ExplodingExtractor(), metrics=metrics)
        conversation_id = await manager.create_conversation("u1")

        message = await manager.add_message(conversation_id, MessageRole.USER, "hello")

        conversation = await manager.get_conversation(conversation_id, include_context=False)
        assert conversation.messages[-1].id == message.id
        assert metrics.get_counter("memory.extraction.failures") == 1

    @pytest.mark.asyncio
    async def test_background_side_effects_complete_on_flush(self):
        manager = MemoryManager(settings=Settings(background_side_effects=True))
        conversation_id = await manager.create_conversation("u1")

        message = await manager.add_message(conversation_id, MessageRole.USER, "I prefer window seats")
        await manager.flush()

        memories = await manager.memories_for_messages([message.id])
        assert len(memories) == 1
        assert manager.get_memory_stats()["pending_side_effects"] == 0

    @pytest.mark.asyncio
    async def test_waiting_on_own_messages_ignores_other_conversations(self):
        manager = GatedMemoryManager("slow", settings=Settings(background_side_effects=True))
        slow_conversation = await manager.create_conversation("slow")
        conversation_id = await manager.create_conversation("u1")

        await manager.add_message(slow_conversation, MessageRole.USER, "I like green tea")
        message = await manager.add_message(conversation_id, MessageRole.USER, "I prefer window seats")
        await asyncio.wait_for(manager.wait_for_messages([message.id]), 1.0)

        assert len(await manager.memories_for_messages([message.id])) == 1
        assert manager.get_memory_stats()["pending_side_effects"] == 1

        manager.gate.set()
        await manager.flush()
        assert manager.get_memory_stats()["pending_side_effects"] == 0


class TestMemorySearch:
    """Filtering and ranking of memories."""

    @pytest.mark.asyncio
    async def test_confidence_floor_and_time_range(self, memory_manager):
        now = datetime.utcnow()
        await memory_manager.add_memory(draft("low", confidence=0.3, timestamp=now))
        await memory_manager.add_memory(draft("old", confidence=0.9, timestamp=now - timedelta(days=10)))
        await memory_manager.add_memory(draft("fresh", confidence=0.9, timestamp=now - timedelta(hours=1)))

        results = await memory_manager.search_memories(MemorySearchOptions(
            min_confidence=0.5,
            time_range=TimeRange(start=now - timedelta(days=1), end=now)
        ))

        assert [m.content for m in results] == ["fresh"]
        assert all(m.confidence >= 0.5 for m in results)

    @pytest.mark.asyncio
    async def test_ranking_prefers_confidence_then_recency(self, memory_manager):
        now = datetime.utcnow()
        await memory_manager.add_memory(draft("older confident", confidence=0.9, timestamp=now - timedelta(days=1)))
        await memory_manager.add_memory(draft("newer unsure", confidence=0.6, timestamp=now))
        await memory_manager.add_memory(draft("newer confident", confidence=0.9, timestamp=now))

        results = await memory_manager.search_memories(query="", limit=2)

        assert [m.content for m in results] == ["newer confident", "older confident"]

    @pytest.mark.asyncio
    async def test_query_matches_content_or_tags_case_insensitively(self, memory_manager):
        await memory_manager.add_memory(draft("Loves Jazz"))
        await memory_manager.add_memory(draft("unrelated", tags={"JAZZ-club"}))
        await memory_manager.add_memory(draft("nothing here"))

        results = await memory_manager.search_memories(query="jazz")

        assert {m.content for m in results} == {"Loves Jazz", "unrelated"}

    @pytest.mark.asyncio
    async def test_type_and_tag_filters(self, memory_manager):
        await memory_manager.add_memory(draft("a", type=MemoryType.SKILL, tags={"python"}))
        await memory_manager.add_memory(draft("b", type=MemoryType.SKILL, tags={"go"}))
        await memory_manager.add_memory(draft("c", type=MemoryType.FACT, tags={"python"}))

        results = await memory_manager.search_memories(type=MemoryType.SKILL, tags=["python"])

        assert [m.content for m in results] == ["a"]

    @pytest.mark.asyncio
    async def test_invalid_options_raise(self, memory_manager):
        with pytest.raises(RequestValidationError):
            await memory_manager.search_memories(limit=0)
        with pytest.raises(RequestValidationError):
            await memory_manager.search_memories(min_confidence=1.5)

    @pytest.mark.asyncio
    async def test_add_memory_accepts_mapping(self, memory_manager):
        memory_id = await memory_manager.add_memory({
            "type": "fact",
            "content": "sky is blue",
            "confidence": 0.7,
            "source": "manual"
        })

        assert memory_manager.memory_store.get(memory_id).content == "sky is blue"

        with pytest.raises(RequestValidationError):
            await memory_manager.add_memory({"type": "fact", "content": "x", "confidence": 2, "source": "s"})

    @pytest.mark.asyncio
    async def test_aware_timestamps_are_stored_as_naive_utc(self, memory_manager):
        memory_id = await memory_manager.add_memory({
            "type": "fact",
            "content": "sky is blue",
            "confidence": 0.7,
            "source": "manual",
            "timestamp": "2024-05-01T12:00:00+02:00"
        })

        stored = memory_manager.memory_store.get(memory_id)
        assert stored.timestamp == datetime(2024, 5, 1, 10, 0)
        assert stored.timestamp.tzinfo is None

    @pytest.mark.asyncio
    async def test_aware_time_range_filters_without_error(self, memory_manager):
        now = datetime.utcnow()
        await memory_manager.add_memory(draft("sky is blue", timestamp=now))
        await memory_manager.add_memory(draft("sky was grey", timestamp=now - timedelta(days=3)))

        results = await memory_manager.search_memories(
            query="sky",
            time_range={
                "start": (now - timedelta(days=1)).isoformat() + "Z",
                "end": (now + timedelta(hours=1)).isoformat() + "+00:00"
            }
        )

        assert [m.content for m in results] == ["sky is blue"]


class TestEviction:
    """Capacity-driven eviction of memories and conversations."""

    @pytest.mark.asyncio
    async def test_memory_cap_evicts_lowest_score(self):
        manager = MemoryManager(settings=Settings(background_side_effects=False, max_memories=2))
        now = datetime.utcnow()

        first = await manager.add_memory(draft("first", timestamp=now - timedelta(hours=3)))
        second = await manager.add_memory(draft("second", timestamp=now - timedelta(hours=2)))
        third = await manager.add_memory(draft("third", timestamp=now - timedelta(hours=1)))

        remaining = {m.id for m in manager.memory_store.all()}
        assert remaining == {second, third}
        assert first not in remaining

    @pytest.mark.asyncio
    async def test_expired_memories_go_first(self):
        manager = MemoryManager(settings=Settings(background_side_effects=False, max_memories=2))
        now = datetime.utcnow()

        expired = await manager.add_memory(draft("expired", confidence=1.0, expires_at=now - timedelta(minutes=1)))
        kept_a = await manager.add_memory(draft("a", confidence=0.5))
        kept_b = await manager.add_memory(draft("b", confidence=0.5))

        assert {m.id for m in manager.memory_store.all()} == {kept_a, kept_b}
        assert manager.memory_store.get(expired) is None

    @pytest.mark.asyncio
    async def test_conversation_cap_evicts_least_recently_active(self):
        manager = MemoryManager(settings=Settings(background_side_effects=False, max_conversations=2))
        now = datetime.utcnow()

        oldest = await manager.create_conversation("u1")
        newer = await manager.create_conversation("u1")
        manager.conversation_store.get(oldest).last_activity = now - timedelta(hours=2)
        manager.conversation_store.get(newer).last_activity = now - timedelta(hours=1)

        newest = await manager.create_conversation("u1")

        assert await manager.get_conversation(oldest) is None
        assert await manager.get_context_window(oldest) is None
        assert await manager.get_conversation(newer) is not None
        assert await manager.get_conversation(newest) is not None

    @pytest.mark.asyncio
    async def test_cleanup_reports_counts(self, memory_manager):
        now = datetime.utcnow()
        await memory_manager.add_memory(draft("stale", expires_at=now - timedelta(seconds=1)))

        result = memory_manager.cleanup(now)

        assert result == {"expired_memories": 1, "evicted_memories": 0, "evicted_conversations": 0}

    @pytest.mark.asyncio
    async def test_aware_expiry_is_removed_by_cleanup(self, memory_manager):
        await memory_manager.add_memory({
            "type": "fact",
            "content": "old news",
            "confidence": 0.9,
            "source": "manual",
            "expires_at": "2000-01-01T00:00:00Z"
        })

        assert memory_manager.cleanup()["expired_memories"] == 1
        assert len(memory_manager.memory_store) == 0

    @pytest.mark.asyncio
    async def test_add_memory_at_cap_with_aware_timestamps(self):
        manager = MemoryManager(settings=Settings(background_side_effects=False, max_memories=1))
        base = {"type": "fact", "confidence": 0.8, "source": "manual"}

        await manager.add_memory({**base, "content": "a", "timestamp": "2024-01-01T00:00:00Z"})
        newest = await manager.add_memory({**base, "content": "b", "timestamp": "2024-01-02T00:00:00+01:00"})

        assert [m.id for m in manager.memory_store.all()] == [newest]
