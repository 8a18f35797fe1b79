from typing import Dict, List, Any, Optional, Set, Callable, Union
from datetime import datetime
import asyncio
import inspect
import structlog
from pydantic import ValidationError

from convo_agent.domain.errors import BestEffortFailure, NotFoundError, RequestValidationError
from convo_agent.domain.models import (
    Conversation, ContextWindow, MemoryDraft, MemoryEntry, MemorySearchOptions,
    Message, MessageRole, ToolCall
)
from convo_agent.infrastructure.config import Settings
from convo_agent.infrastructure.observability.logging import MetricsCollector, engine_logger
from .memory.conversation_store import ConversationStore
from .memory.memory_store import MemoryStore
from .context_window import ContextWindowManager
from .extraction import BaseMemoryExtractor, KeywordMemoryExtractor

logger = structlog.get_logger(__name__)


class MemoryManager:
    """Facade over conversations, long-lived memories and context windows.

    Every mutation of the conversation, memory and window stores goes
    through this class. Reads never raise: unknown ids yield ``None`` or an
    empty result. Writes raise ``NotFoundError`` for unknown conversations
    and ``RequestValidationError`` for malformed input; compression,
    summarization and extraction failures are logged and dropped.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        extractor: Optional[BaseMemoryExtractor] = None,
        metrics: Optional[MetricsCollector] = None,
        conversation_store: Optional[ConversationStore] = None,
        memory_store: Optional[MemoryStore] = None,
        context_windows: Optional[ContextWindowManager] = None
    ):
        self.settings = settings or Settings()
        self.conversation_store = conversation_store or ConversationStore()
        self.memory_store = memory_store or MemoryStore()
        self.context_windows = context_windows or ContextWindowManager(
            max_tokens=self.settings.max_context_tokens,
            compress_after_tokens=self.settings.compress_after_tokens,
            recent_messages_to_keep=self.settings.recent_messages_to_keep,
            high_value_content_length=self.settings.high_value_content_length
        )
        self.extractor = extractor or KeywordMemoryExtractor()
        self.metrics = metrics or MetricsCollector()
        self._conversation_locks: Dict[str, asyncio.Lock] = {}
        self._pending: Set[asyncio.Task] = set()
        self._pending_by_message: Dict[str, Set[asyncio.Task]] = {}

        logger.info(
            "Memory manager initialized",
            max_conversations=self.settings.max_conversations,
            max_memories=self.settings.max_memories,
            max_context_tokens=self.settings.max_context_tokens
        )

    # Conversations

    async def create_conversation(
        self,
        owner_id: str,
        title: Optional[str] = None,
        first_message: Optional[str] = None
    ) -> str:
        """Create a conversation and its context window"""

        conversation = Conversation(owner_id=owner_id, title=title or "New Conversation")

        if first_message:
            message = Message(role=MessageRole.USER, content=first_message)
            conversation.messages.append(message)
            conversation.last_activity = message.timestamp

        self.conversation_store.put(conversation)
        self.context_windows.rebuild(conversation.id, conversation.messages)

        engine_logger.log_memory_event(
            "conversation_created",
            conversation_id=conversation.id,
            details={"owner_id": owner_id}
        )

        if len(self.conversation_store) > self.settings.max_conversations:
            self.cleanup()

        return conversation.id

    async def add_message(
        self,
        conversation_id: str,
        role: Union[MessageRole, str],
        content: str,
        agent_name: Optional[str] = None,
        tool_calls: Optional[List[Union[ToolCall, Dict[str, Any]]]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        message_id: Optional[str] = None
    ) -> Message:
        """Append a message, then update derived state on a best-effort basis"""

        if conversation_id not in self.conversation_store:
            raise NotFoundError("conversation", conversation_id)

        async with self._lock_for(conversation_id):
            conversation = self.conversation_store.get(conversation_id)
            if conversation is None:
                raise NotFoundError("conversation", conversation_id)

            message = self._build_message(role, content, agent_name, tool_calls, metadata, message_id)

            # Keep timestamps non-decreasing so insertion order is time order
            if conversation.messages and message.timestamp < conversation.messages[-1].timestamp:
                message.timestamp = conversation.messages[-1].timestamp

            conversation.messages.append(message)
            conversation.last_activity = message.timestamp

            await self._run_best_effort("compression", self._update_context_window, conversation_id, message)

            needs_summary = (
                len(conversation.messages) >= self.settings.summarize_after_messages
                and conversation.summary is None
            )
            owner_id = conversation.owner_id

        scheduled = []
        if needs_summary:
            scheduled.append(await self._post_commit("summarization", self._summarize_conversation, conversation_id))

        scheduled.append(await self._post_commit("extraction", self._extract_memories, message, owner_id))
        self._track(message.id, [task for task in scheduled if task is not None])

        logger.debug("Added message", conversation_id=conversation_id, message_id=message.id)
        return message

    async def get_conversation(self, conversation_id: str, include_context: bool = True) -> Optional[Conversation]:
        """Snapshot of a conversation, optionally enriched with relevant memories"""

        conversation = self.conversation_store.get(conversation_id)
        if conversation is None:
            return None

        snapshot = conversation.model_copy(deep=True)

        if include_context:
            try:
                memories = self.memory_store.search(MemorySearchOptions(
                    query=conversation.title or "general",
                    limit=self.settings.relevant_memory_limit,
                    min_confidence=self.settings.relevant_memory_min_confidence
                ))
            except Exception as e:
                logger.warning("Failed to load relevant memories", conversation_id=conversation_id, error=str(e))
                memories = []

            snapshot.context = {
                **snapshot.context,
                "relevant_memories": memories,
                "last_updated": datetime.utcnow()
            }

        return snapshot

    async def get_context_window(self, conversation_id: str) -> Optional[ContextWindow]:
        """Detached copy of the conversation's working window"""

        return self.context_windows.get(conversation_id)

    async def get_user_conversations(self, owner_id: str, limit: int = 50, offset: int = 0) -> List[Conversation]:
        """Owner's conversations, most recently active first"""

        return [c.model_copy(deep=True) for c in self.conversation_store.for_owner(owner_id, limit, offset)]

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Remove a conversation together with its context window"""

        deleted = self._drop_conversation(conversation_id)

        if deleted:
            engine_logger.log_memory_event("conversation_deleted", conversation_id=conversation_id)

        return deleted

    async def attach_tool_result(self, conversation_id: str, message_id: str, call_id: str, result: Any) -> bool:
        """Attach a late tool result; each call accepts a result at most once"""

        conversation = self.conversation_store.get(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)

        message = next((m for m in conversation.messages if m.id == message_id), None)
        if message is None:
            raise NotFoundError("message", message_id)

        call = message.find_tool_call(call_id)
        if call is None:
            raise NotFoundError("tool_call", call_id)

        if call.result_attached or call.result is not None:
            logger.info("Tool result already attached", call_id=call_id, message_id=message_id)
            return False

        call.result = result
        call.result_attached = True
        return True

    async def restore_conversation(
        self,
        conversation_id: str,
        owner_id: str,
        messages: List[Message],
        title: Optional[str] = None,
        start_time: Optional[datetime] = None
    ) -> Conversation:
        """Rehydrate a conversation from durable messages if it is not loaded"""

        existing = self.conversation_store.get(conversation_id)
        if existing is not None:
            return existing

        ordered = sorted(messages, key=lambda m: m.timestamp)
        started = start_time or (ordered[0].timestamp if ordered else datetime.utcnow())
        conversation = Conversation(
            id=conversation_id,
            owner_id=owner_id,
            title=title or "New Conversation",
            start_time=started,
            last_activity=ordered[-1].timestamp if ordered else started,
            messages=ordered
        )

        self.conversation_store.put(conversation)
        self.context_windows.rebuild(conversation_id, ordered)

        engine_logger.log_memory_event(
            "conversation_restored",
            conversation_id=conversation_id,
            details={"messages": len(ordered)}
        )

        return conversation

    async def export_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        """Serializable bundle of a conversation, its window and related memories"""

        conversation = self.conversation_store.get(conversation_id)
        if conversation is None:
            return None

        window = self.context_windows.get(conversation_id)
        related = self.memory_store.search(MemorySearchOptions(
            query=conversation.title or "general",
            limit=50
        ))

        return {
            "conversation": conversation.model_dump(mode="json"),
            "context_window": window.model_dump(mode="json") if window else None,
            "related_memories": [m.model_dump(mode="json") for m in related]
        }

    async def import_conversation(self, data: Dict[str, Any]) -> Optional[str]:
        """Load an exported bundle; returns the conversation id or None if invalid"""

        try:
            conversation = Conversation.model_validate(data["conversation"])
            window = ContextWindow.model_validate(data["context_window"]) if data.get("context_window") else None
            memories = [MemoryEntry.model_validate(m) for m in data.get("related_memories") or []]
        except (KeyError, TypeError, ValidationError) as e:
            logger.error("Failed to import conversation", error=str(e))
            return None

        self.conversation_store.put(conversation)
        if window is not None:
            self.context_windows.windows[conversation.id] = window
        else:
            self.context_windows.rebuild(conversation.id, conversation.messages)

        for memory in memories:
            self.memory_store.put(memory)

        engine_logger.log_memory_event("conversation_imported", conversation_id=conversation.id)
        return conversation.id

    # Memories

    async def add_memory(self, memory: Union[MemoryDraft, Dict[str, Any]]) -> str:
        """Store a memory entry, evicting synchronously when over capacity"""

        if not isinstance(memory, MemoryDraft):
            try:
                memory = MemoryDraft.model_validate(memory)
            except ValidationError as e:
                raise RequestValidationError("Invalid memory entry", details={"errors": e.error_count()}, cause=e)

        entry = self.memory_store.add(memory)

        if len(self.memory_store) > self.settings.max_memories:
            self.cleanup()

        logger.debug("Added memory", memory_id=entry.id, type=entry.type.value, preview=entry.content[:50])
        return entry.id

    async def search_memories(self, options: Optional[MemorySearchOptions] = None, **filters: Any) -> List[MemoryEntry]:
        """Filter and rank memories by confidence and recency"""

        if options is None:
            try:
                options = MemorySearchOptions(**filters)
            except ValidationError as e:
                raise RequestValidationError("Invalid memory search", details={"errors": e.error_count()}, cause=e)

        return self.memory_store.search(options)

    async def memories_for_messages(self, message_ids: List[str]) -> List[MemoryEntry]:
        """Memories extracted from the given messages"""

        return self.memory_store.for_messages(message_ids)

    def get_memory_stats(self) -> Dict[str, Any]:
        """Counts across all stores"""

        stats = self.memory_store.stats()
        stats.update({
            "total_conversations": len(self.conversation_store),
            "context_windows_active": len(self.context_windows),
            "pending_side_effects": len(self._pending)
        })
        return stats

    # Eviction

    def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Apply the eviction policy to memories and conversations.

        Expired memories are always removed. Memories still above capacity
        are evicted lowest-score first (0.7 confidence + 0.3 recency), and
        conversations above capacity are evicted by ascending last activity
        together with their context windows.
        """

        now = now or datetime.utcnow()

        expired = self.memory_store.remove_expired(now)

        excess_memories = len(self.memory_store) - self.settings.max_memories
        evicted_memories = self.memory_store.evict_lowest_ranked(excess_memories, now)

        evicted_conversations = 0
        excess_conversations = len(self.conversation_store) - self.settings.max_conversations
        if excess_conversations > 0:
            for conversation in self.conversation_store.oldest_first()[:excess_conversations]:
                if self._drop_conversation(conversation.id):
                    evicted_conversations += 1

        result = {
            "expired_memories": expired,
            "evicted_memories": evicted_memories,
            "evicted_conversations": evicted_conversations
        }

        if any(result.values()):
            engine_logger.log_memory_event("cleanup", details=result)
            self.metrics.increment_counter("memory.evictions", expired + evicted_memories + evicted_conversations)

        return result

    async def run_cleanup_loop(self, interval_seconds: Optional[int] = None):
        """Periodic eviction pass"""

        interval = self.settings.memory_cleanup_interval_seconds if interval_seconds is None else interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error("Memory cleanup error", error=str(e), exc_info=True)

    # Post-commit work

    async def flush(self):
        """Wait until every scheduled summarization and extraction has finished"""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def wait_for_messages(self, message_ids: List[str]):
        """Wait for the summarization and extraction scheduled by the given messages only"""

        tasks = set()
        for message_id in message_ids:
            tasks.update(self._pending_by_message.get(message_id, ()))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self):
        await self.flush()
        self._conversation_locks.clear()

    async def _post_commit(self, step: str, func: Callable[..., Any], *args: Any) -> Optional[asyncio.Task]:
        if not self.settings.background_side_effects:
            await self._run_best_effort(step, func, *args)
            return None

        task = asyncio.create_task(self._run_best_effort(step, func, *args))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def _track(self, message_id: str, tasks: List[asyncio.Task]):
        if not tasks:
            return

        owned = self._pending_by_message.setdefault(message_id, set())
        owned.update(tasks)

        def _release(task: asyncio.Task):
            owned.discard(task)
            if not owned and self._pending_by_message.get(message_id) is owned:
                del self._pending_by_message[message_id]

        for task in tasks:
            task.add_done_callback(_release)

    async def _run_best_effort(self, step: str, func: Callable[..., Any], *args: Any):
        try:
            result = func(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            failure = e if isinstance(e, BestEffortFailure) else BestEffortFailure(step, str(e), cause=e)
            logger.warning("Best-effort step failed", **failure.to_dict(), exc_info=True)
            self.metrics.increment_counter(f"memory.{step}.failures")

    def _update_context_window(self, conversation_id: str, message: Message):
        if conversation_id not in self.context_windows:
            raise BestEffortFailure("compression", f"No context window for {conversation_id}")

        if self.context_windows.push(conversation_id, message):
            self.metrics.increment_counter("memory.compressions")

    def _summarize_conversation(self, conversation_id: str):
        conversation = self.conversation_store.get(conversation_id)
        if conversation is None or conversation.summary:
            return

        snippet_chars = self.settings.summary_snippet_chars
        recent = conversation.messages[-self.settings.summary_message_count:]
        lines = []
        for message in recent:
            text = message.content[:snippet_chars]
            if len(message.content) > snippet_chars:
                text += "..."
            lines.append(f"{message.role.value}: {text}")

        conversation.summary = (
            f"Conversation started {conversation.start_time:%Y-%m-%d}. "
            f"{len(conversation.messages)} messages. Recent topics:\n" + "\n".join(lines)
        )

        self.metrics.increment_counter("memory.summaries")
        engine_logger.log_memory_event("conversation_summarized", conversation_id=conversation_id)

    async def _extract_memories(self, message: Message, owner_id: str):
        drafts = self.extractor.extract(message, owner_id)
        for draft in drafts:
            await self.add_memory(draft)

    def _build_message(self, role, content, agent_name, tool_calls, metadata, message_id) -> Message:
        if not isinstance(content, str):
            raise RequestValidationError("Message content must be a string")

        fields: Dict[str, Any] = {
            "role": role,
            "content": content,
            "agent_name": agent_name,
            "tool_calls": tool_calls,
            "metadata": metadata or {}
        }
        if message_id:
            fields["id"] = message_id

        try:
            return Message(**fields)
        except ValidationError as e:
            raise RequestValidationError("Invalid message", details={"errors": e.error_count()}, cause=e)

    def _drop_conversation(self, conversation_id: str) -> bool:
        deleted = self.conversation_store.delete(conversation_id)
        self.context_windows.drop(conversation_id)
        self._conversation_locks.pop(conversation_id, None)
        return deleted

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._conversation_locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._conversation_locks[conversation_id] = lock
        return lock
