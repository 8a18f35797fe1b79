from typing import Dict, Any, Optional, List, Protocol
import asyncio
import time
import weakref
import structlog
from pydantic import BaseModel, Field

from convo_agent.application.websocket.schema.events import (
    BaseEvent, AgentThinkingEvent, MemoryUpdatedEvent, MessageReceivedEvent,
    MessageStreamingEvent, ToolApprovalRequiredEvent, ToolCallCompleteEvent,
    ToolCallStartEvent
)
from convo_agent.domain.context.memory_manager import MemoryManager
from convo_agent.domain.models import (
    AgentResult, AgentStreamEvent, MemoryEntry, Message, MessageRole, Session,
    TextDelta, ThinkingStep, ToolCall, ToolCallCompleted, ToolCallStarted, new_id
)
from convo_agent.domain.orchestration.agent_runner import AgentProfiles, BaseAgentRunner
from convo_agent.domain.session.session_registry import SessionRegistry
from convo_agent.domain.tool.discovery import DiscoveryCoordinator
from convo_agent.domain.tool.tool_registry import ToolRegistry
from convo_agent.infrastructure.config import Settings
from convo_agent.infrastructure.observability.logging import MetricsCollector, engine_logger
from convo_agent.infrastructure.persistence.durable_store import DurableStore

logger = structlog.get_logger(__name__)

GENERIC_ERROR_MESSAGE = "Sorry, something went wrong while processing your message. Please try again."
TITLE_MAX_CHARS = 60


class EventSink(Protocol):
    async def send_event(self, connection_id: Optional[str], event: BaseEvent) -> bool:
        ...


class RelayOutcome(BaseModel):
    """What one relayed request produced"""
    message_id: str
    text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    streamed: bool = True
    error: Optional[str] = None
    memories: List[MemoryEntry] = Field(default_factory=list)


class _ReplyState:
    """Accumulated text and tool-call bookkeeping for one reply"""

    def __init__(self, message_id: str):
        self.message_id = message_id
        self.parts: List[str] = []
        self.calls: Dict[str, ToolCall] = {}
        self.completed: set = set()
        self.chunks = 0

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def open_calls(self) -> List[ToolCall]:
        return [call for call_id, call in self.calls.items() if call_id not in self.completed]


class StreamingRelay:
    """Runs the agent for a session and relays its output to the bound connection.

    Every request produces exactly one terminal event: the final
    ``message.streaming`` with ``is_complete`` on the streaming path, or
    ``message.received`` otherwise. Events for sessions that were closed
    mid-run are dropped at send time. Persisting the exchange happens after
    the terminal event and never affects what the client has seen.
    """

    def __init__(
        self,
        connection_manager: EventSink,
        session_registry: SessionRegistry,
        memory_manager: MemoryManager,
        durable_store: DurableStore,
        agent_runner: BaseAgentRunner,
        tool_registry: ToolRegistry,
        discovery: DiscoveryCoordinator,
        profiles: Optional[AgentProfiles] = None,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.connection_manager = connection_manager
        self.session_registry = session_registry
        self.memory_manager = memory_manager
        self.durable_store = durable_store
        self.agent_runner = agent_runner
        self.tool_registry = tool_registry
        self.discovery = discovery
        self.profiles = profiles or AgentProfiles()
        self.settings = settings or Settings()
        self.metrics = metrics or MetricsCollector()
        self._session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def relay(self, session: Session, user_input: str, stream: Optional[bool] = None) -> RelayOutcome:
        """Handle one user message end to end"""

        stream = self.settings.stream_by_default if stream is None else stream
        lock = self._lock_for(session.id)

        async with lock:
            with structlog.contextvars.bound_contextvars(
                session_id=session.id,
                conversation_id=session.conversation_id
            ):
                return await self._relay(session, user_input, stream)

    async def _relay(self, session: Session, user_input: str, stream: bool) -> RelayOutcome:
        session.touch()
        user_message_id = new_id("msg")
        state = _ReplyState(new_id("msg"))

        await self._send(session, AgentThinkingEvent(
            session_id=session.id, message_id=state.message_id, step="Analyzing your request"
        ))

        tools = await self._enabled_tools()
        history, memories = await self._load_context(session, user_input)
        instructions = self.profiles.instructions_for(session.agent_type, session.context_aware, memories)

        await self._send(session, AgentThinkingEvent(
            session_id=session.id, message_id=state.message_id, step="Generating response"
        ))

        started = time.perf_counter()
        if stream:
            error = await self._run_streaming(session, state, instructions, user_input, tools, history)
        else:
            error = await self._run_single(session, state, instructions, user_input, tools, history)

        self.metrics.record_latency(
            "agent.run",
            (time.perf_counter() - started) * 1000,
            tags={"agent_type": session.agent_type, "stream": str(stream).lower()}
        )

        if error is not None:
            self.metrics.increment_counter("stream.errors", tags={"agent_type": session.agent_type})

        engine_logger.log_stream_event(
            session.id,
            phase="complete" if error is None else "failed",
            chunks=state.chunks,
            characters=len(state.text),
            error=type(error).__name__ if error else None
        )

        outcome = RelayOutcome(
            message_id=state.message_id,
            text=state.text,
            tool_calls=list(state.calls.values()),
            streamed=stream,
            error=GENERIC_ERROR_MESSAGE if error else None
        )

        await self._persist_exchange(session, user_message_id, user_input, outcome)
        outcome.memories = await self._publish_memories(session, [user_message_id, state.message_id])

        return outcome

    async def _run_streaming(self, session, state: _ReplyState, instructions, user_input, tools, history) -> Optional[Exception]:
        await self._send(session, MessageStreamingEvent(
            session_id=session.id, message_id=state.message_id, is_start=True
        ))

        error = None
        try:
            async for event in self.agent_runner.stream(instructions, user_input, tools, history):
                await self._forward(session, state, event)
        except Exception as e:
            error = e
            logger.error("Agent stream failed", error=str(e), chunks=state.chunks, exc_info=True)

        await self._close_open_calls(session, state)

        await self._send(session, MessageStreamingEvent(
            session_id=session.id,
            message_id=state.message_id,
            is_complete=True,
            content=state.text,
            tool_calls=list(state.calls.values()),
            error=GENERIC_ERROR_MESSAGE if error else None
        ))
        return error

    async def _run_single(self, session, state: _ReplyState, instructions, user_input, tools, history) -> Optional[Exception]:
        error = None
        result = AgentResult()
        try:
            result = await self.agent_runner.run(instructions, user_input, tools, history)
        except Exception as e:
            error = e
            logger.error("Agent run failed", error=str(e), exc_info=True)

        state.parts.append(result.text)
        for call in result.tool_calls:
            await self._forward(session, state, ToolCallStarted(
                call_id=call.id, tool_name=call.tool_name, parameters=call.parameters
            ))
            if call.result is not None:
                await self._forward(session, state, ToolCallCompleted(
                    call_id=call.id, tool_name=call.tool_name, result=call.result
                ))

        await self._close_open_calls(session, state)

        message = Message(
            id=state.message_id,
            role=MessageRole.AGENT,
            content=state.text if error is None else GENERIC_ERROR_MESSAGE,
            agent_name=session.agent_type,
            tool_calls=list(state.calls.values()) or None,
            metadata={"error": True} if error else {}
        )
        await self._send(session, MessageReceivedEvent(
            session_id=session.id,
            message=message,
            error=GENERIC_ERROR_MESSAGE if error else None
        ))
        return error

    async def _forward(self, session: Session, state: _ReplyState, event: AgentStreamEvent):
        """Translate one agent event into client events"""

        if isinstance(event, TextDelta):
            if not event.text:
                return
            state.parts.append(event.text)
            state.chunks += 1
            await self._send(session, MessageStreamingEvent(
                session_id=session.id, message_id=state.message_id, chunk=event.text
            ))

        elif isinstance(event, ThinkingStep):
            await self._send(session, AgentThinkingEvent(
                session_id=session.id, message_id=state.message_id, step=event.step
            ))

        elif isinstance(event, ToolCallStarted):
            if event.call_id in state.calls:
                logger.debug("Duplicate tool start ignored", call_id=event.call_id)
                return
            await self._start_call(session, state, event.call_id, event.tool_name, event.parameters)

            if event.requires_approval:
                approval = self.session_registry.add_pending_approval(
                    session.id, event.tool_name, event.parameters
                )
                if approval is not None:
                    await self._send(session, ToolApprovalRequiredEvent(
                        session_id=session.id,
                        approval_id=approval.id,
                        call_id=event.call_id,
                        tool_name=event.tool_name,
                        parameters=event.parameters
                    ))

        elif isinstance(event, ToolCallCompleted):
            if event.call_id in state.completed:
                logger.debug("Duplicate tool completion ignored", call_id=event.call_id)
                return

            # A completion must never reach the client before its start
            if event.call_id not in state.calls:
                await self._start_call(session, state, event.call_id, event.tool_name or "unknown", {})

            call = state.calls[event.call_id]
            call.result = event.result
            state.completed.add(event.call_id)

            await self._send(session, ToolCallCompleteEvent(
                session_id=session.id,
                message_id=state.message_id,
                call_id=call.id,
                tool_name=call.tool_name,
                result=event.result
            ))
            engine_logger.log_tool_event("complete", call_id=call.id, tool_name=call.tool_name, session_id=session.id)

    async def _start_call(self, session: Session, state: _ReplyState, call_id: str, tool_name: str, parameters: Dict[str, Any]):
        state.calls[call_id] = ToolCall(id=call_id, tool_name=tool_name, parameters=parameters)

        await self._send(session, ToolCallStartEvent(
            session_id=session.id,
            message_id=state.message_id,
            call_id=call_id,
            tool_name=tool_name,
            parameters=parameters
        ))
        engine_logger.log_tool_event("start", call_id=call_id, tool_name=tool_name, session_id=session.id)

    async def _close_open_calls(self, session: Session, state: _ReplyState):
        """Pair every started call with a completion before the terminal event"""

        for call in state.open_calls():
            state.completed.add(call.id)
            await self._send(session, ToolCallCompleteEvent(
                session_id=session.id,
                message_id=state.message_id,
                call_id=call.id,
                tool_name=call.tool_name,
                status="incomplete"
            ))

    async def _send(self, session: Session, event: BaseEvent) -> bool:
        if not session.is_active:
            logger.debug("Dropping event for inactive session", event_type=event.type.value)
            self.metrics.increment_counter("stream.dropped_events")
            return False

        try:
            return await self.connection_manager.send_event(session.connection_id, event)
        except Exception as e:
            logger.error("Event delivery failed", event_type=event.type.value, error=str(e))
            return False

    async def _enabled_tools(self):
        try:
            return await self.tool_registry.enabled_tools(self.discovery)
        except Exception as e:
            logger.warning("Could not assemble tool set", error=str(e))
            return []

    async def _load_context(self, session: Session, user_input: str):
        history: List[Message] = []
        memories: List[MemoryEntry] = []

        if not session.conversation_id:
            return history, memories

        window = await self.memory_manager.get_context_window(session.conversation_id)
        if window is not None:
            history = window.messages

        if session.context_aware:
            try:
                memories = await self.memory_manager.search_memories(query=user_input, limit=5, min_confidence=0.6)
            except Exception as e:
                logger.warning("Memory lookup failed", error=str(e))

        return history, memories

    async def _persist_exchange(self, session: Session, user_message_id: str, user_input: str, outcome: RelayOutcome):
        """Best-effort write of the exchange to the conversation and durable store"""

        first_exchange = session.message_count == 0

        messages = [
            dict(message_id=user_message_id, role=MessageRole.USER, content=user_input)
        ]
        if outcome.error is None or outcome.text or outcome.tool_calls:
            messages.append(dict(
                message_id=outcome.message_id,
                role=MessageRole.AGENT,
                content=outcome.text,
                agent_name=session.agent_type,
                tool_calls=outcome.tool_calls or None,
                metadata={"error": True, "partial": True} if outcome.error else {}
            ))

        for fields in messages:
            stored = None
            if session.conversation_id:
                try:
                    stored = await self.memory_manager.add_message(session.conversation_id, **fields)
                except Exception as e:
                    logger.error("Failed to append message to conversation", role=fields["role"].value, error=str(e))

            if stored is None:
                stored = Message(
                    id=fields["message_id"],
                    role=fields["role"],
                    content=fields["content"],
                    agent_name=fields.get("agent_name"),
                    tool_calls=fields.get("tool_calls"),
                    metadata=fields.get("metadata", {})
                )

            try:
                await self.durable_store.persist_message(session.id, stored)
            except Exception as e:
                logger.error("Failed to persist message", role=fields["role"].value, error=str(e))

            session.message_count += 1

        if first_exchange:
            title = user_input if len(user_input) <= TITLE_MAX_CHARS else user_input[:TITLE_MAX_CHARS - 3] + "..."
            try:
                await self.durable_store.update_session(session.id, title=title)
                logger.debug("Session title updated", title=title)
            except Exception as e:
                logger.error("Failed to update session title", error=str(e))

        session.touch()

    async def _publish_memories(self, session: Session, message_ids: List[str]) -> List[MemoryEntry]:
        if not (session.context_aware and session.conversation_id):
            return []

        try:
            await self.memory_manager.wait_for_messages(message_ids)
            memories = await self.memory_manager.memories_for_messages(message_ids)
        except Exception as e:
            logger.warning("Could not collect derived memories", error=str(e))
            return []

        if memories:
            await self._send(session, MemoryUpdatedEvent(session_id=session.id, memories=memories))

        return memories

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock
