from typing import Annotated, Dict, Any, Optional, List, Literal, Union
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from datetime import datetime
from enum import Enum

from convo_agent.domain.errors import RequestValidationError
from convo_agent.domain.models import MemoryEntry, Message, Session, ToolCall


class EventType(str, Enum):
    """Server-to-client event types"""
    SESSION_CREATED = "session.created"
    SESSION_ERROR = "session.error"
    SESSION_CLOSED = "session.closed"
    AGENT_THINKING = "agent.thinking"
    MESSAGE_STREAMING = "message.streaming"
    MESSAGE_RECEIVED = "message.received"
    TOOL_CALL_START = "tool.call.start"
    TOOL_CALL_COMPLETE = "tool.call.complete"
    TOOL_APPROVAL_REQUIRED = "tool.approval.required"
    TOOL_APPROVAL_CONFIRMED = "tool.approval.confirmed"
    MEMORY_UPDATED = "memory.updated"
    PONG = "pong"


class BaseEvent(BaseModel):
    """Base event model for all outbound WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    session_id: Optional[str] = None


class SessionCreatedEvent(BaseEvent):
    """Sent after a session is created or joined"""
    type: Literal[EventType.SESSION_CREATED] = EventType.SESSION_CREATED
    session: Session
    messages: List[Message] = Field(default_factory=list)


class SessionErrorEvent(BaseEvent):
    """Session-level failure; never carries internal exception text"""
    type: Literal[EventType.SESSION_ERROR] = EventType.SESSION_ERROR
    message: str
    error_code: Optional[str] = None


class SessionClosedEvent(BaseEvent):
    type: Literal[EventType.SESSION_CLOSED] = EventType.SESSION_CLOSED


class AgentThinkingEvent(BaseEvent):
    """Ephemeral progress note"""
    type: Literal[EventType.AGENT_THINKING] = EventType.AGENT_THINKING
    message_id: str
    step: str


class MessageStreamingEvent(BaseEvent):
    """Start marker, ordered chunk or terminal marker of a streamed reply"""
    type: Literal[EventType.MESSAGE_STREAMING] = EventType.MESSAGE_STREAMING
    message_id: str
    chunk: str = ""
    is_start: bool = False
    is_complete: bool = False
    # Terminal only
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    error: Optional[str] = None


class MessageReceivedEvent(BaseEvent):
    """Terminal event of a non-streamed reply"""
    type: Literal[EventType.MESSAGE_RECEIVED] = EventType.MESSAGE_RECEIVED
    message: Message
    error: Optional[str] = None


class ToolCallStartEvent(BaseEvent):
    type: Literal[EventType.TOOL_CALL_START] = EventType.TOOL_CALL_START
    message_id: str
    call_id: str
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolCallCompleteEvent(BaseEvent):
    type: Literal[EventType.TOOL_CALL_COMPLETE] = EventType.TOOL_CALL_COMPLETE
    message_id: str
    call_id: str
    tool_name: str
    result: Optional[Any] = None
    status: Literal["completed", "incomplete"] = "completed"


class ToolApprovalRequiredEvent(BaseEvent):
    type: Literal[EventType.TOOL_APPROVAL_REQUIRED] = EventType.TOOL_APPROVAL_REQUIRED
    approval_id: str
    call_id: Optional[str] = None
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolApprovalConfirmedEvent(BaseEvent):
    type: Literal[EventType.TOOL_APPROVAL_CONFIRMED] = EventType.TOOL_APPROVAL_CONFIRMED
    approval_id: str
    approved: bool
    tool_name: str


class MemoryUpdatedEvent(BaseEvent):
    """Memories derived from the latest exchange"""
    type: Literal[EventType.MEMORY_UPDATED] = EventType.MEMORY_UPDATED
    memories: List[MemoryEntry]


class PongEvent(BaseEvent):
    type: Literal[EventType.PONG] = EventType.PONG


# Client-to-server requests

class SessionCreateRequest(BaseModel):
    type: Literal["session.create"]
    agent_type: str = "general"
    context_aware: Optional[bool] = None
    title: Optional[str] = None
    conversation_id: Optional[str] = None


class SessionJoinRequest(BaseModel):
    type: Literal["session.join"]
    session_id: str


class SessionCloseRequest(BaseModel):
    type: Literal["session.close"]
    session_id: str


class AgentMessageRequest(BaseModel):
    type: Literal["agent.message"]
    session_id: str
    message: str = Field(min_length=1)
    stream: Optional[bool] = None


class ToolApprovalResponse(BaseModel):
    type: Literal["tool.approval.response"]
    session_id: str
    approval_id: str
    approved: bool


class PingRequest(BaseModel):
    type: Literal["ping"]


ClientEvent = Annotated[
    Union[
        SessionCreateRequest,
        SessionJoinRequest,
        SessionCloseRequest,
        AgentMessageRequest,
        ToolApprovalResponse,
        PingRequest,
    ],
    Field(discriminator="type")
]

_client_event_adapter = TypeAdapter(ClientEvent)


def parse_client_event(data: Any) -> ClientEvent:
    """Validate an inbound message against the known request types"""
    try:
        return _client_event_adapter.validate_python(data)
    except ValidationError as e:
        raise RequestValidationError(
            "Invalid client event",
            details={"errors": [err["msg"] for err in e.errors()]},
            cause=e
        )
