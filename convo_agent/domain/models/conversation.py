from typing import Dict, Any, List, Optional, Set
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import datetime, timezone
from enum import Enum
import uuid


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier"""
    return f"{prefix}-{uuid.uuid4().hex}"


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; aware values are converted"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class MessageRole(str, Enum):
    """Author of a conversation message"""
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class MemoryType(str, Enum):
    """Kinds of long-lived memory"""
    FACT = "fact"
    PREFERENCE = "preference"
    RELATIONSHIP = "relationship"
    CONTEXT = "context"
    SKILL = "skill"


class ToolCall(BaseModel):
    """A tool invocation recorded on a message"""
    id: str = Field(default_factory=lambda: new_id("tc"))
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    result_attached: bool = Field(default=False, description="Set once a late result has been attached")


class Message(BaseModel):
    """A single message in a conversation"""
    id: str = Field(default_factory=lambda: new_id("msg"))
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    agent_name: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    def find_tool_call(self, call_id: str) -> Optional[ToolCall]:
        """Find a tool call on this message by id"""
        for call in self.tool_calls or []:
            if call.id == call_id:
                return call
        return None


class Conversation(BaseModel):
    """Ordered record of messages between an owner and an agent"""
    id: str = Field(default_factory=lambda: new_id("conv"))
    owner_id: str
    title: str = "New Conversation"
    start_time: datetime = Field(default_factory=datetime.utcnow)
    last_activity: datetime = Field(default_factory=datetime.utcnow)
    messages: List[Message] = Field(default_factory=list)
    tags: Set[str] = Field(default_factory=set)
    summary: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("start_time", "last_activity")
    @classmethod
    def _normalize_times(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class MemoryDraft(BaseModel):
    """Memory entry content before an id has been allocated"""
    type: MemoryType
    content: str
    confidence: float = Field(ge=0.0, le=1.0)
    source: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None
    tags: Set[str] = Field(default_factory=set)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp", "expires_at")
    @classmethod
    def _normalize_times(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)


class MemoryEntry(MemoryDraft):
    """Stored long-lived memory. Replace by reinsert, never mutate."""
    model_config = ConfigDict(frozen=True)

    id: str

    @classmethod
    def from_draft(cls, draft: MemoryDraft, memory_id: Optional[str] = None) -> "MemoryEntry":
        return cls(id=memory_id or new_id("mem"), **draft.model_dump())

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class TimeRange(BaseModel):
    """Inclusive time window"""
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize_bounds(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.start > self.end:
            raise ValueError("time range start must not be after end")
        return self

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class MemorySearchOptions(BaseModel):
    """Filters and limits for a memory search"""
    query: str = ""
    type: Optional[MemoryType] = None
    limit: int = Field(default=10, ge=1)
    min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    tags: Optional[List[str]] = None
    time_range: Optional[TimeRange] = None


class ContextWindow(BaseModel):
    """Token-budgeted working subset of a conversation"""
    max_tokens: int
    current_tokens: int = 0
    messages: List[Message] = Field(default_factory=list)
    priority_score: float = 1.0
