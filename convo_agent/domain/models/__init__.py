from .conversation import (
    new_id,
    MessageRole,
    MemoryType,
    ToolCall,
    Message,
    Conversation,
    MemoryDraft,
    MemoryEntry,
    TimeRange,
    MemorySearchOptions,
    ContextWindow,
)
from .session import SessionStatus, Approval, Session, SessionRecord
from .agent_events import (
    ThinkingStep,
    TextDelta,
    ToolCallStarted,
    ToolCallCompleted,
    AgentStreamEvent,
    AgentResult,
)
from .tools import RemoteToolServer, ToolSpec
