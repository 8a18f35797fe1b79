from typing import Dict, Any, List, Optional, Literal, Union
from pydantic import BaseModel, Field

from .conversation import ToolCall


class ThinkingStep(BaseModel):
    """Ephemeral progress note from the agent"""
    kind: Literal["thinking"] = "thinking"
    step: str


class TextDelta(BaseModel):
    """Incremental text produced by the agent"""
    kind: Literal["text"] = "text"
    text: str


class ToolCallStarted(BaseModel):
    """Agent began a tool invocation"""
    kind: Literal["tool_start"] = "tool_start"
    call_id: str
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = False


class ToolCallCompleted(BaseModel):
    """Agent received a tool result"""
    kind: Literal["tool_complete"] = "tool_complete"
    call_id: str
    tool_name: Optional[str] = None
    result: Optional[Any] = None


AgentStreamEvent = Union[ThinkingStep, TextDelta, ToolCallStarted, ToolCallCompleted]


class AgentResult(BaseModel):
    """Complete, non-streamed agent response"""
    text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
