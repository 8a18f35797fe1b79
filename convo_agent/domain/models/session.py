from typing import Dict, Any, Optional
from pydantic import BaseModel, Field, computed_field
from datetime import datetime
from enum import Enum


class SessionStatus(str, Enum):
    """Live session lifecycle"""
    CREATING = "creating"
    ACTIVE = "active"
    CLOSED = "closed"


class Approval(BaseModel):
    """A tool invocation waiting for a human decision"""
    id: str
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    resolved: bool = False
    approved: Optional[bool] = None
    resolved_at: Optional[datetime] = None


class Session(BaseModel):
    """Binding between one live connection and one conversation"""
    id: str
    owner_id: str
    agent_type: str
    conversation_id: Optional[str] = None
    context_aware: bool = True
    status: SessionStatus = Field(default=SessionStatus.CREATING)
    start_time: datetime = Field(default_factory=datetime.utcnow)
    last_activity: datetime = Field(default_factory=datetime.utcnow)
    pending_approvals: Dict[str, Approval] = Field(default_factory=dict)
    message_count: int = 0
    connection_id: Optional[str] = Field(None, exclude=True)

    @computed_field
    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def touch(self):
        """Record activity on the session"""
        self.last_activity = datetime.utcnow()

    def has_unresolved_approvals(self) -> bool:
        return any(not approval.resolved for approval in self.pending_approvals.values())


class SessionRecord(BaseModel):
    """Durable row backing a session"""
    id: Optional[str] = None
    owner_id: str
    agent_type: str
    title: str = "New Chat"
    status: str = "active"
    conversation_id: Optional[str] = None
    context_aware: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    message_count: int = 0
    last_message_at: Optional[datetime] = None
