from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional
from datetime import datetime
import uuid
import structlog

from convo_agent.domain.models import Message, SessionRecord

logger = structlog.get_logger(__name__)

DELETED_STATUS = "deleted"


class DurableStore(ABC):
    """Durable session and message records.

    Implementations raise ``TransientDependencyError`` for backend failures;
    callers in the orchestration layer log and degrade.
    """

    async def initialize(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def persist_session(self, record: SessionRecord) -> str:
        """Store a new session record and return its durable id"""
        pass

    @abstractmethod
    async def load_session(self, session_id: str) -> Optional[SessionRecord]:
        """Load a session record; deleted records are not returned"""
        pass

    @abstractmethod
    async def update_session(self, session_id: str, **fields: Any) -> Optional[SessionRecord]:
        pass

    @abstractmethod
    async def persist_message(self, session_id: str, message: Message) -> None:
        pass

    @abstractmethod
    async def load_messages(self, session_id: str) -> List[Message]:
        """Messages for a session in time order"""
        pass


class InMemoryDurableStore(DurableStore):
    """Process-local durable store, used by default and in tests"""

    def __init__(self):
        self.sessions: Dict[str, SessionRecord] = {}
        self.messages: Dict[str, List[Message]] = {}

    async def persist_session(self, record: SessionRecord) -> str:
        session_id = record.id or str(uuid.uuid4())
        self.sessions[session_id] = record.model_copy(update={"id": session_id}, deep=True)
        self.messages.setdefault(session_id, [])
        return session_id

    async def load_session(self, session_id: str) -> Optional[SessionRecord]:
        record = self.sessions.get(session_id)
        if record is None or record.status == DELETED_STATUS:
            return None
        return record.model_copy(deep=True)

    async def update_session(self, session_id: str, **fields: Any) -> Optional[SessionRecord]:
        record = self.sessions.get(session_id)
        if record is None:
            return None

        fields.setdefault("updated_at", datetime.utcnow())
        updated = record.model_copy(update=fields)
        self.sessions[session_id] = updated
        return updated.model_copy(deep=True)

    async def persist_message(self, session_id: str, message: Message) -> None:
        self.messages.setdefault(session_id, []).append(message.model_copy(deep=True))

        record = self.sessions.get(session_id)
        if record is not None:
            self.sessions[session_id] = record.model_copy(update={
                "last_message_at": message.timestamp,
                "message_count": record.message_count + 1
            })

    async def load_messages(self, session_id: str) -> List[Message]:
        messages = self.messages.get(session_id, [])
        return [m.model_copy(deep=True) for m in sorted(messages, key=lambda m: m.timestamp)]
