from abc import ABC, abstractmethod
from typing import List
import re

from convo_agent.domain.models import Message, MemoryDraft, MemoryType

PREFERENCE_PATTERN = re.compile(r"\b(like|likes|prefer|prefers|favorite|favourite)\b")
FACT_PATTERN = re.compile(r"\b(is|are|was|were)\b")


class BaseMemoryExtractor(ABC):
    """Derives memory entries from a conversation message"""
    
    @abstractmethod
    def extract(self, message: Message, owner_id: str) -> List[MemoryDraft]:
        """Return zero or more memory drafts for the message"""
        pass


class KeywordMemoryExtractor(BaseMemoryExtractor):
    """Keyword heuristics for preferences, facts and tool usage"""
    
    def extract(self, message: Message, owner_id: str) -> List[MemoryDraft]:
        content = message.content.lower()
        metadata = {"owner_id": owner_id, "message_id": message.id}
        drafts: List[MemoryDraft] = []
        
        if PREFERENCE_PATTERN.search(content):
            drafts.append(MemoryDraft(
                type=MemoryType.PREFERENCE,
                content=message.content,
                confidence=0.8,
                source=f"conversation-{message.id}",
                timestamp=message.timestamp,
                tags={"user-preference"},
                metadata=dict(metadata)
            ))
            
        if FACT_PATTERN.search(content):
            drafts.append(MemoryDraft(
                type=MemoryType.FACT,
                content=message.content,
                confidence=0.6,
                source=f"conversation-{message.id}",
                timestamp=message.timestamp,
                tags={"fact"},
                metadata=dict(metadata)
            ))
            
        if message.tool_calls:
            tool_names = ", ".join(call.tool_name for call in message.tool_calls)
            drafts.append(MemoryDraft(
                type=MemoryType.CONTEXT,
                content=f"User successfully used tools: {tool_names}",
                confidence=0.9,
                source=f"tool-usage-{message.id}",
                timestamp=message.timestamp,
                tags={"tool-usage", "context"},
                metadata={**metadata, "tools": [call.tool_name for call in message.tool_calls]}
            ))
            
        return drafts
