"""Per-conversation token budgets.

A context window is the working subset of a conversation that is fed back
to the model. It is rebuildable from the conversation at any time and is
never the archival record: compression trims the window, not
``Conversation.messages``.
"""

from typing import Dict, List, Optional
import math
import structlog

from convo_agent.domain.models import ContextWindow, Message, MessageRole

logger = structlog.get_logger(__name__)

CHARS_PER_TOKEN = 4


class ContextWindowManager:
    """Tracks token usage per conversation and compresses on overflow"""
    
    def __init__(
        self,
        max_tokens: int = 32000,
        compress_after_tokens: int = 16000,
        recent_messages_to_keep: int = 20,
        high_value_content_length: int = 500
    ):
        self.max_tokens = max_tokens
        self.compress_after_tokens = compress_after_tokens
        self.recent_messages_to_keep = recent_messages_to_keep
        self.high_value_content_length = high_value_content_length
        self.windows: Dict[str, ContextWindow] = {}
        
    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self.windows
        
    def __len__(self) -> int:
        return len(self.windows)
        
    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Rough estimate: one token per four characters"""
        return math.ceil(len(text) / CHARS_PER_TOKEN)
        
    def open(self, conversation_id: str) -> ContextWindow:
        """Allocate an empty window for a conversation"""
        
        window = ContextWindow(max_tokens=self.max_tokens)
        self.windows[conversation_id] = window
        return window
        
    def push(self, conversation_id: str, message: Message) -> bool:
        """Append a message; returns True when compression ran"""
        
        window = self.windows.get(conversation_id)
        if window is None:
            logger.warning("No context window for conversation", conversation_id=conversation_id)
            return False
            
        window.messages.append(message)
        window.current_tokens += self.estimate_tokens(message.content)
        
        if window.current_tokens > self.compress_after_tokens:
            self.compress(conversation_id)
            return True
            
        return False
        
    def is_high_value(self, message: Message) -> bool:
        """Tool activity, system text and long messages survive compression"""
        
        return bool(
            message.tool_calls
            or message.role == MessageRole.SYSTEM
            or len(message.content) > self.high_value_content_length
        )
        
    def compress(self, conversation_id: str) -> Optional[ContextWindow]:
        """Keep recent and high-value messages, then enforce the hard budget"""
        
        window = self.windows.get(conversation_id)
        if window is None:
            return None
            
        recent_ids = {m.id for m in window.messages[-self.recent_messages_to_keep:]}
        
        kept: List[Message] = []
        seen = set()
        for message in window.messages:
            if message.id in seen:
                continue
            if message.id in recent_ids or self.is_high_value(message):
                kept.append(message)
                seen.add(message.id)
                
        tokens = sum(self.estimate_tokens(m.content) for m in kept)
        
        # Oldest retained messages go first until the window fits max_tokens
        while kept and tokens > window.max_tokens:
            dropped = kept.pop(0)
            tokens -= self.estimate_tokens(dropped.content)
            
        window.messages = kept
        window.current_tokens = tokens
        
        logger.info(
            "Compressed context window",
            conversation_id=conversation_id,
            messages=len(kept),
            tokens=tokens
        )
        
        return window
        
    def rebuild(self, conversation_id: str, messages: List[Message]) -> ContextWindow:
        """Recreate a window from a full message sequence"""
        
        window = self.open(conversation_id)
        for message in messages:
            window.messages.append(message)
            window.current_tokens += self.estimate_tokens(message.content)
            
        if window.current_tokens > self.compress_after_tokens:
            self.compress(conversation_id)
            
        return window
        
    def get(self, conversation_id: str) -> Optional[ContextWindow]:
        """Detached copy of a window"""
        
        window = self.windows.get(conversation_id)
        return window.model_copy(deep=True) if window else None
        
    def drop(self, conversation_id: str) -> bool:
        return self.windows.pop(conversation_id, None) is not None
