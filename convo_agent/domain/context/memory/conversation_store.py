from typing import Dict, List, Optional

from convo_agent.domain.models import Conversation


class ConversationStore:
    """Holds conversation aggregates for the running process"""
    
    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        
    def __len__(self) -> int:
        return len(self.conversations)
        
    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self.conversations
        
    def put(self, conversation: Conversation) -> None:
        self.conversations[conversation.id] = conversation
        
    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)
        
    def delete(self, conversation_id: str) -> bool:
        return self.conversations.pop(conversation_id, None) is not None
        
    def all(self) -> List[Conversation]:
        return list(self.conversations.values())
        
    def for_owner(self, owner_id: str, limit: int = 50, offset: int = 0) -> List[Conversation]:
        """Owner's conversations, most recently active first"""
        
        owned = [c for c in self.conversations.values() if c.owner_id == owner_id]
        owned.sort(key=lambda c: c.last_activity, reverse=True)
        return owned[offset:offset + limit]
        
    def oldest_first(self) -> List[Conversation]:
        """All conversations ordered by ascending last activity"""
        
        return sorted(self.conversations.values(), key=lambda c: c.last_activity)
