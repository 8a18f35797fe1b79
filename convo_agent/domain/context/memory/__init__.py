from .memory_store import MemoryStore
from .conversation_store import ConversationStore
