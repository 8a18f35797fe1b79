from typing import Dict, List, Any, Optional, Iterable
from datetime import datetime
from collections import Counter

from convo_agent.domain.models import MemoryDraft, MemoryEntry, MemorySearchOptions
from ..context_ranker import ContextRanker


class MemoryStore:
    """In-process store of long-lived memory entries"""
    
    def __init__(self, ranker: Optional[ContextRanker] = None):
        self.memories: Dict[str, MemoryEntry] = {}
        self.ranker = ranker or ContextRanker()
        
    def __len__(self) -> int:
        return len(self.memories)
        
    def add(self, draft: MemoryDraft) -> MemoryEntry:
        """Allocate an id and store the entry"""
        
        entry = MemoryEntry.from_draft(draft)
        self.memories[entry.id] = entry
        return entry
        
    def put(self, entry: MemoryEntry) -> None:
        """Store an entry that already has an id"""
        
        self.memories[entry.id] = entry
        
    def get(self, memory_id: str) -> Optional[MemoryEntry]:
        return self.memories.get(memory_id)
        
    def delete(self, memory_id: str) -> bool:
        return self.memories.pop(memory_id, None) is not None
        
    def all(self) -> List[MemoryEntry]:
        return list(self.memories.values())
        
    def for_messages(self, message_ids: Iterable[str]) -> List[MemoryEntry]:
        """Entries derived from any of the given messages"""
        
        wanted = set(message_ids)
        return [
            entry for entry in self.memories.values()
            if entry.metadata.get("message_id") in wanted
        ]
        
    def filter(self, options: MemorySearchOptions) -> List[MemoryEntry]:
        """Apply type, confidence, tag, time and text filters in that order"""
        
        results = list(self.memories.values())
        
        if options.type is not None:
            results = [m for m in results if m.type == options.type]
            
        results = [m for m in results if m.confidence >= options.min_confidence]
        
        if options.tags:
            wanted = set(options.tags)
            results = [m for m in results if wanted & m.tags]
            
        if options.time_range is not None:
            results = [m for m in results if options.time_range.contains(m.timestamp)]
            
        query = options.query.lower()
        results = [
            m for m in results
            if query in m.content.lower() or any(query in tag.lower() for tag in m.tags)
        ]
        
        return results
        
    def search(self, options: MemorySearchOptions, now: Optional[datetime] = None) -> List[MemoryEntry]:
        """Filter, rank and truncate to the requested limit"""
        
        ranked = self.ranker.rank_memories(self.filter(options), now)
        return ranked[:options.limit]
        
    def remove_expired(self, now: Optional[datetime] = None) -> int:
        """Drop entries whose expiry has elapsed and return count"""
        
        now = now or datetime.utcnow()
        expired = [memory_id for memory_id, entry in self.memories.items() if entry.is_expired(now)]
        
        for memory_id in expired:
            del self.memories[memory_id]
            
        return len(expired)
        
    def evict_lowest_ranked(self, count: int, now: Optional[datetime] = None) -> int:
        """Remove the given number of lowest-ranked entries"""
        
        if count <= 0:
            return 0
            
        victims = self.ranker.eviction_order(self.all(), now)[:count]
        for entry in victims:
            del self.memories[entry.id]
            
        return len(victims)
        
    def stats(self) -> Dict[str, Any]:
        """Counts by type and average confidence"""
        
        by_type = Counter(entry.type.value for entry in self.memories.values())
        total_confidence = sum(entry.confidence for entry in self.memories.values())
        
        return {
            "total_memories": len(self.memories),
            "memory_by_type": dict(by_type),
            "average_confidence": total_confidence / len(self.memories) if self.memories else 0.0
        }
