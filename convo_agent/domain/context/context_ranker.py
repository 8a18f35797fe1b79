from typing import List, Optional
from datetime import datetime

from convo_agent.domain.models import MemoryEntry

CONFIDENCE_WEIGHT = 0.7
RECENCY_WEIGHT = 0.3


class ContextRanker:
    """Ranks memory entries by confidence and recency"""
    
    def __init__(self, confidence_weight: float = CONFIDENCE_WEIGHT, recency_weight: float = RECENCY_WEIGHT):
        self.confidence_weight = confidence_weight
        self.recency_weight = recency_weight
        
    def memory_score(self, entry: MemoryEntry, now: Optional[datetime] = None) -> float:
        """Score a memory: weighted confidence plus timestamp relative to now"""
        
        now = now or datetime.utcnow()
        reference = now.timestamp()
        recency = entry.timestamp.timestamp() / reference if reference else 0.0
        
        return entry.confidence * self.confidence_weight + recency * self.recency_weight
        
    def rank_memories(self, entries: List[MemoryEntry], now: Optional[datetime] = None) -> List[MemoryEntry]:
        """Sort memories by descending score, keeping input order on ties"""
        
        now = now or datetime.utcnow()
        return sorted(entries, key=lambda entry: self.memory_score(entry, now), reverse=True)
        
    def eviction_order(self, entries: List[MemoryEntry], now: Optional[datetime] = None) -> List[MemoryEntry]:
        """Lowest-ranked first; on ties the earliest inserted goes first"""
        
        now = now or datetime.utcnow()
        indexed = list(enumerate(entries))
        indexed.sort(key=lambda pair: (self.memory_score(pair[1], now), pair[0]))
        return [entry for _, entry in indexed]
