from typing import Dict, List, Any, Optional
from datetime import datetime, timedelta
import asyncio
import uuid
import structlog

from convo_agent.domain.context.memory_manager import MemoryManager
from convo_agent.domain.models import Approval, Session, SessionRecord, SessionStatus, new_id
from convo_agent.domain.tool.single_flight import SingleFlight
from convo_agent.infrastructure.config import Settings
from convo_agent.infrastructure.observability.logging import MetricsCollector, engine_logger
from convo_agent.infrastructure.persistence.durable_store import DurableStore

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """Live sessions keyed by their durable id.

    The registry is a cache over the durable store: a session missing from
    memory is rebuilt from its durable record and messages on join. Durable
    store failures never fail a live operation; they are logged and the
    in-memory state stays authoritative.
    """
    
    def __init__(
        self,
        memory_manager: MemoryManager,
        durable_store: DurableStore,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.memory_manager = memory_manager
        self.durable_store = durable_store
        self.settings = settings or Settings()
        self.metrics = metrics or MetricsCollector()
        self.sessions: Dict[str, Session] = {}
        self._joins = SingleFlight()
        
    async def create_session(
        self,
        agent_type: str,
        owner_id: str,
        context_aware: Optional[bool] = None,
        conversation_id: Optional[str] = None,
        title: Optional[str] = None
    ) -> Session:
        """Create a session, its conversation and its durable record"""
        
        if context_aware is None:
            context_aware = self.settings.default_context_aware
            
        if context_aware and conversation_id is None:
            conversation_id = await self.memory_manager.create_conversation(
                owner_id,
                title=f"Chat with {agent_type} agent"
            )
            
        record = SessionRecord(
            owner_id=owner_id,
            agent_type=agent_type,
            title=title or f"New {agent_type} Chat",
            conversation_id=conversation_id,
            context_aware=context_aware
        )
        
        try:
            session_id = await self.durable_store.persist_session(record)
        except Exception as e:
            session_id = str(uuid.uuid4())
            logger.error(
                "Failed to persist session, continuing in memory",
                session_id=session_id,
                error=str(e)
            )
            self.metrics.increment_counter("sessions.persist_failures")
            
        session = Session(
            id=session_id,
            owner_id=owner_id,
            agent_type=agent_type,
            conversation_id=conversation_id,
            context_aware=context_aware,
            start_time=record.created_at,
            last_activity=record.created_at
        )
        session.status = SessionStatus.ACTIVE
        self.sessions[session_id] = session
        
        engine_logger.log_session_event(
            "created",
            session_id=session_id,
            agent_type=agent_type,
            conversation_id=conversation_id,
            context_aware=context_aware
        )
        self._update_gauges()
        
        return session
        
    async def join_session(self, session_id: str) -> Optional[Session]:
        """Cached session, or one rebuilt from the durable store; None if unknown"""
        
        session = self.sessions.get(session_id)
        if session is not None:
            return session
            
        try:
            return await self._joins.run(session_id, lambda: self._cold_join(session_id))
        except Exception as e:
            logger.error("Cold join failed", session_id=session_id, error=str(e))
            self.metrics.increment_counter("sessions.cold_join_failures")
            return None
            
    async def _cold_join(self, session_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        if session is not None:
            return session
            
        logger.info("Session not in memory, loading from durable store", session_id=session_id)
        
        record = await self.durable_store.load_session(session_id)
        if record is None:
            logger.warning("Session not found", session_id=session_id)
            return None
            
        messages = await self.durable_store.load_messages(session_id)
        
        conversation_id = record.conversation_id
        if record.context_aware:
            conversation_id = conversation_id or session_id
            await self.memory_manager.restore_conversation(
                conversation_id,
                owner_id=record.owner_id,
                messages=messages,
                title=f"Chat with {record.agent_type} agent",
                start_time=record.created_at
            )
            
        session = Session(
            id=session_id,
            owner_id=record.owner_id,
            agent_type=record.agent_type,
            conversation_id=conversation_id,
            context_aware=record.context_aware,
            status=SessionStatus.ACTIVE if record.status == "active" else SessionStatus.CLOSED,
            start_time=record.created_at,
            last_activity=record.last_message_at or record.updated_at,
            message_count=len(messages)
        )
        self.sessions[session_id] = session
        
        engine_logger.log_session_event(
            "rehydrated",
            session_id=session_id,
            agent_type=record.agent_type,
            messages=len(messages)
        )
        self.metrics.increment_counter("sessions.cold_joins")
        self._update_gauges()
        
        return session
        
    def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)
        
    def touch(self, session_id: str):
        session = self.sessions.get(session_id)
        if session:
            session.touch()
            
    def bind_connection(self, session_id: str, connection_id: Optional[str]) -> Optional[Session]:
        """Associate the session with the connection that drives it"""
        
        session = self.sessions.get(session_id)
        if session:
            session.connection_id = connection_id
            session.touch()
        return session
        
    async def close_session(self, session_id: str) -> bool:
        """Mark a session closed; it stays queryable until swept"""
        
        session = self.sessions.get(session_id)
        if session is None:
            return False
            
        session.status = SessionStatus.CLOSED
        
        try:
            await self.durable_store.update_session(session_id, status="closed")
        except Exception as e:
            logger.warning("Failed to mark durable session closed", session_id=session_id, error=str(e))
            
        engine_logger.log_session_event("closed", session_id=session_id, agent_type=session.agent_type)
        self._update_gauges()
        return True
        
    def delete_session(self, session_id: str) -> bool:
        deleted = self.sessions.pop(session_id, None) is not None
        if deleted:
            engine_logger.log_session_event("deleted", session_id=session_id)
            self._update_gauges()
        return deleted
        
    def sweep_idle(self, max_age_minutes: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Remove closed or idle sessions; sessions awaiting approval are kept"""
        
        if max_age_minutes is None:
            max_age_minutes = self.settings.session_idle_minutes
        max_age = timedelta(minutes=max_age_minutes)
        now = now or datetime.utcnow()
        removed = 0
        
        for session_id, session in list(self.sessions.items()):
            expired = not session.is_active or now - session.last_activity > max_age
            if not expired:
                continue
                
            if session.has_unresolved_approvals():
                logger.info("Keeping idle session with pending approvals", session_id=session_id)
                continue
                
            del self.sessions[session_id]
            removed += 1
            logger.info("Swept inactive session", session_id=session_id)
            
        if removed:
            self.metrics.increment_counter("sessions.swept", removed)
            self._update_gauges()
            
        return removed
        
    async def run_sweeper(self, interval_minutes: Optional[int] = None, max_age_minutes: Optional[int] = None):
        """Sweep on a fixed interval until cancelled"""
        
        if interval_minutes is None:
            interval_minutes = self.settings.session_sweep_interval_minutes
        interval = interval_minutes * 60
        while True:
            await asyncio.sleep(interval)
            try:
                removed = self.sweep_idle(max_age_minutes)
                if removed:
                    logger.info("Cleaned up inactive sessions", removed=removed)
            except Exception as e:
                logger.error("Session sweep error", error=str(e), exc_info=True)
                
    def add_pending_approval(
        self,
        session_id: str,
        tool_name: str,
        parameters: Optional[Dict[str, Any]] = None,
        approval_id: Optional[str] = None
    ) -> Optional[Approval]:
        """Record an unresolved approval on a session"""
        
        session = self.sessions.get(session_id)
        if session is None:
            return None
            
        approval = Approval(
            id=approval_id or new_id("approval"),
            tool_name=tool_name,
            parameters=parameters or {}
        )
        session.pending_approvals[approval.id] = approval
        
        engine_logger.log_tool_event(
            "approval_required",
            call_id=approval.id,
            tool_name=tool_name,
            session_id=session_id
        )
        return approval
        
    def resolve_pending_approval(self, session_id: str, approval_id: str, approved: bool) -> Optional[Approval]:
        """Resolve an approval once; later attempts return the stored decision"""
        
        session = self.sessions.get(session_id)
        if session is None:
            return None
            
        approval = session.pending_approvals.get(approval_id)
        if approval is None:
            return None
            
        if approval.resolved:
            logger.debug("Approval already resolved", approval_id=approval_id, approved=approval.approved)
            return approval
            
        approval.resolved = True
        approval.approved = approved
        approval.resolved_at = datetime.utcnow()
        
        engine_logger.log_tool_event(
            "approval_granted" if approved else "approval_denied",
            call_id=approval_id,
            tool_name=approval.tool_name,
            session_id=session_id
        )
        return approval
        
    def sessions_for_owner(self, owner_id: str) -> List[Session]:
        return [s for s in self.sessions.values() if s.owner_id == owner_id]
        
    def session_count(self) -> int:
        return len(self.sessions)
        
    def active_session_count(self) -> int:
        return sum(1 for s in self.sessions.values() if s.is_active)
        
    def _update_gauges(self):
        self.metrics.set_gauge("sessions.live", self.session_count())
        self.metrics.set_gauge("sessions.active", self.active_session_count())
