from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import json
from datetime import datetime
import structlog

from convo_agent.application.context import AppContext
from convo_agent.domain.errors import RequestValidationError
from convo_agent.domain.models import Message, Session
from .schema.events import (
    AgentMessageRequest, ClientEvent, PingRequest, PongEvent, SessionCloseRequest,
    SessionClosedEvent, SessionCreateRequest, SessionCreatedEvent, SessionJoinRequest,
    ToolApprovalConfirmedEvent, ToolApprovalResponse, parse_client_event
)

logger = structlog.get_logger(__name__)


def create_app(context: AppContext) -> FastAPI:
    """Build the WebSocket application around an application context"""
    
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await context.start()
        logger.info("WebSocket server started")
        try:
            yield
        finally:
            await context.shutdown()
            logger.info("WebSocket server shutdown")
            
    app = FastAPI(title="Conversational Agent WebSocket Server", lifespan=lifespan)
    app.state.context = context
    
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    
    @app.websocket("/ws/agent/{owner_id}")
    async def agent_websocket(websocket: WebSocket, owner_id: str):
        """Main WebSocket endpoint for agent interaction"""
        
        connection_id = await context.connection_manager.connect(websocket, owner_id)
        
        try:
            while True:
                raw = await websocket.receive_text()
                
                try:
                    request = parse_client_event(json.loads(raw))
                except (json.JSONDecodeError, RequestValidationError) as e:
                    logger.warning("Rejected client event", connection_id=connection_id, error=str(e))
                    await context.connection_manager.send_error(connection_id, "Invalid request", "VALIDATION_ERROR")
                    continue
                    
                try:
                    await handle_client_event(context, connection_id, owner_id, request)
                except Exception as e:
                    logger.error("Error processing client event", connection_id=connection_id, error=str(e), exc_info=True)
                    await context.connection_manager.send_error(connection_id, "Failed to process request", "INTERNAL_ERROR")
                    continue
                    
        except WebSocketDisconnect:
            logger.info("Client disconnected", connection_id=connection_id, pending_runs=len(context.pending_runs))
        finally:
            await context.connection_manager.disconnect(connection_id)
            
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "active_connections": len(context.connection_manager.active_connections),
            "sessions": context.session_registry.session_count(),
            "active_sessions": context.session_registry.active_session_count(),
            "tool_servers": context.tool_registry.describe(),
            "discovered_servers": context.discovery.registry_size,
            "memory": context.memory_manager.get_memory_stats(),
            "metrics": context.metrics.get_metrics_summary(),
            "timestamp": datetime.utcnow().isoformat()
        }
        
    return app


async def handle_client_event(
    context: AppContext,
    connection_id: str,
    owner_id: str,
    request: ClientEvent
) -> Optional[asyncio.Task]:
    """Dispatch one validated client request; returns the agent run task, if any"""
    
    connections = context.connection_manager
    registry = context.session_registry
    
    if isinstance(request, PingRequest):
        await connections.send_event(connection_id, PongEvent())
        
    elif isinstance(request, SessionCreateRequest):
        session = await registry.create_session(
            request.agent_type,
            owner_id,
            context_aware=request.context_aware,
            conversation_id=request.conversation_id,
            title=request.title
        )
        registry.bind_connection(session.id, connection_id)
        await connections.send_event(connection_id, SessionCreatedEvent(session_id=session.id, session=session))
        
    elif isinstance(request, SessionJoinRequest):
        session = await _owned_session(context, request.session_id, owner_id)
        if session is None:
            await connections.send_error(connection_id, "Session not found", "NOT_FOUND", session_id=request.session_id)
            return None
            
        registry.bind_connection(session.id, connection_id)
        await connections.send_event(connection_id, SessionCreatedEvent(
            session_id=session.id,
            session=session,
            messages=await _session_messages(context, session)
        ))
        
    elif isinstance(request, SessionCloseRequest):
        session = registry.get_session(request.session_id)
        if session is None or session.owner_id != owner_id:
            await connections.send_error(connection_id, "Session not found", "NOT_FOUND", session_id=request.session_id)
            return None
            
        await registry.close_session(session.id)
        await connections.send_event(connection_id, SessionClosedEvent(session_id=session.id))
        
    elif isinstance(request, AgentMessageRequest):
        session = await _owned_session(context, request.session_id, owner_id)
        if session is None:
            await connections.send_error(connection_id, "Session not found", "NOT_FOUND", session_id=request.session_id)
            return None
        if not session.is_active:
            await connections.send_error(connection_id, "Session is closed", "SESSION_CLOSED", session_id=session.id)
            return None
            
        if session.connection_id != connection_id:
            registry.bind_connection(session.id, connection_id)
            
        return context.run_detached(context.relay.relay(session, request.message, stream=request.stream))
        
    elif isinstance(request, ToolApprovalResponse):
        approval = registry.resolve_pending_approval(request.session_id, request.approval_id, request.approved)
        if approval is None:
            await connections.send_error(connection_id, "Approval not found", "NOT_FOUND", session_id=request.session_id)
            return None
            
        await connections.send_event(connection_id, ToolApprovalConfirmedEvent(
            session_id=request.session_id,
            approval_id=approval.id,
            approved=bool(approval.approved),
            tool_name=approval.tool_name
        ))
        
    return None


async def _owned_session(context: AppContext, session_id: str, owner_id: str) -> Optional[Session]:
    session = await context.session_registry.join_session(session_id)
    if session is None or session.owner_id != owner_id:
        return None
    return session


async def _session_messages(context: AppContext, session: Session) -> List[Message]:
    """Conversation history for a joined session"""
    
    if session.conversation_id:
        conversation = await context.memory_manager.get_conversation(session.conversation_id, include_context=False)
        if conversation is not None:
            return conversation.messages
            
    try:
        return await context.durable_store.load_messages(session.id)
    except Exception as e:
        logger.warning("Could not load session history", session_id=session.id, error=str(e))
        return []


def main():
    """Run the server with settings from the environment"""
    import uvicorn
    from langchain.chat_models import init_chat_model
    from convo_agent.infrastructure.config import Settings
    from convo_agent.infrastructure.observability.logging import setup_logging
    
    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    
    context = AppContext(settings, chat_model=init_chat_model(settings.chat_model))
    uvicorn.run(create_app(context), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
