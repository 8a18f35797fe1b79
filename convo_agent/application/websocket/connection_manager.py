from typing import Dict, Set, Optional
from fastapi import WebSocket
import asyncio
import uuid
from datetime import datetime
import structlog

from .schema.events import BaseEvent, SessionErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections and ordered delivery to each of them"""
    
    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_metadata: Dict[str, Dict] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()
        
    async def connect(self, websocket: WebSocket, owner_id: str) -> str:
        """Accept a new WebSocket connection and return its id"""
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        
        async with self._lock:
            self.active_connections[connection_id] = websocket
            self._send_locks[connection_id] = asyncio.Lock()
            self.connection_metadata[connection_id] = {
                "owner_id": owner_id,
                "connected_at": datetime.utcnow(),
                "last_activity": datetime.utcnow()
            }
            
        logger.info("WebSocket connected", connection_id=connection_id, owner_id=owner_id)
        return connection_id
        
    async def disconnect(self, connection_id: str):
        """Forget a connection and close its socket"""
        async with self._lock:
            ws = self.active_connections.pop(connection_id, None)
            self.connection_metadata.pop(connection_id, None)
            self._send_locks.pop(connection_id, None)
            
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Error closing WebSocket", connection_id=connection_id, error=str(e))
                
            logger.info("WebSocket disconnected", connection_id=connection_id)
        
    async def send_event(self, connection_id: Optional[str], event: BaseEvent) -> bool:
        """Send an event to one connection; events leave in call order"""
        websocket = self.active_connections.get(connection_id) if connection_id else None
        if websocket is None:
            logger.debug("Attempted to send to disconnected client", connection_id=connection_id, event_type=event.type.value)
            return False
            
        try:
            async with self._send_locks[connection_id]:
                await websocket.send_json(event.model_dump(mode="json"))
                
            if connection_id in self.connection_metadata:
                self.connection_metadata[connection_id]["last_activity"] = datetime.utcnow()
                
            return True
            
        except Exception as e:
            logger.error("Failed to send event", connection_id=connection_id, error=str(e))
            await self.disconnect(connection_id)
            return False
            
    async def send_error(
        self,
        connection_id: str,
        error_message: str,
        error_code: Optional[str] = None,
        session_id: Optional[str] = None
    ):
        """Send a session.error event"""
        await self.send_event(
            connection_id,
            SessionErrorEvent(message=error_message, error_code=error_code, session_id=session_id)
        )
        
    def get_connection_metadata(self, connection_id: str) -> Optional[Dict]:
        return self.connection_metadata.get(connection_id)
        
    def get_active_connections(self, owner_id: Optional[str] = None) -> Set[str]:
        """Active connection ids, optionally filtered by owner"""
        if owner_id:
            return {
                connection_id
                for connection_id, metadata in self.connection_metadata.items()
                if metadata.get("owner_id") == owner_id
            }
        return set(self.active_connections.keys())
