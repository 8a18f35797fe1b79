from typing import List, Optional, Coroutine, Any, Set
import asyncio
import structlog
from langchain_core.language_models import BaseChatModel

from convo_agent.application.websocket.connection_manager import ConnectionManager
from convo_agent.domain.context.memory_manager import MemoryManager
from convo_agent.domain.orchestration.agent_runner import AgentProfiles, BaseAgentRunner, ChatModelAgentRunner
from convo_agent.domain.session.session_registry import SessionRegistry
from convo_agent.domain.streaming.streaming_handler import StreamingRelay
from convo_agent.domain.tool.discovery import BaseToolExecutor, BaseToolLister, DiscoveryCoordinator
from convo_agent.domain.tool.tool_registry import ToolRegistry
from convo_agent.infrastructure.config import Settings
from convo_agent.infrastructure.observability.logging import MetricsCollector
from convo_agent.infrastructure.persistence import DurableStore, InMemoryDurableStore, SqliteDurableStore
from convo_agent.infrastructure.tools.remote_tool_lister import RemoteToolLister

logger = structlog.get_logger(__name__)


class AppContext:
    """Constructs and owns every long-lived service of the process"""
    
    def __init__(
        self,
        settings: Optional[Settings] = None,
        agent_runner: Optional[BaseAgentRunner] = None,
        chat_model: Optional[BaseChatModel] = None,
        durable_store: Optional[DurableStore] = None,
        tool_lister: Optional[BaseToolLister] = None
    ):
        self.settings = settings or Settings()
        self.metrics = MetricsCollector()
        
        if durable_store is None:
            if self.settings.durable_store_path:
                durable_store = SqliteDurableStore(self.settings.durable_store_path)
            else:
                durable_store = InMemoryDurableStore()
        self.durable_store = durable_store
        
        self.memory_manager = MemoryManager(settings=self.settings, metrics=self.metrics)
        self.tool_registry = ToolRegistry(self.settings.tool_config_path)
        self.tool_lister = tool_lister or RemoteToolLister(
            self.tool_registry,
            timeout=self.settings.tool_server_timeout_seconds
        )
        
        if agent_runner is None:
            if chat_model is None:
                raise ValueError("Either agent_runner or chat_model is required")
            agent_runner = ChatModelAgentRunner(
                chat_model,
                approval_required=self.settings.approval_tool_names,
                tool_executor=self.tool_lister if isinstance(self.tool_lister, BaseToolExecutor) else None,
                max_tool_rounds=self.settings.max_tool_rounds
            )
        self.agent_runner = agent_runner
        self.discovery = DiscoveryCoordinator(self.tool_lister, metrics=self.metrics)
        self.session_registry = SessionRegistry(
            self.memory_manager,
            self.durable_store,
            settings=self.settings,
            metrics=self.metrics
        )
        self.connection_manager = ConnectionManager()
        self.relay = StreamingRelay(
            connection_manager=self.connection_manager,
            session_registry=self.session_registry,
            memory_manager=self.memory_manager,
            durable_store=self.durable_store,
            agent_runner=self.agent_runner,
            tool_registry=self.tool_registry,
            discovery=self.discovery,
            profiles=AgentProfiles(),
            settings=self.settings,
            metrics=self.metrics
        )
        self._background: List[asyncio.Task] = []
        self.pending_runs: Set[asyncio.Task] = set()
        
    async def start(self):
        """Initialize storage, load tool servers and start periodic jobs"""
        
        await self.durable_store.initialize()
        self.tool_registry.load_config()
        
        self.spawn(self.session_registry.run_sweeper())
        self.spawn(self.memory_manager.run_cleanup_loop())
        
        logger.info(
            "Application context started",
            tool_servers=len(self.tool_registry.labels()),
            durable_store=type(self.durable_store).__name__
        )
        
    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run a background job owned by this context"""
        
        task = asyncio.create_task(coro)
        self._background.append(task)
        return task
        
    def run_detached(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run an agent reply that must outlive the connection that asked for it"""
        
        task = asyncio.create_task(coro)
        self.pending_runs.add(task)
        task.add_done_callback(self.pending_runs.discard)
        return task
        
    async def shutdown(self):
        """Cancel periodic jobs and release resources"""
        
        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        
        runs = list(self.pending_runs)
        for task in runs:
            task.cancel()
        await asyncio.gather(*runs, return_exceptions=True)
        
        for connection_id in list(self.connection_manager.active_connections):
            await self.connection_manager.disconnect(connection_id)
            
        await self.memory_manager.close()
        
        close_lister = getattr(self.tool_lister, "close", None)
        if close_lister is not None:
            await close_lister()
            
        await self.durable_store.close()
        logger.info("Application context stopped")
