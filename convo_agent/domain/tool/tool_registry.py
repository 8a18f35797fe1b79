from typing import Dict, List, Any, Optional, Set
from pathlib import Path
import json
import structlog
from pydantic import ValidationError

from convo_agent.domain.models import RemoteToolServer, ToolSpec
from .discovery import DiscoveryCoordinator

logger = structlog.get_logger(__name__)


class ToolRegistry:
    """Registry of remote tool servers and per-tool enablement"""
    
    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else None
        self.servers: Dict[str, RemoteToolServer] = {}
        self.disabled_tools: Dict[str, Set[str]] = {}
        
    def load_config(self) -> List[RemoteToolServer]:
        """Load server definitions from the JSON config file"""
        
        if self.config_path is None or not self.config_path.exists():
            logger.info("No tool server config found", path=str(self.config_path))
            return []
            
        try:
            config = json.loads(self.config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to read tool server config", path=str(self.config_path), error=str(e))
            return []
            
        loaded = []
        for raw in config.get("servers", []):
            try:
                server = RemoteToolServer.model_validate(raw)
            except ValidationError as e:
                logger.warning("Skipping invalid tool server", config=raw, error=str(e))
                continue
                
            if server.type == "stdio":
                logger.warning("stdio tool servers are not supported", server=server.name)
                continue
                
            if not server.endpoint:
                logger.warning("Tool server has no URL", server=server.name)
                continue
                
            self.register_server(server)
            loaded.append(server)
            
        logger.info("Loaded tool servers", count=len(loaded))
        return loaded
        
    def save_config(self):
        """Write the current server definitions back to the config file"""
        
        if self.config_path is None:
            return
            
        servers = [s.model_dump(by_alias=True, exclude_none=True) for s in self.servers.values()]
        self.config_path.write_text(json.dumps({"servers": servers}, indent=2), encoding="utf-8")
        logger.info("Tool server config saved", path=str(self.config_path), servers=len(servers))
        
    def register_server(self, server: RemoteToolServer):
        """Register a new tool server under its label"""
        
        self.servers[server.label] = server
        
    def remove_server(self, label: str) -> bool:
        self.disabled_tools.pop(label, None)
        return self.servers.pop(label, None) is not None
        
    def get_server(self, label: str) -> Optional[RemoteToolServer]:
        return self.servers.get(label)
        
    def labels(self) -> List[str]:
        return list(self.servers.keys())
        
    def disable_tool(self, label: str, tool_name: str):
        self.disabled_tools.setdefault(label, set()).add(tool_name)
        
    def enable_tool(self, label: str, tool_name: str):
        self.disabled_tools.get(label, set()).discard(tool_name)
        
    def is_enabled(self, label: str, tool_name: str) -> bool:
        return tool_name not in self.disabled_tools.get(label, set())
        
    async def enabled_tools(self, discovery: DiscoveryCoordinator) -> List[ToolSpec]:
        """Discover every registered server and return the enabled tools"""
        
        tools: List[ToolSpec] = []
        for label in self.labels():
            await discovery.discover(label)
            tools.extend(
                tool for tool in discovery.cached_tools(label)
                if self.is_enabled(label, tool.name)
            )
            
        return tools
        
    def describe(self) -> List[Dict[str, Any]]:
        """Summary of servers for health output"""
        
        return [
            {
                "label": server.label,
                "type": server.type,
                "endpoint": server.endpoint,
                "disabled_tools": sorted(self.disabled_tools.get(server.label, set()))
            }
            for server in self.servers.values()
        ]
