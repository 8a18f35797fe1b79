"""Remote tool access over JSON-RPC.

Issues ``tools/list`` and ``tools/call`` requests against the endpoint
configured for a label. Listing replies become ``ToolSpec`` records; call
replies are reduced to their first text block, decoded as JSON when
possible. Any transport or protocol failure is raised as
``TransientDependencyError`` so callers can log it and carry on.
"""

from typing import Dict, Any, List, Optional
import asyncio
import itertools
import json
import aiohttp
import structlog

from convo_agent.domain.errors import TransientDependencyError
from convo_agent.domain.models import ToolSpec
from convo_agent.domain.tool.discovery import BaseToolExecutor, BaseToolLister
from convo_agent.domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)


class RemoteToolLister(BaseToolLister, BaseToolExecutor):
    """Lists and calls tools on registered remote tool servers"""

    def __init__(self, tool_registry: ToolRegistry, timeout: float = 30.0):
        self.tool_registry = tool_registry
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_ids = itertools.count(1)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def list_tools(self, label: str) -> List[ToolSpec]:
        server = self.tool_registry.get_server(label)
        if server is None or not server.endpoint:
            logger.warning("Unknown tool server label", label=label)
            return []

        data = await self._rpc(label, server.endpoint, "tools/list", {})
        return self._parse_tools(label, data)

    async def call_tool(self, label: str, name: str, arguments: Dict[str, Any]) -> Any:
        server = self.tool_registry.get_server(label)
        if server is None or not server.endpoint:
            raise TransientDependencyError("tool_server", f"No endpoint for tool server {label}")

        data = await self._rpc(label, server.endpoint, "tools/call", {"name": name, "arguments": arguments})
        result = data.get("result") or {}

        if result.get("isError"):
            raise TransientDependencyError("tool_server", f"Tool {name} failed on {label}: {self._first_text(result)}")

        logger.info("Called remote tool", label=label, tool=name)

        text = self._first_text(result)
        if text is None:
            return result.get("content", [])
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    async def _rpc(self, label: str, endpoint: str, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params
        }
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream"
        }

        session = await self._get_session()
        try:
            async with session.post(endpoint, json=payload, headers=headers) as response:
                if response.status != 200:
                    text = await response.text()
                    raise TransientDependencyError(
                        "tool_server",
                        f"{method} on {label} failed: {response.status} - {text[:200]}"
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientDependencyError("tool_server", f"Could not reach tool server {label}", cause=e)

        if "error" in data:
            raise TransientDependencyError("tool_server", f"Tool server {label} returned an error: {data['error']}")

        return data

    @staticmethod
    def _first_text(result: Dict[str, Any]) -> Optional[str]:
        content = result.get("content") or []
        if content and content[0].get("type") == "text":
            return content[0].get("text", "")
        return None

    def _parse_tools(self, label: str, data: Dict[str, Any]) -> List[ToolSpec]:
        tools = (data.get("result") or {}).get("tools", [])
        specs = [
            ToolSpec(
                name=tool["name"],
                description=tool.get("description", ""),
                input_schema=tool.get("inputSchema", {}),
                server_label=label
            )
            for tool in tools
            if "name" in tool
        ]

        logger.info("Listed remote tools", label=label, count=len(specs))
        return specs
