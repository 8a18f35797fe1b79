from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Iterable, Set
import time
import structlog

from convo_agent.domain.models import ToolSpec
from convo_agent.infrastructure.observability.logging import MetricsCollector, engine_logger
from .single_flight import SingleFlight

logger = structlog.get_logger(__name__)


class BaseToolLister(ABC):
    """Enumerates the tools exposed by a remote tool-server label"""

    @abstractmethod
    async def list_tools(self, label: str) -> List[ToolSpec]:
        """Round-trip to the remote server; may raise"""
        pass


class BaseToolExecutor(ABC):
    """Executes a tool on the remote server that exposes it"""

    @abstractmethod
    async def call_tool(self, label: str, name: str, arguments: Dict[str, Any]) -> Any:
        """Return the tool's result; may raise"""
        pass


class DiscoveryCoordinator:
    """Deduplicated, cached tool discovery per remote label.

    A non-empty result is cached until ``invalidate`` is called. Empty
    results are not cached, so the next call retries; ``attempted`` tells a
    caller whether a label has been tried at least once.
    """

    def __init__(self, lister: BaseToolLister, metrics: Optional[MetricsCollector] = None):
        self.lister = lister
        self.metrics = metrics or MetricsCollector()
        self._cache: Dict[str, List[ToolSpec]] = {}
        self._attempted: Set[str] = set()
        self._flights = SingleFlight()

    @property
    def registry_size(self) -> int:
        """Number of labels with a cached tool list"""
        return len(self._cache)

    def cached_tools(self, label: str) -> List[ToolSpec]:
        return list(self._cache.get(label, []))

    def attempted(self, label: str) -> bool:
        return label in self._attempted

    def in_flight(self, label: str) -> bool:
        return self._flights.in_flight(label)

    def invalidate(self, label: Optional[str] = None):
        """Forget cached tools for one label, or for all labels"""

        if label is None:
            self._cache.clear()
            self._attempted.clear()
        else:
            self._cache.pop(label, None)
            self._attempted.discard(label)

        logger.info("Discovery cache invalidated", label=label or "*")

    async def discover(self, label: str) -> int:
        """Tool count for a label; 0 when discovery fails"""

        cached = self._cache.get(label)
        if cached:
            self.metrics.increment_counter("discovery.cache_hits", tags={"label": label})
            return len(cached)

        try:
            tools = await self._flights.run(label, lambda: self._perform_discovery(label))
        except Exception as e:
            logger.error("Tool discovery failed", label=label, error=str(e))
            self.metrics.increment_counter("discovery.failures", tags={"label": label})
            return 0

        return len(tools)

    async def discover_all(self, labels: Iterable[str]) -> Dict[str, int]:
        """Discover several labels one after another"""

        counts = {}
        for label in labels:
            counts[label] = await self.discover(label)
        return counts

    async def _perform_discovery(self, label: str) -> List[ToolSpec]:
        started = time.perf_counter()
        self._attempted.add(label)
        self.metrics.increment_counter("discovery.attempts", tags={"label": label})

        tools = await self.lister.list_tools(label)
        tools = [tool.model_copy(update={"server_label": label}) for tool in tools]

        if tools:
            self._cache[label] = tools

        duration_ms = (time.perf_counter() - started) * 1000
        self.metrics.record_latency("discovery", duration_ms, tags={"label": label})
        engine_logger.log_tool_event("discovered", call_id=label, tool_name=None, tools=len(tools))

        return tools
