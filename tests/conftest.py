"""Shared fixtures and test doubles."""
import asyncio
from typing import List, Optional

import pytest

from convo_agent.domain.context.memory_manager import MemoryManager
from convo_agent.domain.models import AgentResult, ToolSpec
from convo_agent.domain.orchestration.agent_runner import BaseAgentRunner
from convo_agent.domain.session.session_registry import SessionRegistry
from convo_agent.domain.tool.discovery import BaseToolLister, DiscoveryCoordinator
from convo_agent.domain.tool.tool_registry import ToolRegistry
from convo_agent.infrastructure.config import Settings
from convo_agent.infrastructure.observability.logging import MetricsCollector
from convo_agent.infrastructure.persistence import InMemoryDurableStore


class ScriptedAgentRunner(BaseAgentRunner):
    """Replays a fixed event script; optionally fails at the end."""

    def __init__(self, events=None, result: Optional[AgentResult] = None, error: Optional[Exception] = None):
        self.events = list(events or [])
        self.result = result or AgentResult(text="")
        self.error = error
        self.calls: List[dict] = []

    async def run(self, instructions, user_input, tools, history=None):
        self.calls.append({"instructions": instructions, "input": user_input, "tools": tools, "history": history})
        if self.error:
            raise self.error
        return self.result

    async def stream(self, instructions, user_input, tools, history=None):
        self.calls.append({"instructions": instructions, "input": user_input, "tools": tools, "history": history})
        for event in self.events:
            await asyncio.sleep(0)
            yield event
        if self.error:
            raise self.error


class RecordingSink:
    """Stands in for the connection manager and keeps every event."""

    def __init__(self):
        self.events = []

    async def send_event(self, connection_id, event):
        self.events.append(event)
        return True

    def types(self) -> List[str]:
        return [event.type.value for event in self.events]

    def of_type(self, event_type: str):
        return [event for event in self.events if event.type.value == event_type]


class CountingToolLister(BaseToolLister):
    """Tool lister that counts round-trips and can be gated or made to fail."""

    def __init__(self, tools: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.tools = tools or []
        self.error = error
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def list_tools(self, label):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        return [ToolSpec(name=name, description=f"{name} tool") for name in self.tools]


@pytest.fixture
def settings():
    """Inline side effects keep assertions deterministic."""
    return Settings(background_side_effects=False, tool_config_path="does-not-exist.json")


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def memory_manager(settings, metrics):
    return MemoryManager(settings=settings, metrics=metrics)


@pytest.fixture
def durable_store():
    return InMemoryDurableStore()


@pytest.fixture
def session_registry(memory_manager, durable_store, settings, metrics):
    return SessionRegistry(memory_manager, durable_store, settings=settings, metrics=metrics)


@pytest.fixture
def tool_lister():
    return CountingToolLister(tools=["search", "calculator"])


@pytest.fixture
def discovery(tool_lister, metrics):
    return DiscoveryCoordinator(tool_lister, metrics=metrics)


@pytest.fixture
def tool_registry():
    return ToolRegistry()


@pytest.fixture
def sink():
    return RecordingSink()


class GatedMemoryManager(MemoryManager):
    """Holds extraction for one owner's messages until ``gate`` is set."""

    def __init__(self, gated_owner: str, **kwargs):
        super().__init__(**kwargs)
        self.gated_owner = gated_owner
        self.gate = asyncio.Event()

    async def _extract_memories(self, message, owner_id):
        if owner_id == self.gated_owner:
            await self.gate.wait()
        await super()._extract_memories(message, owner_id)
