"""Tests for tool server configuration and per-tool enablement."""
import json

import pytest

from conftest import CountingToolLister
from convo_agent.domain.models import RemoteToolServer
from convo_agent.domain.tool.discovery import DiscoveryCoordinator
from convo_agent.domain.tool.tool_registry import ToolRegistry


def write_config(path, servers):
    path.write_text(json.dumps({"servers": servers}), encoding="utf-8")


class TestLoadConfig:
    """Reading server definitions from disk."""

    def test_camel_case_entries(self, tmp_path):
        config = tmp_path / "mcp.json"
        write_config(config, [
            {"name": "search", "type": "hosted", "serverLabel": "web", "serverUrl": "https://tools.example.com/mcp"},
            {"name": "calc", "type": "http", "url": "http://localhost:9000/mcp"},
        ])
        registry = ToolRegistry(str(config))

        loaded = registry.load_config()

        assert [s.label for s in loaded] == ["web", "calc"]
        assert registry.get_server("web").endpoint == "https://tools.example.com/mcp"
        assert registry.get_server("calc").endpoint == "http://localhost:9000/mcp"

    def test_skips_unsupported_and_invalid_entries(self, tmp_path):
        config = tmp_path / "mcp.json"
        write_config(config, [
            {"name": "local", "type": "stdio", "url": "python server.py"},
            {"name": "nourl", "type": "http"},
            {"type": "http", "url": "http://x"},
            {"name": "ok", "url": "http://ok.example.com"},
        ])
        registry = ToolRegistry(str(config))

        assert [s.name for s in registry.load_config()] == ["ok"]
        assert registry.labels() == ["ok"]

    def test_missing_or_broken_file(self, tmp_path):
        assert ToolRegistry(str(tmp_path / "absent.json")).load_config() == []
        assert ToolRegistry().load_config() == []

        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        assert ToolRegistry(str(broken)).load_config() == []

    def test_save_config_writes_aliases(self, tmp_path):
        config = tmp_path / "mcp.json"
        registry = ToolRegistry(str(config))
        registry.register_server(RemoteToolServer(name="search", server_label="web", server_url="https://t.example.com"))

        registry.save_config()

        saved = json.loads(config.read_text(encoding="utf-8"))
        assert saved["servers"][0]["serverLabel"] == "web"
        assert saved["servers"][0]["serverUrl"] == "https://t.example.com"
        reloaded = ToolRegistry(str(config))
        assert [s.label for s in reloaded.load_config()] == ["web"]


class TestEnabledTools:
    """Disabled tools are filtered out of the discovered set."""

    @pytest.mark.asyncio
    async def test_disabled_tool_is_excluded(self):
        registry = ToolRegistry()
        registry.register_server(RemoteToolServer(name="web", url="http://web.example.com"))
        discovery = DiscoveryCoordinator(CountingToolLister(tools=["search", "fetch"]))

        registry.disable_tool("web", "fetch")
        tools = await registry.enabled_tools(discovery)

        assert [t.name for t in tools] == ["search"]
        assert not registry.is_enabled("web", "fetch")

        registry.enable_tool("web", "fetch")
        assert [t.name for t in await registry.enabled_tools(discovery)] == ["search", "fetch"]

    def test_remove_server_and_describe(self):
        registry = ToolRegistry()
        registry.register_server(RemoteToolServer(name="web", url="http://web.example.com"))
        registry.disable_tool("web", "fetch")

        assert registry.describe() == [{
            "label": "web",
            "type": "hosted",
            "endpoint": "http://web.example.com",
            "disabled_tools": ["fetch"]
        }]
        assert registry.remove_server("web") is True
        assert registry.remove_server("web") is False
        assert registry.describe() == []
