"""Tests for the module-level entry points."""

import json

import pytest

from mcp_bridge import bridge
from mcp_bridge.errors import InitializationError, ServerNotFoundError
from mcp_bridge.service import ServiceState, get_service


CONFIG = {"mcpServers": {"twitter": {"command": "node", "args": ["twitter.js"]}}}


@pytest.fixture
def default_service(build_service, connector, tool_factory, monkeypatch):
    connector.add("twitter", tools=[tool_factory("post_tweet")], text="posted")
    service = build_service({"mcpServers": {}})
    monkeypatch.setattr("mcp_bridge.service._service", service)
    return service


class TestEntryPoints:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, default_service):
        await bridge.initialize_mcp(config=CONFIG)

        tools = await bridge.get_mcp_tools()
        result = await bridge.execute_mcp_function("twitter", "post_tweet", {"text": "hi"})
        await bridge.cleanup_mcp()

        assert get_service() is default_service
        assert list(tools) == ["post_tweet"]
        assert result.text == "posted"
        assert default_service.state == ServiceState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_config_path(self, default_service, tmp_path):
        path = tmp_path / "servers.json"
        path.write_text(json.dumps(CONFIG))

        await bridge.initialize_mcp(config_path=path)

        assert default_service.supervisor.running_names() == {"twitter"}
        await bridge.cleanup_mcp()

    @pytest.mark.asyncio
    async def test_initialization_failure_propagates(self, default_service):
        with pytest.raises(InitializationError):
            await bridge.initialize_mcp()

        assert default_service.state == ServiceState.ERROR

    @pytest.mark.asyncio
    async def test_unknown_server(self, default_service):
        await bridge.initialize_mcp(config=CONFIG)

        with pytest.raises(ServerNotFoundError):
            await bridge.get_mcp_tools(server_name="ghost")
        await bridge.cleanup_mcp()
