"""Tests for the MCP tool provider, with the MCP SDK mocked out."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from steward.agent.mcp_client import MCPClient, namespaced, resolve_env_vars
from steward.agent.tools import ToolRegistry
from steward.shared.types import RichResult, TextResult, ToolCall, ToolDefinition


def _make_mock_tool(name: str, description: str = "", input_schema: dict | None = None):
    tool = MagicMock()
    tool.name = name
    tool.description = description or f"Mock tool: {name}"
    tool.inputSchema = input_schema or {
        "type": "object",
        "properties": {"path": {"type": "string"}},
        "required": ["path"],
    }
    return tool


def _text_block(text: str):
    block = MagicMock()
    block.type = "text"
    block.text = text
    return block


def _image_block(data: str, mime: str = "image/png"):
    block = MagicMock(spec=["type", "data", "mimeType"])
    block.type = "image"
    block.data = data
    block.mimeType = mime
    return block


def _make_mock_result(*blocks, is_error: bool = False):
    result = MagicMock()
    result.isError = is_error
    result.content = list(blocks)
    return result


def _mcp_patches():
    return (
        patch("steward.agent.mcp_client.StdioServerParameters", MagicMock()),
        patch("steward.agent.mcp_client.stdio_client"),
        patch("steward.agent.mcp_client.ClientSession"),
    )


def _setup_mock_server(mock_stdio, mock_cs_cls, mock_session):
    mock_transport_cm = AsyncMock()
    mock_transport_cm.__aenter__ = AsyncMock(return_value=(MagicMock(), MagicMock()))
    mock_stdio.return_value = mock_transport_cm

    mock_session_cm = AsyncMock()
    mock_session_cm.__aenter__ = AsyncMock(return_value=mock_session)
    mock_cs_cls.return_value = mock_session_cm


def _mock_session(*tools):
    session = AsyncMock()
    tools_result = MagicMock()
    tools_result.tools = list(tools)
    session.initialize = AsyncMock()
    session.list_tools = AsyncMock(return_value=tools_result)
    return session


def _wired_client(**tools_by_server) -> MCPClient:
    """Client with sessions installed directly, bypassing start()."""
    client = MCPClient()
    for server, (session, names) in tools_by_server.items():
        client._sessions[server] = session
        for name in names:
            client._tools[namespaced(server, name)] = (server, name)
    return client


class TestEnvResolution:
    def test_expands_set_and_unset(self, monkeypatch):
        monkeypatch.setenv("GH_TOKEN", "abc")
        monkeypatch.delenv("NOT_THERE", raising=False)
        resolved = resolve_env_vars({"TOKEN": "${GH_TOKEN}", "URL": "x/${NOT_THERE}/y", "PLAIN": "v"})
        assert resolved == {"TOKEN": "abc", "URL": "x//y", "PLAIN": "v"}

    def test_none(self):
        assert resolve_env_vars(None) == {}


class TestMCPClientDiscovery:
    @pytest.mark.asyncio
    async def test_tools_namespaced_by_server(self):
        client = MCPClient()
        session = _mock_session(
            _make_mock_tool("read_file", "Read a file"),
            _make_mock_tool("write_file", "Write a file"),
        )

        p1, p2, p3 = _mcp_patches()
        with p1, p2 as mock_stdio, p3 as mock_cs_cls:
            _setup_mock_server(mock_stdio, mock_cs_cls, session)
            connected = await client.start([{"name": "fs", "command": "mcp-server-fs", "args": ["/data"]}])

        assert connected == 1
        tools = client.list_tools()
        assert {t.name for t in tools} == {"fs__read_file", "fs__write_file"}
        read_tool = next(t for t in tools if t.name == "fs__read_file")
        assert read_tool.description == "Read a file"
        assert read_tool.parameters["required"] == ["path"]

    @pytest.mark.asyncio
    async def test_same_tool_on_two_servers(self):
        client = MCPClient()
        session = _mock_session(_make_mock_tool("search"))

        p1, p2, p3 = _mcp_patches()
        with p1, p2 as mock_stdio, p3 as mock_cs_cls:
            _setup_mock_server(mock_stdio, mock_cs_cls, session)
            await client.start([
                {"name": "srv1", "command": "cmd1"},
                {"name": "srv2", "command": "cmd2"},
            ])

        assert client.has_tool("srv1__search")
        assert client.has_tool("srv2__search")
        assert not client.has_tool("search")

    @pytest.mark.asyncio
    async def test_env_passed_to_server(self, monkeypatch):
        monkeypatch.setenv("API_KEY", "k1")
        client = MCPClient()
        session = _mock_session()
        params_cls = MagicMock()

        with patch("steward.agent.mcp_client.StdioServerParameters", params_cls), \
                patch("steward.agent.mcp_client.stdio_client") as mock_stdio, \
                patch("steward.agent.mcp_client.ClientSession") as mock_cs_cls:
            _setup_mock_server(mock_stdio, mock_cs_cls, session)
            await client.start([{"name": "s", "command": "c", "env": {"KEY": "${API_KEY}"}}])

        env = params_cls.call_args.kwargs["env"]
        assert env["KEY"] == "k1"
        assert "PATH" in env

    @pytest.mark.asyncio
    async def test_failed_server_skipped(self):
        client = MCPClient()
        good_session = _mock_session(_make_mock_tool("good_tool"))
        call_count = 0

        def mock_stdio_side_effect(params):
            nonlocal call_count
            call_count += 1
            cm = AsyncMock()
            if call_count == 1:
                cm.__aenter__ = AsyncMock(side_effect=RuntimeError("Server crashed"))
            else:
                cm.__aenter__ = AsyncMock(return_value=(MagicMock(), MagicMock()))
            return cm

        with patch("steward.agent.mcp_client.StdioServerParameters", MagicMock()), \
                patch("steward.agent.mcp_client.stdio_client", side_effect=mock_stdio_side_effect), \
                patch("steward.agent.mcp_client.ClientSession") as mock_cs_cls:
            mock_session_cm = AsyncMock()
            mock_session_cm.__aenter__ = AsyncMock(return_value=good_session)
            mock_cs_cls.return_value = mock_session_cm

            connected = await client.start([
                {"name": "bad", "command": "bad-cmd"},
                {"name": "good", "command": "good-cmd"},
            ])

        assert connected == 1
        assert client.has_tool("good__good_tool")
        assert not any(name.startswith("bad__") for name in client._tools)


class TestMCPClientCallTool:
    @pytest.mark.asyncio
    async def test_routes_to_owning_server(self):
        session_a = AsyncMock()
        session_b = AsyncMock()
        session_a.call_tool = AsyncMock(return_value=_make_mock_result(_text_block("result_a")))
        session_b.call_tool = AsyncMock(return_value=_make_mock_result(_text_block("result_b")))
        client = _wired_client(a=(session_a, ["tool"]), b=(session_b, ["tool"]))

        result = await client.call_tool("a__tool", {"arg": "val"})
        assert result == TextResult(text="result_a")
        session_a.call_tool.assert_awaited_once_with("tool", {"arg": "val"})
        session_b.call_tool.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_text_blocks_joined(self):
        session = AsyncMock()
        session.call_tool = AsyncMock(return_value=_make_mock_result(_text_block("one"), _text_block("two")))
        client = _wired_client(s=(session, ["t"]))
        assert (await client.call_tool("s__t", {})).text == "one\ntwo"

    @pytest.mark.asyncio
    async def test_image_blocks_become_rich_result(self):
        session = AsyncMock()
        session.call_tool = AsyncMock(return_value=_make_mock_result(
            _text_block("screenshot taken"), _image_block("aGk="),
        ))
        client = _wired_client(browser=(session, ["screenshot"]))
        result = await client.call_tool("browser__screenshot", {})
        assert isinstance(result, RichResult)
        assert result.text == "screenshot taken"
        assert result.images[0].mime_type == "image/png"
        assert result.images[0].data == "aGk="

    @pytest.mark.asyncio
    async def test_error_result_raises(self):
        session = AsyncMock()
        session.call_tool = AsyncMock(
            return_value=_make_mock_result(_text_block("something went wrong"), is_error=True),
        )
        client = _wired_client(srv=(session, ["broken"]))
        with pytest.raises(RuntimeError, match="something went wrong"):
            await client.call_tool("srv__broken", {})

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        with pytest.raises(RuntimeError, match="Unknown MCP tool"):
            await MCPClient().call_tool("nonexistent", {})

    @pytest.mark.asyncio
    async def test_disconnected_server(self):
        client = MCPClient()
        client._tools = {"dead__orphan": ("dead", "orphan")}
        with pytest.raises(RuntimeError, match="not connected"):
            await client.call_tool("dead__orphan", {})

    @pytest.mark.asyncio
    async def test_errors_become_data_through_registry(self):
        session = AsyncMock()
        session.call_tool = AsyncMock(
            return_value=_make_mock_result(_text_block("quota exceeded"), is_error=True),
        )
        client = _wired_client(srv=(session, ["search"]))
        client._definitions["srv__search"] = ToolDefinition(name="srv__search", description="Search")

        registry = ToolRegistry()
        assert registry.register_provider(client) == 1
        assert registry.provider_of("srv__search") == "mcp"
        result = await registry.dispatch(ToolCall(id="c1", name="srv__search", args={}))
        assert result.text == "Tool error: quota exceeded"


class TestMCPClientLifecycle:
    @pytest.mark.asyncio
    async def test_stop_cleans_up(self):
        client = _wired_client(test=(MagicMock(), ["tool"]))
        stack = AsyncMock()
        client._exit_stack = stack

        await client.stop()

        stack.aclose.assert_awaited_once()
        assert client._sessions == {}
        assert client._tools == {}
        assert client.list_tools() == []

    def test_has_tool(self):
        client = _wired_client(server=(MagicMock(), ["tool"]))
        assert client.has_tool("server__tool")
        assert not client.has_tool("tool")
