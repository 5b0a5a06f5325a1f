"""MCP (Model Context Protocol) tool provider.

Manages MCP server lifecycles via stdio transport. Each configured server
is started as a sub-process, its tools are discovered once, and every tool
is exposed under ``<server>__<tool>`` so names from different servers (and
built-ins) never collide.
"""

from __future__ import annotations

import os
import re
from contextlib import AsyncExitStack
from typing import Any

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client

from steward.shared.types import ImageData, RichResult, TextResult, ToolDefinition, ToolOutput
from steward.shared.utils import setup_logging

logger = setup_logging("agent.mcp")

NAME_SEPARATOR = "__"
_ENV_REF = re.compile(r"\$\{(\w+)\}")


def resolve_env_vars(env: dict[str, str] | None) -> dict[str, str]:
    """Expand ``${VAR}`` references from the process environment.

    Unset variables expand to the empty string.
    """
    return {
        key: _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), str(value))
        for key, value in (env or {}).items()
    }


def namespaced(server: str, tool: str) -> str:
    return f"{server}{NAME_SEPARATOR}{tool}"


class MCPClient:
    """Tool provider backed by one or more MCP servers.

    Satisfies ``ToolProvider``: hand it to ``ToolRegistry.register_provider``
    after ``start()``.
    """

    name = "mcp"

    def __init__(self) -> None:
        self._exit_stack = AsyncExitStack()
        self._sessions: dict[str, ClientSession] = {}
        self._tools: dict[str, tuple[str, str]] = {}  # namespaced → (server, original)
        self._definitions: dict[str, ToolDefinition] = {}

    async def _connect(self, server_cfg: dict) -> ClientSession:
        params = StdioServerParameters(
            command=server_cfg["command"],
            args=list(server_cfg.get("args") or []),
            env={**os.environ, **resolve_env_vars(server_cfg.get("env"))},
        )
        read_stream, write_stream = await self._exit_stack.enter_async_context(stdio_client(params))
        session = await self._exit_stack.enter_async_context(ClientSession(read_stream, write_stream))
        await session.initialize()
        return session

    def _add_tools(self, server: str, tools: list[Any]) -> None:
        for tool in tools:
            tool_name = namespaced(server, tool.name)
            if tool_name in self._tools:
                logger.warning(f"MCP tool '{tool_name}' listed twice, keeping the first")
                continue
            self._tools[tool_name] = (server, tool.name)
            self._definitions[tool_name] = ToolDefinition(
                name=tool_name,
                description=tool.description or "",
                parameters=tool.inputSchema or {"type": "object", "properties": {}},
            )

    async def start(self, servers: list[dict]) -> int:
        """Connect to each server and discover its tools.

        Each entry has ``name``, ``command`` and optionally ``args`` and
        ``env`` (values may reference ``${VAR}``). A server that fails to
        start is logged and skipped. Returns how many connected.
        """
        connected = 0
        for server_cfg in servers:
            name = server_cfg["name"]
            try:
                session = await self._connect(server_cfg)
                listing = await session.list_tools()
            except Exception as e:
                logger.error(f"MCP server '{name}' failed to start: {e}")
                continue
            self._sessions[name] = session
            self._add_tools(name, listing.tools)
            connected += 1
            logger.info(f"MCP server '{name}' connected with {len(listing.tools)} tools")
        return connected

    async def stop(self) -> None:
        """Close every server connection and forget their tools."""
        try:
            await self._exit_stack.aclose()
        except Exception as e:
            logger.warning(f"MCP shutdown error: {e}")
        self._exit_stack = AsyncExitStack()
        self._sessions.clear()
        self._tools.clear()
        self._definitions.clear()

    def list_tools(self) -> list[ToolDefinition]:
        return list(self._definitions.values())

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    async def call_tool(self, name: str, arguments: dict) -> ToolOutput:
        """Route a namespaced call to the server that owns it.

        Raises RuntimeError for unknown tools, lost servers and error
        results; the registry reports those back to the model.
        """
        if name not in self._tools:
            raise RuntimeError(f"Unknown MCP tool: {name}")
        server, original = self._tools[name]
        session = self._sessions.get(server)
        if session is None:
            raise RuntimeError(f"MCP server '{server}' not connected")

        result = await session.call_tool(original, arguments)
        texts: list[str] = []
        images: list[ImageData] = []
        for block in result.content:
            if getattr(block, "type", None) == "image":
                images.append(ImageData(mime_type=block.mimeType, data=block.data))
            elif hasattr(block, "text"):
                texts.append(block.text)
        text = "\n".join(texts)
        if result.isError:
            raise RuntimeError(text or "MCP tool returned an error")
        if images:
            return RichResult(text=text, images=images)
        return TextResult(text=text)
