"""Tests for the agent HTTP API."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from steward.agent.builtins.exec_tool import bash
from steward.agent.context import ContextManager
from steward.agent.history import TranscriptStore
from steward.agent.loop import AgentLoop
from steward.agent.processes import ProcessSessionManager
from steward.agent.server import create_agent_app
from steward.agent.tools import ToolRegistry
from steward.shared.types import Message, ModelResponse


def _make_app(tmp_path, with_sessions: bool = True) -> tuple:
    backend = MagicMock()
    backend.generate = AsyncMock(return_value=ModelResponse(text="ok"))
    manager = ProcessSessionManager(tmp_path / "sessions.json", grace_seconds=1.0) if with_sessions else None
    registry = ToolRegistry(session_manager=manager)
    registry.register_skill(bash)
    loop = AgentLoop(
        agent_id="test_agent",
        backend=backend,
        tools=registry,
        store=TranscriptStore(tmp_path),
        context_manager=ContextManager(),
    )
    return create_agent_app(loop, manager), loop, manager


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestStatus:
    @pytest.mark.asyncio
    async def test_status(self, tmp_path):
        app, _, _ = _make_app(tmp_path)
        async with _client(app) as client:
            resp = await client.get("/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["agent_id"] == "test_agent"
        assert data["state"] == "idle"
        assert data["turns_completed"] == 0

    @pytest.mark.asyncio
    async def test_capabilities(self, tmp_path):
        app, _, _ = _make_app(tmp_path)
        async with _client(app) as client:
            resp = await client.get("/capabilities")
        tools = resp.json()["tools"]
        assert [t["name"] for t in tools] == ["bash"]
        assert tools[0]["provider"] == "builtin"


class TestUpdates:
    @pytest.mark.asyncio
    async def test_update_queued(self, tmp_path):
        app, loop, _ = _make_app(tmp_path)
        async with _client(app) as client:
            resp = await client.post("/updates", json={"source": "slack", "content": "deploy finished"})
        assert resp.status_code == 200
        assert resp.json() == {"queued": True, "pending": 1}
        assert loop.updates.drain()[0].source == "slack"

    @pytest.mark.asyncio
    async def test_empty_update_rejected(self, tmp_path):
        app, loop, _ = _make_app(tmp_path)
        async with _client(app) as client:
            resp = await client.post("/updates", json={"content": "   "})
        assert resp.status_code == 400
        assert len(loop.updates) == 0

    @pytest.mark.asyncio
    async def test_missing_content_rejected(self, tmp_path):
        app, _, _ = _make_app(tmp_path)
        async with _client(app) as client:
            resp = await client.post("/updates", json={"source": "x"})
        assert resp.status_code == 422


class TestTranscript:
    @pytest.mark.asyncio
    async def test_tail(self, tmp_path):
        app, loop, _ = _make_app(tmp_path)
        loop.messages = [Message(role="user", text=f"m{i}") for i in range(5)]
        async with _client(app) as client:
            resp = await client.get("/transcript", params={"limit": 2})
        data = resp.json()
        assert data["total"] == 5
        assert [m["text"] for m in data["messages"]] == ["m3", "m4"]

    @pytest.mark.asyncio
    async def test_limit_clamped(self, tmp_path):
        app, loop, _ = _make_app(tmp_path)
        loop.messages = [Message(role="user", text="only")]
        async with _client(app) as client:
            resp = await client.get("/transcript", params={"limit": 0})
        assert len(resp.json()["messages"]) == 1


class TestSessions:
    @pytest.mark.asyncio
    async def test_list_status_and_output(self, tmp_path):
        app, _, manager = _make_app(tmp_path)
        session = await manager.create(working_directory=str(tmp_path))
        await manager.run(session.id, "echo from-session")

        async with _client(app) as client:
            listed = await client.get("/sessions")
            one = await client.get(f"/sessions/{session.id}")
            output = await client.get(f"/sessions/{session.id}/output", params={"stream": "stdout"})

        assert [s["id"] for s in listed.json()] == [session.id]
        assert one.json()["last_command"]["exit_code"] == 0
        assert output.json()["output"] == "from-session\n"
        assert output.json()["stream"] == "stdout"

    @pytest.mark.asyncio
    async def test_unknown_session_404(self, tmp_path):
        app, _, _ = _make_app(tmp_path)
        async with _client(app) as client:
            assert (await client.get("/sessions/nope")).status_code == 404
            assert (await client.get("/sessions/nope/output")).status_code == 404

    @pytest.mark.asyncio
    async def test_sessions_disabled_404(self, tmp_path):
        app, _, _ = _make_app(tmp_path, with_sessions=False)
        async with _client(app) as client:
            assert (await client.get("/sessions")).status_code == 404
