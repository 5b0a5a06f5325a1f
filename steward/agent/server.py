"""FastAPI server for a running agent.

Exposes endpoints for connectors and operators:
  GET  /status                   - agent state and counters
  POST /updates                  - queue an inbound update for the next commit
  GET  /capabilities             - registered tools
  GET  /transcript               - tail of the in-memory transcript
  GET  /sessions                 - process session snapshots
  GET  /sessions/{id}            - one session snapshot
  GET  /sessions/{id}/output     - tail of a session's output
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal, Optional

from fastapi import FastAPI, HTTPException

from steward.agent.processes import UnknownSessionError
from steward.shared.types import AgentStatus, ReadResult, SessionSummary, UpdatePayload
from steward.shared.utils import setup_logging, truncate

if TYPE_CHECKING:
    from steward.agent.loop import AgentLoop
    from steward.agent.processes import ProcessSessionManager

logger = setup_logging("agent.server")


def create_agent_app(
    loop: AgentLoop,
    session_manager: Optional[ProcessSessionManager] = None,
) -> FastAPI:
    """Create the FastAPI application for an agent."""
    app = FastAPI(title=f"Steward Agent: {loop.agent_id}")

    def _sessions() -> ProcessSessionManager:
        if session_manager is None:
            raise HTTPException(404, "Process sessions are not enabled")
        return session_manager

    @app.get("/status", response_model=AgentStatus)
    async def get_status() -> AgentStatus:
        """Return current agent status."""
        return loop.get_status()

    @app.post("/updates")
    async def push_update(payload: UpdatePayload) -> dict:
        """Queue an update; it reaches the transcript at the next commit point."""
        if not payload.content.strip() and not payload.images:
            raise HTTPException(400, "Update has no content")
        loop.push_update(payload.content, source=payload.source, images=payload.images)
        logger.info(f"Update from {payload.source}: {truncate(payload.content, 100)}")
        return {"queued": True, "pending": len(loop.updates)}

    @app.get("/capabilities")
    async def get_capabilities() -> dict:
        return {
            "agent_id": loop.agent_id,
            "tools": [
                {**d.model_dump(mode="json"), "provider": loop.tools.provider_of(d.name)}
                for d in loop.tools.get_tool_definitions()
            ],
        }

    @app.get("/transcript")
    async def get_transcript(limit: int = 20) -> dict:
        limit = max(1, min(limit, 500))
        messages = loop.messages[-limit:]
        return {
            "total": len(loop.messages),
            "messages": [m.model_dump(mode="json", exclude_none=True) for m in messages],
        }

    @app.get("/sessions", response_model=list[SessionSummary])
    async def list_sessions() -> list[SessionSummary]:
        return _sessions().list_sessions()

    @app.get("/sessions/{session_id}", response_model=SessionSummary)
    async def get_session(session_id: str) -> SessionSummary:
        try:
            return _sessions().status(session_id)
        except UnknownSessionError as e:
            raise HTTPException(404, str(e))

    @app.get("/sessions/{session_id}/output", response_model=ReadResult)
    async def read_session(
        session_id: str,
        stream: Literal["stdout", "stderr", "combined"] = "combined",
        tail_chars: int = 4000,
    ) -> ReadResult:
        try:
            return _sessions().read(session_id, stream, tail_chars)
        except UnknownSessionError as e:
            raise HTTPException(404, str(e))

    return app
