"""Runtime: wires every component from config and owns their lifecycle."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

import uvicorn

from steward.agent.builtins.exec_tool import bash
from steward.agent.builtins.memory_tool import memory_read, memory_search, memory_write
from steward.agent.builtins.terminal_tool import terminal
from steward.agent.builtins.wake_tool import sleep_until
from steward.agent.context import ContextManager
from steward.agent.history import TranscriptStore
from steward.agent.llm import HTTPBackend, ReasoningBackend
from steward.agent.loop import AgentLoop
from steward.agent.mcp_client import MCPClient
from steward.agent.memory import DAILY_DIR, MEMORY_FILE, MemoryFiles
from steward.agent.processes import ProcessSessionManager
from steward.agent.tools import ToolRegistry
from steward.agent.updates import UpdateQueue
from steward.agent.wake import WakeControl, build_policy
from steward.cli.config import StewardConfig

logger = logging.getLogger("cli")


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server sharing the runtime's event loop.

    The CLI owns SIGINT and SIGTERM, so uvicorn must not capture them.
    """

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class Runtime:
    """Builds the agent from a StewardConfig and runs its wake policy.

    Process signals are not handled here: the caller invokes ``stop()``
    (from a signal handler or elsewhere), and ``run()`` then shuts down.
    """

    def __init__(self, cfg: StewardConfig, backend: Optional[ReasoningBackend] = None):
        self.cfg = cfg
        self.backend = backend or HTTPBackend(
            url=cfg.backend.url,
            model=cfg.backend.model,
            token=cfg.backend.token,
            timeout=cfg.backend.timeout,
            max_tokens=cfg.backend.max_tokens,
        )
        self.session_manager = ProcessSessionManager(
            cfg.sessions_path,
            max_output_chars=cfg.processes.max_output_chars,
            persisted_output_chars=cfg.processes.persisted_output_chars,
            grace_seconds=cfg.processes.grace_seconds,
            default_timeout_seconds=cfg.processes.default_timeout_seconds,
            shell=cfg.processes.shell,
        )
        self.wake_control = WakeControl()
        self.memory_files = MemoryFiles(cfg.memory_path)
        self.tools = ToolRegistry(
            session_manager=self.session_manager,
            wake_control=self.wake_control,
            memory_files=self.memory_files,
        )
        self.tools.register_skills(terminal, bash, sleep_until, memory_read, memory_write, memory_search)
        self.store = TranscriptStore(cfg.state_dir)
        self.context_manager = ContextManager(
            max_messages=cfg.context.max_messages,
            max_message_chars=cfg.context.max_message_chars,
            max_request_chars=cfg.context.max_request_chars,
            min_window=cfg.context.min_window,
            memory_hint=f"{MEMORY_FILE} and {DAILY_DIR}/ (use the memory_* tools)",
        )
        self.updates = UpdateQueue()
        self.loop = AgentLoop(
            agent_id=cfg.name,
            backend=self.backend,
            tools=self.tools,
            store=self.store,
            context_manager=self.context_manager,
            instructions=cfg.instructions,
            updates=self.updates,
            wake_control=self.wake_control,
            max_turns_per_wake=cfg.wake.max_turns_per_wake,
        )
        self.policy = build_policy(
            cfg.wake.mode,
            interval_minutes=cfg.wake.interval_minutes,
            max_interval_minutes=cfg.wake.max_interval_minutes,
            backoff_multiplier=cfg.wake.backoff_multiplier,
        )
        self.mcp_client: Optional[MCPClient] = MCPClient() if cfg.mcp_servers else None
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task] = None
        self._started = False
        self._shut_down = False

    async def start(self) -> None:
        """Restore state and start external collaborators. Called once."""
        if self._started:
            return
        self._started = True
        self.cfg.state_dir.mkdir(parents=True, exist_ok=True)
        self.memory_files.ensure()
        await self.session_manager.load()
        if self.mcp_client is not None:
            await self.mcp_client.start([s.model_dump() for s in self.cfg.mcp_servers])
            count = self.tools.register_provider(self.mcp_client)
            logger.info(f"Registered {count} MCP tools")
        await self.loop.start()
        if self.cfg.server.port:
            self._start_server()

    def _start_server(self) -> None:
        from steward.agent.server import create_agent_app

        app = create_agent_app(self.loop, self.session_manager)
        server_config = uvicorn.Config(
            app, host=self.cfg.server.host, port=self.cfg.server.port, log_level="warning",
        )
        self._server = _EmbeddedServer(server_config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info(f"Agent API on http://{self.cfg.server.host}:{self.cfg.server.port}")

    async def run(self) -> None:
        """Start, then run wake cycles until ``stop()``. Always shuts down.

        BackendUnavailableError propagates after shutdown.
        """
        try:
            await self.start()
            await self.policy.run(self.loop.wake)
        finally:
            await self.shutdown()

    def stop(self) -> None:
        """Ask the wake policy to stop after the current step."""
        self.policy.stop()

    async def shutdown(self) -> None:
        """Tear down all components in reverse order. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True
        self.policy.stop()
        if self._server is not None:
            self._server.should_exit = True
            if self._server_task is not None:
                try:
                    await asyncio.wait_for(self._server_task, timeout=5)
                except asyncio.TimeoutError:
                    logger.warning("Agent API did not stop in time")
        await self.loop.shutdown()
        await self.session_manager.shutdown()
        if self.mcp_client is not None:
            await self.mcp_client.stop()
        close = getattr(self.backend, "close", None)
        if close is not None:
            try:
                await close()
            except Exception as e:
                logger.debug("Error closing backend: %s", e)
        logger.info("Runtime stopped")
