"""Process session manager: long-lived shell sessions run as a tool.

A session is a durable handle (working directory + environment) that runs
one command at a time. Distinct sessions are independent and run
concurrently with each other and with the turn engine; a background run
returns as soon as the child is spawned.

Commands run in their own process group so timeouts and cancellation
reach children too. On timeout the group gets SIGTERM, then SIGKILL after
a grace window. Output is accumulated incrementally and capped by
discarding from the front.

Session snapshots are written to ``sessions.json`` after every state
transition (atomic replace, one write at a time). Live process handles are
never persisted; on load, any command still marked running is demoted to
cancelled because its process cannot exist anymore.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal as signal_mod
import uuid
from pathlib import Path
from typing import Literal, NamedTuple

from pydantic import ValidationError

from steward.shared.types import (
    CancelResult,
    CloseResult,
    CommandState,
    CommandSummary,
    PersistedSessions,
    ProcessSession,
    ReadResult,
    RunResult,
    SessionSummary,
)
from steward.shared.utils import setup_logging, tail, truncate, utcnow

logger = setup_logging("agent.processes")

DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_READ_TAIL_CHARS = 4000
MAX_OUTPUT_BUFFER_CHARS = 100_000
PERSISTED_OUTPUT_CHARS = 20_000
FORCE_KILL_GRACE_SECONDS = 5.0
_DRAIN_SECONDS = 0.1
_READ_CHUNK = 4096
_STREAM_LIMIT = 2 ** 16

Stream = Literal["stdout", "stderr", "combined"]
ALLOWED_SIGNALS = ("SIGTERM", "SIGKILL", "SIGINT")


class UnknownSessionError(LookupError):
    def __init__(self, session_id: str):
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


class SessionBusyError(RuntimeError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} already has a running command")
        self.session_id = session_id


class SessionRunningError(RuntimeError):
    def __init__(self, session_id: str):
        super().__init__(
            f"Session {session_id} has a running command. Use force=true or cancel first."
        )
        self.session_id = session_id


def shell_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    """Environment for child shells: ours, plus non-interactive defaults."""
    env = dict(os.environ)
    env.setdefault("PAGER", "cat")
    env.setdefault("GIT_PAGER", "cat")
    env.setdefault("GIT_TERMINAL_PROMPT", "0")
    if extra:
        env.update(extra)
    return env


def _summarize(command: CommandState | None) -> CommandSummary | None:
    if command is None:
        return None
    return CommandSummary(
        **command.model_dump(exclude={"stdout", "stderr"}),
        stdout_chars=len(command.stdout),
        stderr_chars=len(command.stderr),
    )


def _signal_process(proc: asyncio.subprocess.Process, sig: signal_mod.Signals) -> None:
    """Signal the command's whole process group, falling back to the child."""
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass


class _ExitWatchProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that resolves ``exited`` as soon as the child exits.

    ``Process.wait()`` can also wait for every pipe to close, which never
    happens while a backgrounded descendant still holds stdout open.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        super().__init__(limit=_STREAM_LIMIT, loop=loop)
        self.exited: asyncio.Future = loop.create_future()

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(None)


class _Child(NamedTuple):
    proc: asyncio.subprocess.Process
    exited: asyncio.Future


class ProcessSessionManager:
    """Supervises shell sessions referenced by opaque ids."""

    def __init__(
        self,
        state_file: str | Path,
        max_output_chars: int = MAX_OUTPUT_BUFFER_CHARS,
        persisted_output_chars: int = PERSISTED_OUTPUT_CHARS,
        grace_seconds: float = FORCE_KILL_GRACE_SECONDS,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        shell: str = "bash",
        base_env: dict[str, str] | None = None,
    ):
        self.state_file = Path(state_file)
        self.max_output_chars = max_output_chars
        self.persisted_output_chars = persisted_output_chars
        self.grace_seconds = grace_seconds
        self.default_timeout_seconds = default_timeout_seconds
        self.shell = shell
        self.base_env = base_env or {}
        self._sessions: dict[str, ProcessSession] = {}
        self._procs: dict[str, asyncio.subprocess.Process] = {}
        self._supervisors: dict[str, asyncio.Task] = {}
        self._persist_lock = asyncio.Lock()
        self._loaded = False

    # ── Persistence ───────────────────────────────────────────

    async def load(self) -> int:
        """Restore sessions from disk once. Returns the number restored."""
        if self._loaded:
            return len(self._sessions)
        self._loaded = True
        try:
            raw = await asyncio.to_thread(self.state_file.read_text, encoding="utf-8")
        except FileNotFoundError:
            return 0
        except OSError as e:
            logger.error(f"Could not read session state {self.state_file}: {e}")
            return 0
        try:
            persisted = PersistedSessions.model_validate_json(raw)
        except ValidationError as e:
            logger.error(f"Ignoring corrupt session state {self.state_file}: {e.error_count()} errors")
            return 0

        demoted = 0
        for session in persisted.sessions:
            active = session.active_command
            if active is not None:
                if active.status == "running":
                    active = active.model_copy(update={
                        "status": "cancelled",
                        "finished_at": utcnow(),
                    })
                    demoted += 1
                session = session.model_copy(update={
                    "active_command": None,
                    "last_command": active,
                })
            self._sessions[session.id] = session

        if demoted:
            logger.warning(f"Demoted {demoted} orphaned running command(s) to cancelled")
            await self._persist()
        logger.info(f"Restored {len(self._sessions)} session(s) from {self.state_file}")
        return len(self._sessions)

    def _snapshot(self) -> str:
        cap = self.persisted_output_chars

        def trimmed(cmd: CommandState | None) -> CommandState | None:
            if cmd is None:
                return None
            return cmd.model_copy(update={
                "stdout": tail(cmd.stdout, cap),
                "stderr": tail(cmd.stderr, cap),
            })

        payload = PersistedSessions(sessions=[
            s.model_copy(update={
                "active_command": trimmed(s.active_command),
                "last_command": trimmed(s.last_command),
            })
            for s in self._sessions.values()
        ])
        return payload.model_dump_json(indent=2)

    def _write_state(self, data: str) -> None:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_name(f".{self.state_file.name}.{uuid.uuid4().hex[:8]}.tmp")
        tmp.write_text(data, encoding="utf-8")
        os.replace(tmp, self.state_file)

    async def _persist(self) -> None:
        """Flush all sessions. Failures are logged, never raised."""
        async with self._persist_lock:
            try:
                await asyncio.to_thread(self._write_state, self._snapshot())
            except OSError as e:
                logger.error(f"Failed to persist session state: {e}")

    # ── Queries ───────────────────────────────────────────────

    def _get(self, session_id: str) -> ProcessSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)
        return session

    def _touch(self, session: ProcessSession) -> None:
        session.updated_at = utcnow()

    def status(self, session_id: str) -> SessionSummary:
        session = self._get(session_id)
        return SessionSummary(
            id=session.id,
            working_directory=session.working_directory,
            created_at=session.created_at,
            updated_at=session.updated_at,
            active_command=_summarize(session.active_command),
            last_command=_summarize(session.last_command),
        )

    def list_sessions(self) -> list[SessionSummary]:
        return [self.status(sid) for sid in self._sessions]

    def is_running(self, session_id: str) -> bool:
        return self._get(session_id).active_command is not None

    def read(
        self,
        session_id: str,
        stream: Stream = "combined",
        tail_chars: int = DEFAULT_READ_TAIL_CHARS,
    ) -> ReadResult:
        """Most recent output of the active (or last) command. Never blocks."""
        if stream not in ("stdout", "stderr", "combined"):
            raise ValueError(f"Unknown stream: {stream}")
        session = self._get(session_id)
        source = session.active_command or session.last_command
        if source is None:
            return ReadResult(session_id=session_id, stream=stream)

        safe_tail = max(1, int(tail_chars))
        if stream == "stdout":
            raw = source.stdout
        elif stream == "stderr":
            raw = source.stderr
        else:
            raw = "\n".join(part for part in (source.stdout, source.stderr) if part)
        return ReadResult(
            session_id=session_id,
            stream=stream,
            output=tail(raw, safe_tail),
            has_command=True,
            command=source.command,
            status=source.status,
            truncated=len(raw) > safe_tail,
        )

    # ── Lifecycle ─────────────────────────────────────────────

    async def create(
        self,
        working_directory: str | None = None,
        environment: dict[str, str] | None = None,
    ) -> ProcessSession:
        """New session with a fresh id. No process is spawned yet."""
        session = ProcessSession(
            id=uuid.uuid4().hex,
            working_directory=working_directory or os.getcwd(),
            environment=dict(environment or {}),
        )
        self._sessions[session.id] = session
        logger.info(f"Created session {session.id} in {session.working_directory}")
        await self._persist()
        return session

    async def run(
        self,
        session_id: str,
        command: str,
        timeout_seconds: float | None = None,
        background: bool = False,
    ) -> RunResult:
        """Run *command* in a session.

        Raises UnknownSessionError or SessionBusyError before anything is
        spawned. Every other failure ends up in the returned command state.
        """
        session = self._get(session_id)
        if session.active_command is not None:
            raise SessionBusyError(session_id)

        timeout = self._resolve_timeout(timeout_seconds)
        state = CommandState(command=command, timeout_seconds=timeout)
        session.active_command = state
        self._touch(session)

        task = await self._start(session, state)
        await self._persist()

        if background:
            return RunResult(
                session_id=session_id,
                background=True,
                command=command,
                pid=state.pid,
                timeout_seconds=timeout,
            )

        done = await asyncio.shield(task)
        return RunResult(
            session_id=session_id,
            background=False,
            command=done.command,
            pid=done.pid,
            timeout_seconds=timeout,
            status=done.status,
            exit_code=done.exit_code,
            signal=done.signal,
            timed_out=done.timed_out,
            stdout=done.stdout,
            stderr=done.stderr,
        )

    def _resolve_timeout(self, timeout_seconds: float | None) -> float:
        if timeout_seconds is None:
            timeout_seconds = self.default_timeout_seconds
        return max(1.0, float(timeout_seconds))

    async def _start(
        self, session: ProcessSession, state: CommandState, persist: bool = True,
    ) -> asyncio.Task:
        """Spawn the command and register its supervisor under the session id."""
        child = await self._spawn(session, state)
        if child is not None:
            self._procs[session.id] = child.proc
            task = asyncio.create_task(self._supervise(session, state, child, persist=persist))
        else:
            task = asyncio.create_task(self._finish(session, state, persist=persist))
        self._supervisors[session.id] = task
        return task

    async def _spawn(self, session: ProcessSession, state: CommandState) -> _Child | None:
        env = shell_env({**self.base_env, **session.environment})
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.subprocess_exec(
                lambda: _ExitWatchProtocol(loop),
                self.shell, "-c", state.command,
                cwd=session.working_directory,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            state.stderr = self._cap(f"{state.stderr}\nFailed to start command: {e}".strip())
            state.status = "exited"
            logger.warning(f"Session {session.id}: spawn failed: {e}")
            return None
        proc = asyncio.subprocess.Process(transport, protocol, loop)
        state.pid = proc.pid
        logger.info(
            f"Session {session.id}: started pid {proc.pid}: {truncate(state.command, 200)}",
        )
        return _Child(proc, protocol.exited)

    def _cap(self, text: str) -> str:
        return tail(text, self.max_output_chars)

    async def _pump(self, reader: asyncio.StreamReader, state: CommandState, stream: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await reader.read(_READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                setattr(state, stream, self._cap(getattr(state, stream) + text))
        rest = decoder.decode(b"", final=True)
        if rest:
            setattr(state, stream, self._cap(getattr(state, stream) + rest))

    async def _supervise(
        self,
        session: ProcessSession,
        state: CommandState,
        child: _Child,
        persist: bool = True,
    ) -> CommandState:
        proc = child.proc
        readers = [
            asyncio.create_task(self._pump(proc.stdout, state, "stdout")),
            asyncio.create_task(self._pump(proc.stderr, state, "stderr")),
        ]
        try:
            await asyncio.wait_for(asyncio.shield(child.exited), timeout=state.timeout_seconds)
        except asyncio.TimeoutError:
            state.timed_out = True
            logger.warning(
                f"Session {session.id}: pid {proc.pid} timed out after "
                f"{state.timeout_seconds:g}s, sending SIGTERM",
            )
            _signal_process(proc, signal_mod.SIGTERM)
            try:
                await asyncio.wait_for(asyncio.shield(child.exited), timeout=self.grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"Session {session.id}: pid {proc.pid} ignored SIGTERM, sending SIGKILL")
                _signal_process(proc, signal_mod.SIGKILL)
                await child.exited

        # Exit is authoritative; descendants may still hold the pipes open.
        _, pending = await asyncio.wait(readers, timeout=_DRAIN_SECONDS)
        for reader in pending:
            reader.cancel()

        returncode = proc.returncode
        if returncode is not None and returncode < 0:
            try:
                state.signal = signal_mod.Signals(-returncode).name
            except ValueError:
                state.signal = f"SIG{-returncode}"
        else:
            state.exit_code = returncode
        return await self._finish(session, state, persist=persist)

    async def _finish(
        self, session: ProcessSession, state: CommandState, persist: bool = True,
    ) -> CommandState:
        """Record a terminal status and free the session's running slot."""
        self._procs.pop(session.id, None)
        self._supervisors.pop(session.id, None)
        state.finished_at = utcnow()
        if state.status == "running":
            if state.timed_out:
                state.status = "timed_out"
            elif state.signal == "SIGTERM":
                state.status = "cancelled"
            else:
                state.status = "exited"

        if session.active_command is state:
            session.active_command = None
        session.last_command = state
        self._touch(session)
        logger.info(
            f"Session {session.id}: command finished",
            extra={"extra_data": {
                "session_id": session.id,
                "status": state.status,
                "exit_code": state.exit_code,
                "signal": state.signal,
            }},
        )
        if persist:
            await self._persist()
        return state

    async def cancel(self, session_id: str, signal: str = "SIGTERM") -> CancelResult:
        """Signal the running command. A no-op (reported) if none is running."""
        if signal not in ALLOWED_SIGNALS:
            raise ValueError(f"Unsupported signal: {signal}. Use one of {', '.join(ALLOWED_SIGNALS)}")
        session = self._get(session_id)
        proc = self._procs.get(session_id)
        active = session.active_command
        if proc is None or active is None:
            return CancelResult(session_id=session_id, cancelled=False, reason="No running command")

        if signal == "SIGTERM":
            active.status = "cancelled"
        _signal_process(proc, signal_mod.Signals[signal])
        self._touch(session)
        logger.info(f"Session {session_id}: sent {signal} to pid {active.pid}")
        await self._persist()
        return CancelResult(session_id=session_id, cancelled=True, signal=signal, pid=active.pid)

    async def close(self, session_id: str, force: bool = False) -> CloseResult:
        """Delete a session. A running command blocks this unless *force*."""
        session = self._get(session_id)
        running = session.active_command is not None
        if running and not force:
            raise SessionRunningError(session_id)
        if running:
            await self.cancel(session_id, "SIGKILL")
        del self._sessions[session_id]
        logger.info(f"Closed session {session_id}")
        await self._persist()
        return CloseResult(session_id=session_id, cancelled_running=running)

    async def wait(self, session_id: str, timeout: float | None = None) -> CommandState | None:
        """Wait for the session's running command, if any, to finish."""
        task = self._supervisors.get(session_id)
        if task is None:
            return None
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    async def run_once(
        self,
        command: str,
        working_directory: str | None = None,
        timeout_seconds: float | None = None,
    ) -> CommandState:
        """Run a command in a throwaway session and return its final state."""
        session = ProcessSession(
            id=f"once_{uuid.uuid4().hex[:12]}",
            working_directory=working_directory or os.getcwd(),
        )
        state = CommandState(
            command=command,
            timeout_seconds=self._resolve_timeout(timeout_seconds),
        )
        session.active_command = state
        task = await self._start(session, state, persist=False)
        return await asyncio.shield(task)

    async def shutdown(self) -> None:
        """Terminate every running command and flush state."""
        for session_id, proc in list(self._procs.items()):
            if session_id in self._sessions:
                await self.cancel(session_id, "SIGTERM")
            else:
                _signal_process(proc, signal_mod.SIGTERM)
        pending = list(self._supervisors.values())
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self.grace_seconds)
            for session_id, proc in list(self._procs.items()):
                _signal_process(proc, signal_mod.SIGKILL)
            if still_running:
                await asyncio.wait(still_running, timeout=1.0)
        await self._persist()
