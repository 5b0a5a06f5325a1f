"""Long-lived terminal sessions exposed as a single tool.

Each action maps onto one ProcessSessionManager operation and returns its
result as pretty-printed JSON. Precondition failures (unknown session,
busy session, missing arguments) raise and reach the model as tool errors.
"""

from __future__ import annotations

from steward.agent.processes import DEFAULT_READ_TAIL_CHARS, DEFAULT_TIMEOUT_SECONDS
from steward.agent.tools import skill
from steward.shared.utils import format_dict

_ACTIONS = ("create", "list", "run", "read", "status", "cancel", "close")


def _require(value, name: str, action: str):
    if value is None or value == "":
        raise ValueError(f"{name} is required for {action}")
    return value


def _string_env(env) -> dict[str, str]:
    if not isinstance(env, dict):
        return {}
    return {str(k): v for k, v in env.items() if isinstance(v, str)}


@skill(
    name="terminal",
    description=(
        "Manage terminal sessions and run commands in parallel. Supports "
        "creating/listing sessions, running commands, reading output, "
        "checking status, cancelling, and closing sessions. Runs default to "
        "background=true: start the command, keep working, and read its "
        "output later."
    ),
    parameters={
        "action": {
            "type": "string",
            "enum": list(_ACTIONS),
            "description": "Terminal action to perform",
        },
        "session_id": {
            "type": "string",
            "description": "Session ID for actions that target an existing session",
            "default": None,
        },
        "command": {
            "type": "string",
            "description": "Command to run when action=run",
            "default": None,
        },
        "cwd": {
            "type": "string",
            "description": "Initial working directory when action=create",
            "default": None,
        },
        "env": {
            "type": "object",
            "description": "Environment variables to add to the session when action=create",
            "default": None,
        },
        "timeout_seconds": {
            "type": "number",
            "description": f"Command timeout in seconds when action=run (default: {DEFAULT_TIMEOUT_SECONDS})",
            "default": None,
        },
        "background": {
            "type": "boolean",
            "description": "When action=run, return immediately if true (default: true)",
            "default": True,
        },
        "stream": {
            "type": "string",
            "enum": ["stdout", "stderr", "combined"],
            "description": "Output stream selection when action=read (default: combined)",
            "default": "combined",
        },
        "tail_chars": {
            "type": "integer",
            "description": f"How many trailing chars to return when action=read (default: {DEFAULT_READ_TAIL_CHARS})",
            "default": DEFAULT_READ_TAIL_CHARS,
        },
        "signal": {
            "type": "string",
            "enum": ["SIGTERM", "SIGKILL", "SIGINT"],
            "description": "Signal used when action=cancel (default: SIGTERM)",
            "default": "SIGTERM",
        },
        "force": {
            "type": "boolean",
            "description": "Allow close while a command is running when action=close",
            "default": False,
        },
    },
)
async def terminal(
    action: str,
    session_id: str | None = None,
    command: str | None = None,
    cwd: str | None = None,
    env: dict | None = None,
    timeout_seconds: float | None = None,
    background: bool = True,
    stream: str = "combined",
    tail_chars: int = DEFAULT_READ_TAIL_CHARS,
    signal: str = "SIGTERM",
    force: bool = False,
    *,
    session_manager=None,
) -> str:
    if session_manager is None:
        raise RuntimeError("terminal sessions are not available")
    await session_manager.load()

    if action == "create":
        session = await session_manager.create(cwd, _string_env(env))
        return format_dict({
            "created": True,
            "session_id": session.id,
            "session": session_manager.status(session.id).model_dump(mode="json"),
        })
    if action == "list":
        return format_dict({
            "sessions": [s.model_dump(mode="json") for s in session_manager.list_sessions()],
        })
    if action == "status":
        sid = _require(session_id, "session_id", action)
        return format_dict(session_manager.status(sid).model_dump(mode="json"))
    if action == "run":
        sid = _require(session_id, "session_id", action)
        cmd = _require(command, "command", action)
        result = await session_manager.run(
            sid, cmd, timeout_seconds=timeout_seconds, background=bool(background),
        )
        return format_dict(result.model_dump(mode="json", exclude_none=True))
    if action == "read":
        sid = _require(session_id, "session_id", action)
        return format_dict(
            session_manager.read(sid, stream or "combined", tail_chars).model_dump(mode="json"),
        )
    if action == "cancel":
        sid = _require(session_id, "session_id", action)
        result = await session_manager.cancel(sid, signal or "SIGTERM")
        return format_dict(result.model_dump(mode="json", exclude_none=True))
    if action == "close":
        sid = _require(session_id, "session_id", action)
        result = await session_manager.close(sid, force=bool(force))
        return format_dict(result.model_dump(mode="json"))
    raise ValueError(f"Unsupported action: {action}. Use one of {', '.join(_ACTIONS)}")
