"""One-shot shell commands.

Runs through the session manager's ephemeral path, so the same timeout
escalation and output caps apply as for terminal sessions.
"""

from __future__ import annotations

from steward.agent.processes import DEFAULT_TIMEOUT_SECONDS
from steward.agent.tools import skill
from steward.shared.types import CommandState


def format_command_output(state: CommandState) -> str:
    """Combined stdout/stderr, prefixed with the exit status on failure."""
    output = "\n".join(part for part in (state.stdout, state.stderr) if part)
    if state.timed_out:
        header = f"Timed out after {state.timeout_seconds:g}s"
    elif state.signal:
        header = f"Killed by {state.signal}"
    elif state.exit_code is None:
        header = "Command did not start"
    elif state.exit_code != 0:
        header = f"Exit code {state.exit_code}"
    else:
        return output or "(no output)"
    return f"{header}\n{output}" if output else header


@skill(
    name="bash",
    description=(
        "Execute a shell command and wait for it to finish. Has access to git, "
        "standard unix tools and whatever is installed on the host. For long "
        "or parallel work, use the terminal tool instead."
    ),
    parameters={
        "command": {"type": "string", "description": "The shell command to execute"},
        "working_directory": {
            "type": "string",
            "description": "Working directory for the command",
            "default": None,
        },
        "timeout_seconds": {
            "type": "number",
            "description": f"Timeout in seconds (default: {DEFAULT_TIMEOUT_SECONDS})",
            "default": None,
        },
    },
)
async def bash(
    command: str,
    working_directory: str | None = None,
    timeout_seconds: float | None = None,
    *,
    session_manager=None,
) -> str:
    if session_manager is None:
        raise RuntimeError("shell execution is not available")
    state = await session_manager.run_once(
        command, working_directory=working_directory, timeout_seconds=timeout_seconds,
    )
    return format_command_output(state)
