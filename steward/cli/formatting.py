"""Display helpers: styled status lines, session and transcript rendering."""

from __future__ import annotations

import click

from steward.shared.types import Message, ProcessSession
from steward.shared.utils import truncate


def echo_header(text: str) -> None:
    """Section header during startup."""
    click.echo(click.style(f"\n  {text}", bold=True))


def echo_ok(text: str) -> None:
    """Success status line."""
    click.echo(click.style("  ✓ ", fg="green") + text)


def echo_warn(text: str) -> None:
    click.echo(click.style("  ⚠ ", fg="yellow") + text)


def echo_fail(text: str) -> None:
    """Error."""
    click.echo(click.style("  ✗ ", fg="red") + text, err=True)


def echo_dim(text: str) -> None:
    click.echo(click.style(f"  {text}", fg="bright_black"))


def format_session_row(session: ProcessSession) -> str:
    """One table row: id, state, last command."""
    cmd = session.active_command or session.last_command
    if cmd is None:
        state, command = "idle", ""
    else:
        state = cmd.status
        if cmd.exit_code is not None and cmd.status == "exited":
            state = f"exited({cmd.exit_code})"
        command = truncate(cmd.command.replace("\n", " "), 50)
    return f"{session.id[:12]:<14} {state:<12} {command}"


def format_message(message: Message, width: int = 100) -> str:
    """One-line summary of a transcript message."""
    if message.tool_calls:
        calls = ", ".join(tc.name for tc in message.tool_calls)
        body = f"{message.text or ''} -> {calls}".strip()
    elif message.tool_results:
        body = f"[{len(message.tool_results)} tool results] {message.text or ''}".strip()
    else:
        body = message.text or ""
    role = click.style(f"{message.role:<9}", fg="green" if message.role == "assistant" else "cyan")
    return f"{role} {truncate(body.replace(chr(10), ' '), width)}"
