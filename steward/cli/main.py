"""CLI entry point for steward.

  run                      Run the agent until interrupted
  check                    One round-trip to the reasoning backend
  sessions                 List persisted process sessions
  transcript               Show the most recent transcript messages
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click
from pydantic import ValidationError

from steward.cli.config import DEFAULT_CONFIG_FILE, StewardConfig, load_config
from steward.cli.formatting import echo_dim, echo_fail, echo_header, echo_ok, format_message, format_session_row

logger = logging.getLogger("cli")

_config_option = click.option(
    "--config", "config_path", default=None,
    help=f"Path to config file (default: $STEWARD_CONFIG or {DEFAULT_CONFIG_FILE})",
)


def _load(config_path: str | None) -> StewardConfig:
    try:
        return load_config(config_path)
    except (ValidationError, ValueError) as e:
        echo_fail(f"Invalid configuration: {e}")
        sys.exit(2)


# ── Main group ───────────────────────────────────────────────

@click.group()
def cli():
    """steward -- long-lived autonomous agent runtime."""


# ── run ──────────────────────────────────────────────────────

@cli.command()
@_config_option
def run(config_path: str | None):
    """Run wake cycles until SIGINT/SIGTERM."""
    from steward.agent.llm import BackendUnavailableError
    from steward.cli.runtime import Runtime

    cfg = _load(config_path)
    runtime = Runtime(cfg)
    echo_header(f"Starting {cfg.name}")
    echo_dim(f"state: {cfg.state_dir}  backend: {cfg.backend.url}  wake: {cfg.wake.mode}")

    async def _main() -> None:
        loop = asyncio.get_running_loop()
        main_task = asyncio.current_task()
        stopping = False

        def _on_signal() -> None:
            nonlocal stopping
            if stopping:
                # Second signal: abandon the in-flight turn.
                main_task.cancel()
                return
            stopping = True
            click.echo("\n  Stopping (again to force)...")
            runtime.stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _on_signal)
        try:
            await runtime.run()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

    try:
        asyncio.run(_main())
    except BackendUnavailableError as e:
        echo_fail(str(e))
        sys.exit(1)
    except asyncio.CancelledError:
        echo_dim("Forced stop")
    echo_ok("Stopped")


# ── check ────────────────────────────────────────────────────

@cli.command()
@_config_option
def check(config_path: str | None):
    """Send one trivial request to the reasoning backend."""
    from steward.agent.llm import HTTPBackend
    from steward.shared.types import Message

    cfg = _load(config_path)
    backend = HTTPBackend(
        url=cfg.backend.url,
        model=cfg.backend.model,
        token=cfg.backend.token,
        timeout=cfg.backend.timeout,
        max_tokens=64,
    )

    async def _check():
        try:
            return await backend.generate(
                system="Health check.",
                messages=[Message(role="user", text="Reply with OK.")],
                tools=[],
            )
        finally:
            await backend.close()

    try:
        response = asyncio.run(_check())
    except Exception as e:
        echo_fail(f"Backend at {cfg.backend.url} failed: {e}")
        sys.exit(1)
    echo_ok(
        f"Backend at {cfg.backend.url} answered "
        f"({response.usage.input_tokens} in + {response.usage.output_tokens} out tokens)"
    )


# ── sessions ─────────────────────────────────────────────────

@cli.command()
@_config_option
def sessions(config_path: str | None):
    """List process sessions from the persisted snapshot (read-only)."""
    from steward.shared.types import PersistedSessions

    cfg = _load(config_path)
    path = cfg.sessions_path
    if not path.exists():
        click.echo("No sessions.")
        return
    try:
        persisted = PersistedSessions.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as e:
        echo_fail(f"Corrupt session state {path}: {e.error_count()} errors")
        sys.exit(1)
    if not persisted.sessions:
        click.echo("No sessions.")
        return
    click.echo(f"{'Session':<14} {'State':<12} Command")
    click.echo("-" * 60)
    for session in persisted.sessions:
        click.echo(format_session_row(session))


# ── transcript ───────────────────────────────────────────────

@cli.command()
@_config_option
@click.option("--limit", "-n", default=20, type=int, help="Number of messages to show")
def transcript(config_path: str | None, limit: int):
    """Show the most recent transcript messages."""
    from steward.agent.history import TranscriptStore

    cfg = _load(config_path)
    messages = TranscriptStore(cfg.state_dir).load_recent(limit)
    if not messages:
        click.echo("Transcript is empty.")
        return
    for message in messages:
        click.echo(format_message(message))


if __name__ == "__main__":
    cli()
