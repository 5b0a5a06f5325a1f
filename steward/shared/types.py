"""Pydantic models for conversation state, tool results, and process sessions.

This is THE contract between the turn engine, the context manager, the
tool dispatcher, and the process session manager. Persisted records
(transcript lines, session snapshots) are dumps of these models.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(UTC)


# === Conversation ===


class ImageData(BaseModel):
    """Inline image, base64 encoded."""

    mime_type: str
    data: str


class ToolCall(BaseModel):
    """A tool invocation requested by the reasoning backend."""

    id: str
    name: str
    args: dict[str, Any] = {}


class ToolResult(BaseModel):
    """Answer to one ToolCall. ``result`` is always text, even on failure."""

    tool_call_id: str
    result: str
    images: Optional[list[ImageData]] = None


class Message(BaseModel):
    """One turn of conversation.

    A ``user`` message carries ``tool_results`` only when it answers the
    ``tool_calls`` of the assistant message immediately before it, same ids
    in the same order. ``metadata`` is opaque backend data kept for replay.
    """

    role: Literal["user", "assistant"]
    text: Optional[str] = None
    tool_calls: Optional[list[ToolCall]] = None
    tool_results: Optional[list[ToolResult]] = None
    images: Optional[list[ImageData]] = None
    metadata: Optional[Any] = None


class TranscriptRecord(BaseModel):
    """One line of the append-only transcript log.

    ``precedes`` is set only on compaction checkpoints: the message is a
    notice that logically sits in front of the last ``precedes`` records
    written before it, and everything older is out of the window.
    """

    ts: datetime = Field(default_factory=_now)
    message: Message
    precedes: Optional[int] = None


# === Tools ===


class ToolDefinition(BaseModel):
    """Catalogue entry sent to the reasoning backend."""

    name: str
    description: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )


class TextResult(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class RichResult(BaseModel):
    kind: Literal["rich"] = "rich"
    text: str
    images: list[ImageData] = []


ToolOutput = Annotated[Union[TextResult, RichResult], Field(discriminator="kind")]


# === Reasoning backend ===


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ModelResponse(BaseModel):
    """Standardized response from any reasoning backend."""

    text: Optional[str] = None
    tool_calls: Optional[list[ToolCall]] = None
    usage: Usage = Field(default_factory=Usage)
    metadata: Optional[Any] = None


class BackendRequest(BaseModel):
    """Bounded payload produced by the context manager for one call."""

    system: str
    messages: list[Message]
    tools: list[ToolDefinition] = []
    estimated_chars: int = 0
    compacted: bool = False


# === Turn engine ===


class TurnOutcome(BaseModel):
    """What one turn did. Returned by ``AgentLoop.run_turn``."""

    turn_id: int
    text: Optional[str] = None
    tool_calls: int = 0
    committed: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    duration_ms: int = 0
    attempts: int = 1


class WakeResult(BaseModel):
    """Returned to the wake policy after one wake cycle."""

    active: bool = False
    turns: int = 0
    next_wake_seconds: Optional[float] = None


class AgentStatus(BaseModel):
    agent_id: str
    state: Literal["idle", "working", "stopped"]
    turns_completed: int = 0
    transcript_length: int = 0
    uptime_seconds: float = 0
    last_wake_at: Optional[datetime] = None


class UpdatePayload(BaseModel):
    """Inbound update pushed by a connector."""

    source: str = "external"
    content: str
    images: list[ImageData] = []


# === Process sessions ===

CommandStatus = Literal["running", "exited", "timed_out", "cancelled"]


class CommandState(BaseModel):
    """Lifecycle record of one command run within a session."""

    command: str
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None
    pid: Optional[int] = None
    status: CommandStatus = "running"
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    timed_out: bool = False
    timeout_seconds: float = 300
    stdout: str = ""
    stderr: str = ""


class ProcessSession(BaseModel):
    """Durable handle to a shell execution context."""

    id: str
    working_directory: str
    environment: dict[str, str] = {}
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    active_command: Optional[CommandState] = None
    last_command: Optional[CommandState] = None


class PersistedSessions(BaseModel):
    sessions: list[ProcessSession] = []


class CommandSummary(BaseModel):
    """CommandState without the output buffers."""

    command: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    pid: Optional[int] = None
    status: CommandStatus
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    timed_out: bool = False
    timeout_seconds: float
    stdout_chars: int = 0
    stderr_chars: int = 0


class SessionSummary(BaseModel):
    id: str
    working_directory: str
    created_at: datetime
    updated_at: datetime
    active_command: Optional[CommandSummary] = None
    last_command: Optional[CommandSummary] = None


class RunResult(BaseModel):
    session_id: str
    started: bool = True
    background: bool
    command: str
    pid: Optional[int] = None
    timeout_seconds: float
    status: Optional[CommandStatus] = None
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    timed_out: bool = False
    stdout: Optional[str] = None
    stderr: Optional[str] = None


class ReadResult(BaseModel):
    session_id: str
    stream: Literal["stdout", "stderr", "combined"]
    output: str = ""
    has_command: bool = False
    command: Optional[str] = None
    status: Optional[CommandStatus] = None
    truncated: bool = False


class CancelResult(BaseModel):
    session_id: str
    cancelled: bool
    signal: Optional[str] = None
    pid: Optional[int] = None
    reason: Optional[str] = None


class CloseResult(BaseModel):
    session_id: str
    closed: bool = True
    cancelled_running: bool = False
