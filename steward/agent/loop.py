"""Turn engine: one reasoning cycle at a time, grouped into wake cycles.

Each turn runs: build request -> call backend (with retry) -> execute
requested tools in order -> commit -> trim -> persist.

Key invariants:
- Exactly one turn is in flight; the transcript is only touched here
- Tool failures are data; backend failures are retried, then fatal
- Only newly committed messages are appended to the store, in order;
  a failed write is kept and retried after the next commit
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from steward.agent.llm import BackendUnavailableError
from steward.agent.transcript import repair_dangling_calls, sanitize_history
from steward.agent.updates import Update, UpdateQueue, collect_images, format_update_body, format_updates
from steward.shared.trace import begin_trace
from steward.shared.types import (
    AgentStatus,
    ImageData,
    Message,
    ModelResponse,
    RichResult,
    ToolCall,
    ToolResult,
    TranscriptRecord,
    TurnOutcome,
    WakeResult,
)
from steward.shared.utils import setup_logging, time_marker, truncate, utcnow

if TYPE_CHECKING:
    from steward.agent.context import ContextManager
    from steward.agent.history import TranscriptStore
    from steward.agent.llm import ReasoningBackend
    from steward.agent.tools import ToolRegistry
    from steward.agent.wake import WakeControl
    from steward.shared.types import BackendRequest

logger = setup_logging("agent.loop")

__all__ = ["AgentLoop", "BackendUnavailableError"]

MAX_ATTEMPTS = 3
_BACKOFF_BASE = 1  # seconds: 1, 2

DEFAULT_INSTRUCTIONS = (
    "You are an autonomous agent. You wake up periodically, review what has "
    "changed, and use your tools to make progress on your work."
)

_SLEEP_SECTION = (
    "Call sleep_until(minutes) to end the current wake cycle and schedule the "
    "next one. Choose an interval that matches urgency, pending work, expected "
    "responses, and time of day."
)


class AgentLoop:
    """Drives turns against a reasoning backend and owns the transcript."""

    MAX_TURNS_PER_WAKE = 200

    def __init__(
        self,
        agent_id: str,
        backend: ReasoningBackend,
        tools: ToolRegistry,
        store: TranscriptStore,
        context_manager: ContextManager,
        instructions: str = "",
        updates: Optional[UpdateQueue] = None,
        wake_control: Optional[WakeControl] = None,
        max_turns_per_wake: int = MAX_TURNS_PER_WAKE,
    ):
        self.agent_id = agent_id
        self.backend = backend
        self.tools = tools
        self.store = store
        self.context_manager = context_manager
        self.instructions = instructions or DEFAULT_INSTRUCTIONS
        self.updates = updates if updates is not None else UpdateQueue()
        self.wake_control = wake_control
        self.max_turns_per_wake = max_turns_per_wake
        self.messages: list[Message] = []
        self.state: str = "idle"
        self.turns_completed: int = 0
        self.last_wake_at: Optional[datetime] = None
        self._pending: list[TranscriptRecord] = []
        self._start_time = time.time()
        self._last_wake_monotonic: Optional[float] = None
        self._started = False
        self._stopped = False
        self._lock = asyncio.Lock()

    # ── Startup ───────────────────────────────────────────────

    async def start(self) -> int:
        """Restore the transcript from the store. Returns messages restored."""
        if self._started:
            return len(self.messages)
        self._started = True
        raw = await asyncio.to_thread(self.store.load_recent, self.context_manager.max_messages)
        restored = sanitize_history(raw)
        if len(restored) < len(raw):
            logger.info(f"Dropped {len(raw) - len(restored)} orphaned leading messages on restore")
        repaired = repair_dangling_calls(restored)
        self.messages = restored
        if len(repaired) > len(restored):
            logger.warning("Transcript ended with unanswered tool calls; recording them as interrupted")
            self._commit(repaired[-1])
            await self._persist_pending()
        logger.info(f"Restored {len(self.messages)} messages from history")
        return len(self.messages)

    # ── Backend ───────────────────────────────────────────────

    async def _generate_with_retry(self, request: BackendRequest) -> tuple[ModelResponse, int]:
        """Call the backend, retrying any failure with exponential backoff.

        Returns the response and the number of attempts it took. Raises
        BackendUnavailableError once MAX_ATTEMPTS calls have failed.
        """
        last_exc: Exception | None = None
        for attempt in range(MAX_ATTEMPTS):
            logger.info(
                f"Backend call attempt {attempt + 1}/{MAX_ATTEMPTS} "
                f"({len(request.messages)} messages, ~{request.estimated_chars:,} chars)"
            )
            try:
                response = await self.backend.generate(
                    system=request.system,
                    messages=request.messages,
                    tools=request.tools,
                )
                return response, attempt + 1
            except Exception as e:
                last_exc = e
                if attempt < MAX_ATTEMPTS - 1:
                    wait = _BACKOFF_BASE * (2 ** attempt)
                    logger.warning(
                        f"Backend call failed ({type(e).__name__}: {e}), retrying in {wait}s "
                        f"(attempt {attempt + 1}/{MAX_ATTEMPTS})"
                    )
                    await asyncio.sleep(wait)
                else:
                    logger.error(f"Backend call failed ({type(e).__name__}: {e}), giving up")
        raise BackendUnavailableError(
            f"Reasoning backend failed after {MAX_ATTEMPTS} attempts: {last_exc}"
        ) from last_exc

    def _build_system_prompt(self) -> str:
        parts = [self.instructions]
        if self.wake_control is not None and self.tools.has_tool("sleep_until"):
            parts.append(_SLEEP_SECTION)
        warning = self.context_manager.context_warning("\n\n".join(parts), self.messages)
        if warning:
            parts.append(f"## {warning}")
        return "\n\n".join(parts)

    # ── Transcript ────────────────────────────────────────────

    def _commit(self, message: Message) -> None:
        self.messages = [*self.messages, message]
        self._pending.append(TranscriptRecord(message=message))

    def _trim(self) -> None:
        trimmed, notice = self.context_manager.trim_history(self.messages)
        if notice is None:
            return
        self.messages = trimmed
        self._pending.append(TranscriptRecord(message=notice, precedes=len(trimmed) - 1))

    async def _persist_pending(self) -> bool:
        """Append queued records to the store. Failures keep them queued."""
        if not self._pending:
            return True
        records = list(self._pending)
        try:
            await asyncio.to_thread(self.store.append_records, records)
        except Exception as e:
            logger.error(f"Failed to persist {len(records)} transcript records: {e}")
            return False
        del self._pending[:len(records)]
        return True

    # ── Tools ─────────────────────────────────────────────────

    async def _execute_tool_calls(self, calls: list[ToolCall]) -> list[ToolResult]:
        results: list[ToolResult] = []
        for call in calls:
            logger.info(f"Tool {call.name}: {truncate(json.dumps(call.args, default=str), 200)}")
            output = await self.tools.dispatch(call)
            images: list[ImageData] | None = None
            if isinstance(output, RichResult) and output.images:
                images = list(output.images)
            results.append(ToolResult(tool_call_id=call.id, result=output.text, images=images))
        return results

    # ── Turn ──────────────────────────────────────────────────

    async def run_turn(self) -> TurnOutcome:
        """One full cycle: request, response, tools, commit, persist.

        Raises BackendUnavailableError if the backend never answers.
        """
        await self.start()
        turn_id = self.turns_completed + 1
        begin_trace()
        start = time.monotonic()

        request = self.context_manager.build_request(
            self._build_system_prompt(),
            self.messages,
            self.tools.get_tool_definitions(),
        )
        response, attempts = await self._generate_with_retry(request)

        committed = 0
        metadata = response.metadata
        if isinstance(metadata, (list, dict)) and not metadata:
            metadata = None
        if response.text or response.tool_calls or metadata is not None:
            self._commit(Message(
                role="assistant",
                text=response.text,
                tool_calls=response.tool_calls,
                metadata=metadata,
            ))
            committed += 1

        if response.tool_calls:
            results = await self._execute_tool_calls(response.tool_calls)
            pending = self.updates.drain()
            images = collect_images(pending)
            self._commit(Message(
                role="user",
                tool_results=results,
                text=format_updates(pending) or None,
                images=images or None,
            ))
            committed += 1

        self._trim()
        await self._persist_pending()
        self.turns_completed = turn_id

        duration_ms = int((time.monotonic() - start) * 1000)
        outcome = TurnOutcome(
            turn_id=turn_id,
            text=response.text,
            tool_calls=len(response.tool_calls or []),
            committed=committed,
            tokens_in=response.usage.input_tokens,
            tokens_out=response.usage.output_tokens,
            duration_ms=duration_ms,
            attempts=attempts,
        )
        logger.info(
            f"Turn {turn_id}: {outcome.tokens_in} in + {outcome.tokens_out} out tokens, "
            f"{outcome.tool_calls} tool calls, {duration_ms / 1000:.1f}s",
            extra={"extra_data": {
                "turn_id": turn_id,
                "tokens_in": outcome.tokens_in,
                "tokens_out": outcome.tokens_out,
                "tool_calls": outcome.tool_calls,
                "duration_ms": duration_ms,
            }},
        )
        return outcome

    # ── Wake cycle ────────────────────────────────────────────

    def push_update(self, content: str, source: str = "external", images: list[ImageData] | None = None) -> None:
        """Queue an inbound update for the next commit point."""
        self.updates.push(Update(source=source, content=content, images=list(images or [])))

    async def begin_wake(self) -> Message:
        """Commit the wake marker (plus any queued updates) and persist it."""
        await self.start()
        if self.wake_control is not None:
            self.wake_control.reset()
        now_mono = time.monotonic()
        if self._last_wake_monotonic is None:
            marker = "Started."
        else:
            minutes = round((now_mono - self._last_wake_monotonic) / 60)
            marker = f"Woke after {minutes} min."
        self._last_wake_monotonic = now_mono
        self.last_wake_at = utcnow()

        pending = self.updates.drain()
        text = f"[{time_marker()}] {marker}"
        if pending:
            text = f"{text}\n\n{format_update_body(pending)}"
        images = collect_images(pending)
        message = Message(role="user", text=text, images=images or None)
        self._commit(message)
        self._trim()
        await self._persist_pending()
        return message

    async def wake(self) -> WakeResult:
        """Run one wake cycle: marker, then turns until the agent rests.

        The cycle ends when a turn requests no tools, when ``sleep_until``
        is called, or after ``max_turns_per_wake`` turns.
        """
        async with self._lock:
            if self._stopped:
                return WakeResult()
            self.state = "working"
            turns = 0
            active = False
            try:
                await self.begin_wake()
                while turns < self.max_turns_per_wake and not self._stopped:
                    outcome = await self.run_turn()
                    turns += 1
                    if outcome.tool_calls:
                        active = True
                    else:
                        break
                    if self.wake_control is not None and self.wake_control.sleep_requested:
                        break
                else:
                    if turns >= self.max_turns_per_wake:
                        logger.warning(f"Wake cycle hit the {self.max_turns_per_wake}-turn limit")
            finally:
                self.state = "stopped" if self._stopped else "idle"
            next_wake = self.wake_control.next_wake_seconds if self.wake_control is not None else None
            return WakeResult(active=active, turns=turns, next_wake_seconds=next_wake)

    # ── Status / lifecycle ────────────────────────────────────

    def get_status(self) -> AgentStatus:
        return AgentStatus(
            agent_id=self.agent_id,
            state=self.state,
            turns_completed=self.turns_completed,
            transcript_length=len(self.messages),
            uptime_seconds=time.time() - self._start_time,
            last_wake_at=self.last_wake_at,
        )

    async def shutdown(self) -> None:
        """Stop taking new turns and flush anything not yet persisted."""
        self._stopped = True
        if not self._lock.locked():
            self.state = "stopped"
        if self._pending and not await self._persist_pending():
            logger.error(f"{len(self._pending)} transcript records were not persisted")
