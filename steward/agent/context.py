"""Context window manager.

Two independent passes keep the conversation bounded:

  trim_history:  after every committed turn. Drops the oldest messages
                 beyond ``max_messages``, re-sanitizes (falling back to
                 a tool-call boundary inside long tool chains), and
                 prepends a notice. Lossless for what remains; this is
                 what gets persisted.
  build_request: before every backend call, on a copy. Truncates huge
                 texts (keeping the tail) and, if the request is still
                 over the character budget, drops whole messages from
                 the front down to ``min_window``. Never touches the
                 durable transcript.

Compaction notices are added after the budget is enforced, so they are
never themselves truncated away. If the minimum window is still over
budget the request is sent anyway.
"""

from __future__ import annotations

import json

from steward.agent.transcript import merge_adjacent_user_messages, sanitize_window
from steward.shared.types import BackendRequest, Message, ToolDefinition
from steward.shared.utils import setup_logging, truncate_head

logger = setup_logging("agent.context")

DEFAULT_MAX_MESSAGES = 100
DEFAULT_MAX_MESSAGE_CHARS = 20_000
DEFAULT_MAX_REQUEST_CHARS = 400_000
DEFAULT_MIN_WINDOW = 4

_WARNING_THRESHOLD = 0.80


def message_chars(message: Message) -> int:
    """Character estimate for one message: text, call args, result text."""
    total = len(message.text or "")
    for tc in message.tool_calls or []:
        total += len(tc.name) + len(json.dumps(tc.args, default=str))
    for tr in message.tool_results or []:
        total += len(tr.result)
    return total


def estimate_chars(system: str, messages: list[Message]) -> int:
    return len(system) + sum(message_chars(m) for m in messages)


class ContextManager:
    """Keeps the transcript and each request within configured bounds."""

    def __init__(
        self,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
        max_request_chars: int = DEFAULT_MAX_REQUEST_CHARS,
        min_window: int = DEFAULT_MIN_WINDOW,
        memory_hint: str = "your memory files",
    ):
        if max_messages < 2:
            raise ValueError("max_messages must be at least 2")
        self.max_messages = max_messages
        self.max_message_chars = max_message_chars
        self.max_request_chars = max_request_chars
        self.min_window = max(1, min_window)
        self.memory_hint = memory_hint

    # ── Steady-state trim ─────────────────────────────────────

    def trim_history(self, messages: list[Message]) -> tuple[list[Message], Message | None]:
        """Bound the transcript to ``max_messages``.

        Returns ``(messages, notice)``. ``notice`` is None when nothing was
        dropped; otherwise it is the first element of the returned list.
        """
        if len(messages) <= self.max_messages:
            return list(messages), None

        window = sanitize_window(messages[-(self.max_messages - 1):], self.min_window)
        dropped = len(messages) - len(window)
        notice = Message(
            role="user",
            text=(
                f"[Transcript compacted: {dropped} older messages were dropped. "
                f"Durable knowledge lives in {self.memory_hint}; check there "
                f"instead of assuming earlier context.]"
            ),
        )
        logger.info(f"Trimmed transcript: dropped {dropped}, kept {len(window)}")
        return [notice, *window], notice

    # ── Pre-call compaction ───────────────────────────────────

    def _truncate_message(self, message: Message) -> Message:
        limit = self.max_message_chars
        update: dict = {}
        if message.text and len(message.text) > limit:
            update["text"] = truncate_head(message.text, limit)
        if message.tool_results and any(len(tr.result) > limit for tr in message.tool_results):
            update["tool_results"] = [
                tr.model_copy(update={"result": truncate_head(tr.result, limit)})
                if len(tr.result) > limit else tr
                for tr in message.tool_results
            ]
        return message.model_copy(update=update) if update else message

    def build_request(
        self,
        system: str,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> BackendRequest:
        """Produce a bounded, structurally valid payload from *messages*."""
        window = [self._truncate_message(m) for m in messages]
        original_len = len(window)

        dropped = 0
        while (
            estimate_chars(system, window) > self.max_request_chars
            and len(window) > self.min_window
        ):
            window = window[1:]
            dropped += 1

        compacted = False
        if dropped:
            window = sanitize_window(window, self.min_window)
            dropped = original_len - len(window)
            notice = Message(
                role="user",
                text=(
                    f"[Context compacted for this request: {dropped} earlier messages "
                    f"omitted to fit the size budget. They remain in the stored transcript.]"
                ),
            )
            window = [notice, *window]
            compacted = True
            logger.info(f"Pre-call compaction omitted {dropped} messages")

        total = estimate_chars(system, window)
        if total > self.max_request_chars:
            logger.warning(
                f"Request still over budget after compaction "
                f"({total:,}/{self.max_request_chars:,} chars); sending anyway"
            )

        return BackendRequest(
            system=system,
            messages=merge_adjacent_user_messages(window),
            tools=list(tools or []),
            estimated_chars=total,
            compacted=compacted,
        )

    # ── Usage reporting ───────────────────────────────────────

    def usage(self, system: str, messages: list[Message]) -> float:
        """Return request size as a fraction of the character budget."""
        return estimate_chars(system, messages) / self.max_request_chars

    def context_warning(self, system: str, messages: list[Message]) -> str | None:
        """Return a warning string if usage >= 80%, else None."""
        chars = estimate_chars(system, messages)
        usage = chars / self.max_request_chars
        if usage >= _WARNING_THRESHOLD:
            pct = int(usage * 100)
            return (
                f"CONTEXT WARNING: Your context is {pct}% full "
                f"({chars:,}/{self.max_request_chars:,} chars). "
                f"Save anything important to {self.memory_hint}; older messages "
                f"will be compacted soon."
            )
        return None
