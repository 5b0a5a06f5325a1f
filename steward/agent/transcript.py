"""Structural cleanup of transcripts.

Keeps message sequences valid for every reasoning backend:
  - a window never starts with an orphaned tool-result continuation
    or a leading assistant message
  - every tool-result message answers the tool calls right before it
  - a crash between commit and persist never leaves dangling tool calls
  - request payloads never carry two adjacent messages of the same role

All helpers return new lists. Messages are never edited in place; where
content changes, a new Message replaces the old one.
"""

from __future__ import annotations

from steward.shared.types import Message, ToolResult

INTERRUPTED_RESULT = "[no result: interrupted before completion]"


def sanitize_history(messages: list[Message]) -> list[Message]:
    """Drop leading messages until the first free-text user message.

    Leading assistant messages, tool-result continuations (their calls were
    trimmed away) and empty user markers are all dropped. Idempotent.
    """
    start = 0
    while start < len(messages):
        msg = messages[start]
        if msg.role != "user" or msg.tool_results:
            start += 1
            continue
        if msg.text:
            break
        start += 1
    return list(messages[start:])


def _opens_exchange(messages: list[Message], index: int) -> bool:
    msg = messages[index]
    if msg.role == "user":
        return bool(msg.text) and not msg.tool_results
    if not msg.tool_calls:
        return bool(msg.text)
    following = messages[index + 1] if index + 1 < len(messages) else None
    return (
        following is not None
        and bool(following.tool_results)
        and is_paired([msg, following])
    )


def sanitize_window(messages: list[Message], min_keep: int) -> list[Message]:
    """Sanitize a trimmed window that a user notice will be placed before.

    Same as sanitize_history unless that would keep fewer than *min_keep*
    messages, which happens inside a long tool chain with no free-text user
    message. Then the window starts at the earliest assistant message that
    opens a complete exchange, so notice, calls and results still alternate
    and pair.
    """
    window = sanitize_history(messages)
    if len(window) >= min(min_keep, len(messages)):
        return window
    for start in range(len(messages)):
        if _opens_exchange(messages, start):
            return list(messages[start:])
    return window


def pairing_errors(messages: list[Message]) -> list[str]:
    """Describe every violation of the tool-call/tool-result pairing rule."""
    errors: list[str] = []
    for i, msg in enumerate(messages):
        if not msg.tool_results:
            continue
        if msg.role != "user":
            errors.append(f"message {i}: tool results on a {msg.role} message")
            continue
        prev = messages[i - 1] if i > 0 else None
        if prev is None or prev.role != "assistant" or not prev.tool_calls:
            errors.append(f"message {i}: tool results without preceding tool calls")
            continue
        call_ids = [tc.id for tc in prev.tool_calls]
        result_ids = [tr.tool_call_id for tr in msg.tool_results]
        if call_ids != result_ids:
            errors.append(f"message {i}: results {result_ids} do not answer calls {call_ids}")
    return errors


def is_paired(messages: list[Message]) -> bool:
    return not pairing_errors(messages)


def repair_dangling_calls(messages: list[Message]) -> list[Message]:
    """Answer tool calls whose results never made it to disk.

    Only the final message can be left dangling: results are committed in
    the same turn as the calls, so a crash can lose at most the tail.
    """
    if not messages:
        return list(messages)
    last = messages[-1]
    if last.role != "assistant" or not last.tool_calls:
        return list(messages)
    placeholder = Message(
        role="user",
        tool_results=[
            ToolResult(tool_call_id=tc.id, result=INTERRUPTED_RESULT)
            for tc in last.tool_calls
        ],
    )
    return [*messages, placeholder]


def merge_adjacent_user_messages(messages: list[Message]) -> list[Message]:
    """Fold consecutive user messages into one for a request payload.

    Tool results stay first so pairing still holds; texts are joined with a
    blank line. Only used on request copies, never on the durable transcript.
    """
    merged: list[Message] = []
    for msg in messages:
        prev = merged[-1] if merged else None
        if (
            prev is not None
            and prev.role == "user"
            and msg.role == "user"
            and not msg.tool_results
        ):
            texts = [t for t in (prev.text, msg.text) if t]
            images = [*(prev.images or []), *(msg.images or [])]
            merged[-1] = prev.model_copy(update={
                "text": "\n\n".join(texts) if texts else None,
                "images": images or None,
            })
            continue
        merged.append(msg)
    return merged
