"""Per-turn trace ids.

The turn engine opens a trace for every turn; log records written while it
is active carry ``trace_id`` and HTTP calls to the reasoning backend send it
as ``X-Trace-Id``. Lives apart from utils.py, which imports it lazily.
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar

TRACE_HEADER = "X-Trace-Id"
TRACE_PREFIX = "tr_"

current_trace_id: ContextVar[str | None] = ContextVar("current_trace_id", default=None)


def new_trace_id() -> str:
    return f"{TRACE_PREFIX}{uuid.uuid4().hex[:12]}"


def begin_trace() -> str:
    """Start a new trace in the current context and return its id."""
    trace_id = new_trace_id()
    current_trace_id.set(trace_id)
    return trace_id


def trace_headers() -> dict[str, str]:
    trace_id = current_trace_id.get()
    if trace_id is None:
        return {}
    return {TRACE_HEADER: trace_id}
