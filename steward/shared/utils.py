"""Shared utilities: ID generation, structured logging, timing, text helpers."""

from __future__ import annotations

import json
import logging
import os
import unicodedata
import uuid
from datetime import UTC, datetime


def generate_id(prefix: str = "id") -> str:
    """Generate a unique ID with a descriptive prefix."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(UTC)


def truncate(text: str, max_len: int = 200) -> str:
    """Truncate text with ellipsis indicator."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def truncate_head(text: str, max_chars: int) -> str:
    """Keep the last *max_chars* characters, noting how many were dropped.

    The notice is added on top of the kept suffix, so the result can be
    slightly longer than *max_chars*.
    """
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    dropped = len(text) - max_chars
    return f"[... {dropped} earlier characters truncated ...]\n{text[-max_chars:]}"


def tail(text: str, max_chars: int) -> str:
    """Keep the most recent *max_chars* characters of a buffer, no notice."""
    if len(text) <= max_chars:
        return text
    return text[len(text) - max_chars:]


def format_dict(d: dict) -> str:
    """Format a dict for inclusion in prompts and tool results."""
    return json.dumps(d, indent=2, default=str)


def time_marker(now: datetime | None = None) -> str:
    """Short local wall-clock label, e.g. ``Mon 19 Oct 14:05``."""
    now = now or datetime.now().astimezone()
    return now.strftime("%a %d %b %H:%M")


# ── Invisible-character filtering ────────────────────────────
#
# Model-facing text (tool output, inbound updates) can smuggle instructions
# in characters that render as nothing. Everything in the Unicode "other"
# categories is dropped except ordinary whitespace and the joiners and
# presentation selectors that emoji sequences need.

_DROP_CATEGORIES = ("Cc", "Cf", "Co", "Cs", "Cn")
_KEEP_CHARS = frozenset("\t\n\r\u200c\u200d\ufe0e\ufe0f")  # whitespace, ZWNJ, ZWJ, VS15, VS16
_LINE_SEPARATORS = frozenset("\u2028\u2029")
_INVISIBLE_RANGES = (
    (0xFE00, 0xFE0D),     # variation selectors 1-14
    (0xE0100, 0xE01EF),   # variation selectors 17-256
    (0x034F, 0x034F),     # combining grapheme joiner
    (0x115F, 0x1160),     # hangul fillers
    (0x3164, 0x3164),
    (0xFFA0, 0xFFA0),
    (0xFFFC, 0xFFFC),     # object replacement character
)


def _is_invisible(ch: str) -> bool:
    if ch in _KEEP_CHARS:
        return False
    cp = ord(ch)
    if any(lo <= cp <= hi for lo, hi in _INVISIBLE_RANGES):
        return True
    return unicodedata.category(ch) in _DROP_CATEGORIES


def sanitize_for_prompt(text: str) -> str:
    """Remove invisible characters; Unicode line separators become newlines."""
    if not isinstance(text, str) or not text:
        return ""
    return "".join(
        "\n" if ch in _LINE_SEPARATORS else ch
        for ch in text
        if ch in _LINE_SEPARATORS or not _is_invisible(ch)
    )


# ── Logging ──────────────────────────────────────────────────


def _trace_id() -> str | None:
    from steward.shared.trace import current_trace_id

    return current_trace_id.get()


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; ``extra_data`` fields are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "timestamp": utcnow().isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
            **getattr(record, "extra_data", {}),
        }
        trace_id = _trace_id()
        if trace_id:
            entry["trace_id"] = trace_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """``HH:MM:SS [LEVEL] name: message`` for local runs."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{utcnow():%H:%M:%S} [{record.levelname:<5}] {record.name}: {record.getMessage()}"
        trace_id = _trace_id()
        if trace_id:
            line = f"{line} ({trace_id})"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


_FORMATTERS = {"json": StructuredFormatter, "text": TextFormatter}


def setup_logging(name: str, level: str = "INFO") -> logging.Logger:
    """Return the logger *name* with a stream handler attached once.

    ``STEWARD_LOG_FORMAT`` picks ``json`` (default) or ``text``;
    ``STEWARD_LOG_LEVEL`` overrides *level*.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    if logger.level == logging.NOTSET:
        logger.setLevel(os.environ.get("STEWARD_LOG_LEVEL", level).upper())
    formatter_cls = _FORMATTERS.get(os.environ.get("STEWARD_LOG_FORMAT", "json").lower(), StructuredFormatter)
    handler = logging.StreamHandler()
    handler.setFormatter(formatter_cls())
    logger.addHandler(handler)
    return logger
