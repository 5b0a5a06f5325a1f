"""Append-only transcript store.

One JSON record per line in ``<state_dir>/messages.jsonl``, each tagged
with a wall-clock timestamp. History already on disk is never rewritten;
a crash mid-write loses at most the last line, which is skipped on load.

Steady-state compaction is recorded as a checkpoint line (a notice
message plus the number of preceding records it keeps) so that
``load_recent`` rebuilds exactly the window the engine held in memory.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from steward.shared.types import Message, TranscriptRecord
from steward.shared.utils import setup_logging

logger = setup_logging("agent.history")


def _strip_images(message: Message) -> Message:
    if not message.images and not any(tr.images for tr in message.tool_results or []):
        return message
    return message.model_copy(update={
        "images": None,
        "tool_results": (
            [tr.model_copy(update={"images": None}) for tr in message.tool_results]
            if message.tool_results else None
        ),
    })


class TranscriptStore:
    """Durable copy of the transcript. Pure storage, no business logic."""

    FILENAME = "messages.jsonl"

    def __init__(self, state_dir: str | Path):
        self.path = Path(state_dir) / self.FILENAME

    def _read_records(self) -> list[TranscriptRecord]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        records: list[TranscriptRecord] = []
        for lineno, line in enumerate(raw.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(TranscriptRecord.model_validate_json(line))
            except ValidationError as e:
                logger.warning(f"Skipping malformed transcript line {lineno}: {e.error_count()} errors")
        return records

    def load_recent(self, limit: int = 100) -> list[Message]:
        """Return the most recent *limit* messages, before sanitization."""
        window: list[Message] = []
        for record in self._read_records():
            if record.precedes is not None:
                kept = window[-record.precedes:] if record.precedes > 0 else []
                window = [record.message, *kept]
            else:
                window.append(record.message)
        if limit <= 0:
            return []
        return window[-limit:]

    def append_records(self, records: list[TranscriptRecord]) -> None:
        if not records:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lines = [
            json.dumps(
                record.model_copy(update={"message": _strip_images(record.message)})
                .model_dump(mode="json"),
            )
            for record in records
        ]
        with self.path.open("a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
            f.flush()

    def append_many(self, messages: list[Message], ts: datetime | None = None) -> None:
        """Append new messages. Images are not persisted."""
        extra = {"ts": ts} if ts else {}
        self.append_records([TranscriptRecord(message=m, **extra) for m in messages])

    def append_compaction(self, notice: Message, kept: int) -> None:
        """Record that *notice* now heads the last *kept* records."""
        self.append_records([TranscriptRecord(message=notice, precedes=kept)])

    def count(self) -> int:
        """Number of message records on disk, checkpoints included."""
        return len(self._read_records())
