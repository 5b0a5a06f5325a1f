"""Inbound updates pushed by connectors between turns.

Updates are queued in arrival order and drained by the turn engine: into
the tool-results message when tools ran, otherwise into the next wake
marker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from steward.shared.types import ImageData
from steward.shared.utils import sanitize_for_prompt, time_marker, utcnow


@dataclass
class Update:
    source: str
    content: str
    images: list[ImageData] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)


class UpdateQueue:
    def __init__(self):
        self._pending: list[Update] = []

    def push(self, update: Update) -> None:
        self._pending.append(update)

    def drain(self) -> list[Update]:
        updates, self._pending = self._pending, []
        return updates

    def __len__(self) -> int:
        return len(self._pending)


def format_update_body(updates: list[Update]) -> str:
    return "\n\n".join(sanitize_for_prompt(u.content) for u in updates)


def format_updates(updates: list[Update], now: datetime | None = None) -> str:
    """One text block: a time header, then each update's content."""
    if not updates:
        return ""
    return f"[{time_marker(now)}]\n\n{format_update_body(updates)}"


def collect_images(updates: list[Update]) -> list[ImageData]:
    return [image for u in updates for image in u.images]
