"""Lets the agent end its wake cycle and choose when to wake next."""

from __future__ import annotations

from steward.agent.tools import skill


@skill(
    name="sleep_until",
    description=(
        "End this wake cycle and schedule the next wake time in minutes based "
        "on current priorities, pending work, and expected updates."
    ),
    parameters={
        "minutes": {"type": "number", "description": "Minutes to sleep before the next wake cycle"},
        "reason": {
            "type": "string",
            "description": "Why this sleep interval is appropriate right now",
            "default": "",
        },
    },
)
def sleep_until(minutes: float, reason: str = "", *, wake_control=None) -> str:
    if wake_control is None:
        raise RuntimeError("sleep_until is not available in this mode")
    used = wake_control.request_sleep(minutes)
    msg = f"Next wake in {used:g} minutes"
    return f"{msg} ({reason})" if reason else msg
