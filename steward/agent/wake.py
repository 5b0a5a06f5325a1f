"""Wake policies: when the agent runs its next wake cycle.

A policy repeatedly calls a wake handler (normally ``AgentLoop.wake``)
and sleeps between calls. ``stop()`` interrupts the sleep immediately.

  AutonomousWake: the model picks the interval with ``sleep_until``;
                  otherwise a fixed default applies.
  PeriodicWake:   a minimum interval after active wakes, multiplied by
                  the backoff factor (up to a maximum) after idle ones.

BackendUnavailableError ends the policy; any other handler failure is
logged and the policy carries on.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from steward.agent.llm import BackendUnavailableError
from steward.shared.types import WakeResult
from steward.shared.utils import setup_logging

logger = setup_logging("agent.wake")

WakeHandler = Callable[[], Awaitable[WakeResult]]

MIN_SLEEP_MINUTES = 1
MAX_SLEEP_MINUTES = 1440


class WakeControl:
    """Hook the ``sleep_until`` tool uses to end the current wake cycle."""

    def __init__(self):
        self._requested_seconds: float | None = None

    def request_sleep(self, minutes: float) -> float:
        """Ask for the next wake in *minutes* (clamped). Returns the minutes used."""
        clamped = max(MIN_SLEEP_MINUTES, min(float(minutes), MAX_SLEEP_MINUTES))
        self._requested_seconds = clamped * 60
        return clamped

    @property
    def sleep_requested(self) -> bool:
        return self._requested_seconds is not None

    @property
    def next_wake_seconds(self) -> float | None:
        return self._requested_seconds

    def reset(self) -> None:
        self._requested_seconds = None


class WakePolicy:
    """Base loop: run the handler, compute the interval, sleep, repeat."""

    def __init__(self):
        self._stop = asyncio.Event()
        self.running = False

    def next_interval(self, result: WakeResult | None) -> float:
        raise NotImplementedError

    async def run(self, handler: WakeHandler) -> None:
        self.running = True
        self._stop.clear()
        try:
            while not self._stop.is_set():
                result: WakeResult | None
                try:
                    result = await handler()
                except BackendUnavailableError:
                    raise
                except Exception as e:
                    logger.error(f"Wake handler error: {e}", exc_info=True)
                    result = None

                if self._stop.is_set():
                    break
                interval = self.next_interval(result)
                logger.info(f"Next wake in {round(interval)}s")
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False

    def stop(self) -> None:
        self._stop.set()


class AutonomousWake(WakePolicy):
    def __init__(self, default_interval_minutes: float = 15):
        super().__init__()
        self.default_interval = default_interval_minutes * 60

    def next_interval(self, result: WakeResult | None) -> float:
        if result is not None and result.next_wake_seconds is not None:
            return result.next_wake_seconds
        return self.default_interval


class PeriodicWake(WakePolicy):
    def __init__(
        self,
        interval_minutes: float = 3,
        max_interval_minutes: float = 60,
        backoff_multiplier: float = 1.5,
    ):
        super().__init__()
        self.min_interval = interval_minutes * 60
        self.max_interval = max(max_interval_minutes * 60, self.min_interval)
        self.backoff_multiplier = backoff_multiplier
        self.current_interval = self.min_interval

    def next_interval(self, result: WakeResult | None) -> float:
        if result is None:
            self.current_interval = self.min_interval
        elif result.next_wake_seconds is not None:
            self.current_interval = result.next_wake_seconds
        elif result.active:
            self.current_interval = self.min_interval
        else:
            self.current_interval = min(
                round(self.current_interval * self.backoff_multiplier),
                self.max_interval,
            )
        return self.current_interval


def build_policy(
    mode: str,
    interval_minutes: float | None = None,
    max_interval_minutes: float = 60,
    backoff_multiplier: float = 1.5,
) -> WakePolicy:
    if mode == "autonomous":
        return AutonomousWake(default_interval_minutes=interval_minutes or 15)
    if mode == "periodic":
        return PeriodicWake(
            interval_minutes=interval_minutes or 3,
            max_interval_minutes=max_interval_minutes,
            backoff_multiplier=backoff_multiplier,
        )
    raise ValueError(f"Unknown wake mode: {mode}")
