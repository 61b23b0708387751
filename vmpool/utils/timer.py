"""Adaptive loop delay and interruptible sleeping."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

WakeCondition = Callable[[], Awaitable[bool]]


class LoopDelay:
    """Exponential backoff between idle ticks.

    Busy ticks reset the delay to the minimum. A run of idle ticks sleeps
    minimum, minimum * decay, ... (truncated to whole seconds) up to the
    maximum. A decay of 1.0 or less is replaced by 2.0 and a maximum below
    the minimum is raised to the minimum.
    """

    def __init__(self, minimum: float, maximum: float | None, decay: float) -> None:
        if decay <= 1.0:
            decay = 2.0
        if maximum is None or maximum < minimum:
            maximum = minimum
        self.minimum = minimum
        self.maximum = maximum
        self.decay = decay
        self.current = minimum

    def next(self, busy: bool) -> float:
        """Delay to sleep after a tick."""
        if busy:
            self.current = self.minimum
            return self.current

        delay = self.current
        self.current = max(min(int(self.current * self.decay), self.maximum), self.minimum)
        return delay


class WakeableTimer:
    """Sleep until a deadline or until a wake condition fires.

    The condition is polled every poll_interval seconds while the coarse
    timer is outstanding, so it must be cheap (a counter read, a set
    cardinality).
    """

    def __init__(self, poll_interval: float = 1.0) -> None:
        self.poll_interval = poll_interval
        self._cancel = asyncio.Event()

    def cancel(self) -> None:
        """Interrupt any sleep in progress."""
        self._cancel.set()

    async def sleep(self, seconds: float, wake: WakeCondition | None = None) -> bool:
        """Sleep for up to seconds.

        Returns:
            True if woken early by the condition or cancel(), False when
            the full delay elapsed
        """
        self._cancel.clear()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False

            step = min(self.poll_interval, remaining) if wake else remaining
            try:
                await asyncio.wait_for(self._cancel.wait(), timeout=step)
                return True
            except asyncio.TimeoutError:
                pass

            if wake is not None and await wake():
                return True
