# service/timer.py
import asyncio
import logging
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger("timer")


class ConnectionTimer:
    """Single-shot timer. Arming again replaces the pending deadline."""

    def arm(self, delay: float, callback: Callable[[], None]):
        raise NotImplementedError

    def cancel(self) -> bool:
        """Cancels the pending callback. Returns True if one was pending."""
        raise NotImplementedError

    @property
    def armed(self) -> bool:
        raise NotImplementedError


class AsyncioTimer(ConnectionTimer):
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None

    def arm(self, delay: float, callback: Callable[[], None]):
        self.cancel()
        loop = self._loop or asyncio.get_running_loop()

        def fire():
            self._handle = None
            callback()

        self._handle = loop.call_later(delay, fire)

    def cancel(self) -> bool:
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        return True

    @property
    def armed(self) -> bool:
        return self._handle is not None


class ManualTimer(ConnectionTimer):
    """Timer driven by an explicit clock, for tests and simulations."""

    def __init__(self):
        self.now = 0.0
        self._deadline: Optional[float] = None
        self._callback: Optional[Callable[[], None]] = None
        self.fired: List[Tuple[float, float]] = []
        self.cancelled = 0

    def arm(self, delay: float, callback: Callable[[], None]):
        self._deadline = self.now + delay
        self._callback = callback

    def cancel(self) -> bool:
        if self._deadline is None:
            return False
        self._deadline = None
        self._callback = None
        self.cancelled += 1
        return True

    @property
    def armed(self) -> bool:
        return self._deadline is not None

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def advance(self, seconds: float):
        self.now += seconds
        if self._deadline is not None and self.now >= self._deadline:
            deadline, callback = self._deadline, self._callback
            self._deadline = None
            self._callback = None
            self.fired.append((deadline, self.now))
            callback()
