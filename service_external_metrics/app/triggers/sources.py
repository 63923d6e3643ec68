"""
Trigger sources that tell an update loop to recompute its metric.
"""

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class TriggerContext:
    """A single "recompute now" notification.

    ``deadline`` is a wall-clock hint for the computation; nothing enforces it.
    """
    fired_at: float = field(default_factory=time.time)
    deadline: Optional[float] = None

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.time())

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.time() >= self.deadline


class TriggerSource(ABC):
    """An async stream of trigger notifications.

    A notification is consumed by exactly one waiter, so sharing one source
    between several update loops splits its notifications between them.
    """

    @abstractmethod
    async def next(self) -> TriggerContext:
        """Wait for and return the next notification.

        Raising ``StopAsyncIteration`` ends the update loop waiting on this
        source. Any other exception is logged by the loop, which waits
        ``trigger_retry_delay`` seconds and then calls ``next`` again.
        """

    def bind(self, loop: asyncio.AbstractEventLoop):
        """Attach the source to the event loop its consumer runs on."""

    def __aiter__(self):
        return self

    async def __anext__(self) -> TriggerContext:
        return await self.next()


class IntervalTrigger(TriggerSource):
    """Fires once per ``interval`` seconds, first fire one interval after the first wait.

    Each notification carries a deadline half an interval after it fired.
    Ticks that elapse while nobody is waiting are dropped, not queued.
    """

    def __init__(self, interval: float):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval
        self._next_fire: Optional[float] = None

    async def next(self) -> TriggerContext:
        loop = asyncio.get_running_loop()
        now = loop.time()

        if self._next_fire is None:
            self._next_fire = now + self.interval
        while self._next_fire < now:
            self._next_fire += self.interval

        await asyncio.sleep(self._next_fire - now)
        self._next_fire += self.interval

        fired_at = time.time()
        return TriggerContext(fired_at=fired_at, deadline=fired_at + self.interval / 2)


def tick(interval: float) -> IntervalTrigger:
    """Build a periodic trigger firing every ``interval`` seconds."""
    return IntervalTrigger(interval)


class EventTrigger(TriggerSource):
    """Fires whenever application code calls :meth:`fire`.

    This is the seam for event-driven recomputation, e.g. a message-bus
    consumer calling ``fire`` per message.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()

    def bind(self, loop: asyncio.AbstractEventLoop):
        with self._lock:
            self._loop = loop

    def fire(self, timeout: Optional[float] = None) -> TriggerContext:
        """Queue one notification; ``timeout`` sets its deadline relative to now.

        Raises ``asyncio.QueueFull`` when the trigger is bounded and full.
        """
        fired_at = time.time()
        ctx = TriggerContext(
            fired_at=fired_at,
            deadline=fired_at + timeout if timeout is not None else None
        )
        self._queue.put_nowait(ctx)
        return ctx

    def fire_threadsafe(self, timeout: Optional[float] = None) -> None:
        """Queue one notification from a thread other than the event loop's.

        Before the trigger is bound to a loop nobody can be waiting on it, so
        the notification is queued directly.
        """
        with self._lock:
            if self._loop is None:
                self.fire(timeout)
                return
            loop = self._loop
        loop.call_soon_threadsafe(self.fire, timeout)

    def pending(self) -> int:
        return self._queue.qsize()

    async def next(self) -> TriggerContext:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self.bind(loop)
        return await self._queue.get()
