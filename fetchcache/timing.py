"""
An injectable schedule/cancel abstraction.

Everything in this package that waits (backoff, retry delays, attempt timeouts,
debouncing, periodic sweeps) goes through a `Scheduler`, so that tests can
substitute a `ManualScheduler` and control time explicitly.
"""

from abc import ABC, abstractmethod
import asyncio
import heapq
import itertools
import logging
import time
from typing import Any, Callable, List, Optional, Protocol, Tuple


logger = logging.getLogger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(ABC):
    @abstractmethod
    def now(self) -> float:
        """
        The current time of this scheduler's clock, in seconds. Only differences are meaningful.
        """

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], Any]) -> Cancellable:
        """
        Run `callback` once, after `delay` seconds.

        @return
          A handle whose `cancel()` prevents the callback from running.
        """

    @abstractmethod
    async def sleep(self, delay: float) -> None:
        """
        Suspend the calling coroutine for `delay` seconds.
        """

    def can_schedule(self) -> bool:
        return True

    def owner(self) -> Any:
        """
        Whatever timers scheduled right now belong to, e.g. the running event loop.
        A timer never outlives its owner.
        """
        return self


class AsyncioScheduler(Scheduler):
    """
    Schedules on the running asyncio event loop, measuring time with the monotonic clock.
    """

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], Any]) -> Cancellable:
        return asyncio.get_running_loop().call_later(delay, callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)

    def can_schedule(self) -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    def owner(self) -> Any:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None


class _ManualHandle:
    def __init__(self, when: float, callback: Callable[[], Any]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


# How many times the event loop is given a chance to run between two timers.
_SETTLE_ROUNDS = 20


async def _settle() -> None:
    for _ in range(_SETTLE_ROUNDS):
        await asyncio.sleep(0)


class ManualScheduler(Scheduler):
    """
    A fake clock. Time only moves when `advance()` or `tick()` is called.

    Timers that fall due are run in order of their due time, and the clock reads
    each timer's due time while it runs.
    """

    def __init__(self, start: float = 0.0) -> None:
        self.__now = start
        self.__timers = []  # type: List[Tuple[float, int, _ManualHandle]]
        self.__sequence = itertools.count()

    def now(self) -> float:
        return self.__now

    def call_later(self, delay: float, callback: Callable[[], Any]) -> Cancellable:
        handle = _ManualHandle(self.__now + max(delay, 0), callback)
        heapq.heappush(self.__timers, (handle.when, next(self.__sequence), handle))
        return handle

    async def sleep(self, delay: float) -> None:
        future = asyncio.get_running_loop().create_future()

        def wake():
            if not future.done():
                future.set_result(None)

        handle = self.call_later(delay, wake)
        try:
            await future
        finally:
            handle.cancel()

    @property
    def pending(self) -> int:
        """
        The number of timers that have neither run nor been cancelled.
        """
        return sum(1 for _, _, handle in self.__timers if not handle.cancelled)

    def __pop_due(self, deadline: float) -> Optional[_ManualHandle]:
        while self.__timers and self.__timers[0][0] <= deadline:
            _, _, handle = heapq.heappop(self.__timers)
            if not handle.cancelled:
                return handle
        return None

    def advance(self, seconds: float) -> None:
        """
        Move the clock forward, synchronously running every timer that falls due.
        """
        deadline = self.__now + seconds
        handle = self.__pop_due(deadline)
        while handle is not None:
            self.__now = max(self.__now, handle.when)
            handle.callback()
            handle = self.__pop_due(deadline)
        self.__now = deadline

    async def tick(self, seconds: float = 0) -> None:
        """
        Like `advance()`, but lets the event loop run after each timer, so that
        coroutines woken by a timer can schedule further timers within the same span.
        """
        deadline = self.__now + seconds
        await _settle()
        handle = self.__pop_due(deadline)
        while handle is not None:
            self.__now = max(self.__now, handle.when)
            handle.callback()
            await _settle()
            handle = self.__pop_due(deadline)
        self.__now = max(self.__now, deadline)
        await _settle()


class PeriodicTimer:
    """
    Runs a callback every `interval` seconds until stopped.

    The timer belongs to the scheduler's owner at the time it was started. It
    stops counting as running once that owner is gone, e.g. after the event loop
    it was started on has been replaced, and `start()` then schedules it anew.
    """

    def __init__(self, scheduler: Scheduler, interval: float, callback: Callable[[], Any]) -> None:
        self.__scheduler = scheduler
        self.__interval = interval
        self.__callback = callback
        self.__handle = None  # type: Optional[Cancellable]
        self.__owner = None  # type: Any

    @property
    def running(self) -> bool:
        return self.__handle is not None and self.__owner is self.__scheduler.owner()

    def start(self) -> None:
        if self.running:
            return
        self.stop()
        self.__owner = self.__scheduler.owner()
        self.__handle = self.__scheduler.call_later(self.__interval, self.__fire)

    def stop(self) -> None:
        if self.__handle is not None:
            self.__handle.cancel()
            self.__handle = None

    def __fire(self) -> None:
        self.__handle = None
        try:
            self.__callback()
        finally:
            self.start()


class Debouncer:
    """
    Collapses a burst of values into the last one, delivered once the value has
    stopped changing for `delay` seconds.
    """

    def __init__(self, scheduler: Scheduler, delay: float, on_settle: Callable[[Any], Any]) -> None:
        self.__scheduler = scheduler
        self.__delay = delay
        self.__on_settle = on_settle
        self.__handle = None  # type: Optional[Cancellable]

    @property
    def pending(self) -> bool:
        return self.__handle is not None

    def push(self, value: Any) -> None:
        self.cancel()
        self.__handle = self.__scheduler.call_later(self.__delay, lambda: self.__settle(value))

    def cancel(self) -> None:
        if self.__handle is not None:
            self.__handle.cancel()
            self.__handle = None

    def __settle(self, value: Any) -> None:
        self.__handle = None
        logger.debug('Debounced value settled: {}'.format(value))
        self.__on_settle(value)
