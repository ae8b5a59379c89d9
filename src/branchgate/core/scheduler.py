"""
Timer primitives: clocks and cancellable one-shot timers.

The session manager never touches the event loop's timer facility directly.
It receives a Scheduler, so production code runs on asyncio while tests drive
a VirtualScheduler whose clock only moves when told to.
"""

import asyncio
import heapq
import inspect
import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import (
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
    Tuple,
    Union,
    runtime_checkable,
)

from branchgate.logger import get_logger

logger = get_logger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[None]]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ms_between(start: datetime, end: datetime) -> int:
    """Whole milliseconds from start to end (negative if end is earlier)."""
    return int((end - start) / timedelta(milliseconds=1))


@runtime_checkable
class Clock(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return utcnow()


class TimerHandle:
    """A one-shot timer returned by Scheduler.schedule()."""

    _ids = itertools.count(1)

    def __init__(self, deadline: datetime, callback: TimerCallback, label: str = ""):
        self.id = next(self._ids)
        self.deadline = deadline
        self.callback = callback
        self.label = label
        self.cancelled = False
        self.fired = False
        self._native: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def __repr__(self) -> str:
        status = "cancelled" if self.cancelled else "fired" if self.fired else "armed"
        return f"<TimerHandle {self.label or self.id} {status} at {self.deadline.isoformat()}>"


async def run_callback(callback: TimerCallback, label: str = "") -> None:
    """Invoke a timer callback, awaiting it if needed. Errors are logged, never raised."""
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Timer callback '{label}' failed: {e}")


class Scheduler(ABC):
    """Schedules and cancels one-shot timers."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as seen by this scheduler."""

    @abstractmethod
    def schedule(
        self, delay_ms: int, callback: TimerCallback, label: str = ""
    ) -> TimerHandle:
        """Arm a timer that calls ``callback`` after ``delay_ms`` milliseconds."""

    @abstractmethod
    def cancel(self, handle: Optional[TimerHandle]) -> None:
        """Disarm a timer. Cancelling a fired, cancelled or None handle is a no-op."""


class AsyncioScheduler(Scheduler):
    """
    Scheduler backed by the running asyncio event loop.

    Coroutine callbacks are wrapped in tasks; references are kept until the
    task finishes so they are not garbage-collected mid-flight.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.clock = clock or SystemClock()
        self._loop = loop
        self._tasks: set = set()

    def now(self) -> datetime:
        return self.clock.now()

    def schedule(
        self, delay_ms: int, callback: TimerCallback, label: str = ""
    ) -> TimerHandle:
        delay_ms = max(0, int(delay_ms))
        handle = TimerHandle(
            self.now() + timedelta(milliseconds=delay_ms), callback, label
        )
        loop = self._loop or asyncio.get_running_loop()
        handle._native = loop.call_later(delay_ms / 1000, self._fire, handle, loop)
        logger.debug(f"Armed timer {label or handle.id} in {delay_ms}ms")
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is None or not handle.active:
            return
        handle.cancelled = True
        if handle._native is not None:
            handle._native.cancel()

    def _fire(self, handle: TimerHandle, loop: asyncio.AbstractEventLoop) -> None:
        if not handle.active:
            return
        handle.fired = True
        task = loop.create_task(run_callback(handle.callback, handle.label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class VirtualScheduler(Scheduler):
    """
    Deterministic clock and scheduler for tests and simulations.

    Time stands still until advance()/advance_to() is awaited. Due timers fire
    in deadline order (ties in scheduling order) with the clock set to their
    deadline, and timers armed by a callback fire in the same pass if they fall
    inside the advanced window.
    """

    DEFAULT_START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or self.DEFAULT_START
        self._queue: List[Tuple[datetime, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    def schedule(
        self, delay_ms: int, callback: TimerCallback, label: str = ""
    ) -> TimerHandle:
        delay_ms = max(0, int(delay_ms))
        handle = TimerHandle(
            self._now + timedelta(milliseconds=delay_ms), callback, label
        )
        heapq.heappush(self._queue, (handle.deadline, next(self._seq), handle))
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is not None and handle.active:
            handle.cancelled = True

    def pending(self) -> List[TimerHandle]:
        """Armed timers, earliest first."""
        return [h for _, _, h in sorted(self._queue) if h.active]

    async def advance(self, ms: int) -> int:
        """Move the clock forward by ``ms`` milliseconds. Returns timers fired."""
        return await self.advance_to(self._now + timedelta(milliseconds=ms))

    async def advance_to(self, target: datetime) -> int:
        """Move the clock to ``target``, firing every timer due on the way."""
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            deadline, _, handle = heapq.heappop(self._queue)
            if not handle.active:
                continue
            self._now = max(self._now, deadline)
            handle.fired = True
            await run_callback(handle.callback, handle.label)
            fired += 1
        self._now = max(self._now, target)
        return fired

    def set_time(self, moment: datetime) -> None:
        """Jump the clock without firing timers (simulates a suspended host)."""
        self._now = moment

    def __repr__(self) -> str:
        return f"<VirtualScheduler now={self._now.isoformat()} pending={len(self.pending())}>"
