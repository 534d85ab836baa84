"""Cancellable timers shared by the per-session runtime components."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict


logger = logging.getLogger(__name__)

TimeSource = Callable[[], float]


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class TimerGroup:
    """Named timer handles and background tasks owned by one session.

    Scheduling under a name that is already pending replaces the previous
    entry, so each name holds at most one pending callback or task.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Dict[str, asyncio.Task[Any]] = {}
        self._closed = False

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def time(self) -> float:
        return self.loop.time()

    def call_later(
        self, name: str, delay: float, callback: Callable[..., Any], *args: Any
    ) -> asyncio.TimerHandle | None:
        """Run ``callback(*args)`` after ``delay`` seconds under ``name``."""

        if self._closed:
            return None
        self.cancel(name)

        def _fire() -> None:
            self._handles.pop(name, None)
            callback(*args)

        handle = self.loop.call_later(max(0.0, delay), _fire)
        self._handles[name] = handle
        return handle

    def spawn(
        self, name: str, coro: Coroutine[Any, Any, Any]
    ) -> asyncio.Task[Any] | None:
        """Run ``coro`` as a tracked task; a pending task under ``name`` is cancelled."""

        if self._closed:
            coro.close()
            return None
        previous = self._tasks.get(name)
        if previous is not None and previous is not _current_task():
            previous.cancel()
        task = self.loop.create_task(coro)
        self._tasks[name] = task

        def _on_done(completed: asyncio.Task[Any]) -> None:
            if self._tasks.get(name) is completed:
                del self._tasks[name]
            if completed.cancelled():
                return
            exc = completed.exception()
            if exc is not None:
                logger.error("background task %s failed", name, exc_info=exc)

        task.add_done_callback(_on_done)
        return task

    def pending(self, name: str) -> bool:
        return name in self._handles or name in self._tasks

    def cancel(self, name: str) -> None:
        handle = self._handles.pop(name, None)
        if handle is not None:
            handle.cancel()
        task = self._tasks.pop(name, None)
        if task is not None and task is not _current_task():
            task.cancel()

    def cancel_all(self) -> None:
        """Cancel every pending entry and refuse new ones."""

        self._closed = True
        for name in list(self._handles):
            self.cancel(name)
        current = _current_task()
        for name, task in list(self._tasks.items()):
            del self._tasks[name]
            if task is not current:
                task.cancel()


class Throttle:
    """Invoke ``callback`` at most once per ``interval`` seconds.

    The first call in a window runs immediately; later calls in the same window
    collapse into one trailing call with the most recent arguments.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[..., Any],
        timers: TimerGroup,
        *,
        name: str,
        time_source: TimeSource | None = None,
    ) -> None:
        self.interval = float(interval)
        self._callback = callback
        self._timers = timers
        self._name = name
        self._time_source = time_source
        self._last_call: float | None = None
        self._pending: tuple[Any, ...] | None = None

    def _now(self) -> float:
        if self._time_source is not None:
            return self._time_source()
        return self._timers.time()

    def __call__(self, *args: Any) -> None:
        now = self._now()
        if self._last_call is None or now - self._last_call >= self.interval:
            self._timers.cancel(self._name)
            self._pending = None
            self._last_call = now
            self._callback(*args)
            return
        self._pending = args
        if not self._timers.pending(self._name):
            remaining = self.interval - (now - self._last_call)
            self._timers.call_later(self._name, remaining, self._flush)

    def _flush(self) -> None:
        args = self._pending
        self._pending = None
        if args is None:
            return
        self._last_call = self._now()
        self._callback(*args)

    def cancel(self) -> None:
        """Drop any trailing call that has not fired yet."""

        self._pending = None
        self._timers.cancel(self._name)


class Debounce:
    """Invoke ``callback`` once calls stop arriving for ``delay`` seconds."""

    def __init__(
        self, delay: float, callback: Callable[..., Any], timers: TimerGroup, *, name: str
    ) -> None:
        self.delay = float(delay)
        self._callback = callback
        self._timers = timers
        self._name = name

    def __call__(self, *args: Any) -> None:
        self._timers.call_later(self._name, self.delay, self._callback, *args)

    def cancel(self) -> None:
        self._timers.cancel(self._name)


__all__ = ["Debounce", "Throttle", "TimeSource", "TimerGroup"]
