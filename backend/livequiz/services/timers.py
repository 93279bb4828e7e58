"""Clock and timer handles used by the game scheduler.

Every delayed transition in a game goes through ``Clock.call_later`` so
the scheduler never sleeps inline and tests can drive virtual time.
"""

import time
from typing import Callable


class TimerHandle:
    """A pending callback. ``cancel`` is a hint: a callback that already
    started still runs and must re-check the state it expects."""

    __slots__ = ('label', 'due_ms', 'cancelled', 'fired')

    def __init__(self, label: str, due_ms: int):
        self.label = label
        self.due_ms = due_ms
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.fired)

    def __repr__(self):
        return f"<TimerHandle {self.label} due={self.due_ms} pending={self.pending}>"


class Clock:
    def now_ms(self) -> int:
        raise NotImplementedError

    def call_later(self, delay_ms: int, fn: Callable[[], None], label: str = 'timer') -> TimerHandle:
        raise NotImplementedError

    def spawn(self, fn: Callable[[], None]) -> None:
        raise NotImplementedError


class SocketIOClock(Clock):
    """Runs timers as Socket.IO background tasks (threads or greenlets,
    whichever async mode the server picked)."""

    def __init__(self, socketio, logger=None):
        self.socketio = socketio
        self.logger = logger

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def call_later(self, delay_ms: int, fn: Callable[[], None], label: str = 'timer') -> TimerHandle:
        handle = TimerHandle(label, self.now_ms() + max(0, int(delay_ms)))

        def _worker(h: TimerHandle, delay: float):
            if delay > 0:
                self.socketio.sleep(delay)
            if h.cancelled:
                return
            h.fired = True
            self._run(fn, h.label)

        self.socketio.start_background_task(_worker, handle, max(0, delay_ms) / 1000.0)
        return handle

    def spawn(self, fn: Callable[[], None]) -> None:
        self.socketio.start_background_task(self._run, fn, 'spawn')

    def _run(self, fn: Callable[[], None], label: str) -> None:
        try:
            fn()
        except Exception:
            if self.logger is not None:
                self.logger.exception(f"[task-error] task={label}")
