"""
Scheduling primitives for the dispatch client.

Every component in the core runs on a single loop thread: socket frames,
timer callbacks and the results of blocking calls are all delivered there, so
handlers are plain synchronous state mutations.  ``QtScheduler`` drives the
loop with Qt timers and queued signals; ``ManualScheduler`` is a virtual-clock
implementation used by the test-suite and by simulated clients.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Tuple

from PyQt6.QtCore import QObject, Qt, QTimer, pyqtSignal, pyqtSlot

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]
ResultCallback = Callable[[Any], Any]
ErrorCallback = Callable[[BaseException], Any]


class TimerHandle:
    """Cancellable reference to a scheduled callback."""

    def __init__(self) -> None:
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        self._active = False


class Scheduler:
    """Interface shared by the Qt and the manual schedulers."""

    def now(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callback, *args: Any) -> TimerHandle:
        raise NotImplementedError

    def call_every(self, interval: float, callback: Callback, *args: Any) -> TimerHandle:
        raise NotImplementedError

    def call_soon_threadsafe(self, callback: Callback, *args: Any) -> None:
        raise NotImplementedError

    def submit(
        self,
        fn: Callable[[], Any],
        on_result: ResultCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        """Run ``fn`` off the loop and hand its outcome back on the loop."""
        raise NotImplementedError


def _deliver_error(on_error: Optional[ErrorCallback], exc: BaseException) -> None:
    if on_error is None:
        logger.error("Background call failed: %s", exc)
        return
    on_error(exc)


# ---------------------------------------------------------------------------
# Qt implementation
# ---------------------------------------------------------------------------


class _QtTimerHandle(TimerHandle):
    def __init__(self, timer: QTimer) -> None:
        super().__init__()
        self._timer = timer

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._timer.stop()
        self._timer.deleteLater()

    def _expire(self) -> None:
        self._active = False
        self._timer.deleteLater()


class QtScheduler(QObject, Scheduler):
    """
    Scheduler backed by the running Qt event loop.

    Worker threads never touch component state: they post ``(callback, args)``
    tuples through a queued signal which Qt delivers on the thread that owns
    this object.
    """

    _posted = pyqtSignal(object)

    def __init__(self, parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        self._posted.connect(self._run_posted, Qt.ConnectionType.QueuedConnection)

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callback, *args: Any) -> TimerHandle:
        timer = QTimer(self)
        timer.setSingleShot(True)
        handle = _QtTimerHandle(timer)

        def _fire() -> None:
            handle._expire()
            callback(*args)

        timer.timeout.connect(_fire)
        timer.start(max(0, int(delay * 1000)))
        return handle

    def call_every(self, interval: float, callback: Callback, *args: Any) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        timer = QTimer(self)
        timer.timeout.connect(lambda: callback(*args))
        timer.start(int(interval * 1000))
        return _QtTimerHandle(timer)

    def call_soon_threadsafe(self, callback: Callback, *args: Any) -> None:
        self._posted.emit((callback, args))

    def submit(
        self,
        fn: Callable[[], Any],
        on_result: ResultCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        def _worker() -> None:
            try:
                result = fn()
            except Exception as exc:  # noqa: BLE001 - handed back to the loop
                self.call_soon_threadsafe(_deliver_error, on_error, exc)
                return
            self.call_soon_threadsafe(on_result, result)

        threading.Thread(target=_worker, name="RideSyncWorker", daemon=True).start()

    @pyqtSlot(object)
    def _run_posted(self, item: Tuple[Callback, Tuple[Any, ...]]) -> None:
        callback, args = item
        try:
            callback(*args)
        except Exception:  # noqa: BLE001
            logger.exception("Posted callback %r raised", callback)


# ---------------------------------------------------------------------------
# Manual (virtual clock) implementation
# ---------------------------------------------------------------------------


class _ManualTimer(TimerHandle):
    def __init__(
        self,
        due: float,
        seq: int,
        interval: Optional[float],
        callback: Callback,
        args: Tuple[Any, ...],
    ) -> None:
        super().__init__()
        self.due = due
        self.seq = seq
        self.interval = interval
        self.callback = callback
        self.args = args


class ManualScheduler(Scheduler):
    """
    Deterministic scheduler with a virtual clock.

    Nothing happens until the owner calls ``advance``/``run_ready``; blocking
    calls handed to ``submit`` stay in flight until ``run_background`` resolves
    them, which makes it possible to deliver a response after the component
    that requested it has already been torn down.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._seq = 0
        self._timers: List[_ManualTimer] = []
        self._ready: Deque[Tuple[Callback, Tuple[Any, ...]]] = deque()
        self._background: Deque[Tuple[Callable[[], Any], ResultCallback, Optional[ErrorCallback]]] = deque()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback, *args: Any) -> TimerHandle:
        return self._schedule(max(0.0, delay), None, callback, args)

    def call_every(self, interval: float, callback: Callback, *args: Any) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        return self._schedule(interval, interval, callback, args)

    def call_soon_threadsafe(self, callback: Callback, *args: Any) -> None:
        self._ready.append((callback, args))

    def submit(
        self,
        fn: Callable[[], Any],
        on_result: ResultCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._background.append((fn, on_result, on_error))

    @property
    def pending_background(self) -> int:
        return len(self._background)

    @property
    def pending_timers(self) -> int:
        return sum(1 for timer in self._timers if timer.active)

    def run_ready(self) -> None:
        while self._ready:
            callback, args = self._ready.popleft()
            callback(*args)

    def run_background(self, limit: Optional[int] = None) -> int:
        """Resolve in-flight background calls in submission order."""
        resolved = 0
        while self._background and (limit is None or resolved < limit):
            fn, on_result, on_error = self._background.popleft()
            try:
                result = fn()
            except Exception as exc:  # noqa: BLE001
                _deliver_error(on_error, exc)
            else:
                on_result(result)
            resolved += 1
            self.run_ready()
        return resolved

    def advance(self, seconds: float = 0.0) -> None:
        target = self._now + max(0.0, seconds)
        self.run_ready()
        while True:
            timer = self._next_due(target)
            if timer is None:
                break
            self._now = max(self._now, timer.due)
            if timer.interval is not None:
                timer.due += timer.interval
            else:
                self._timers.remove(timer)
                timer._active = False
            timer.callback(*timer.args)
            self.run_ready()
        self._now = target
        self._timers = [timer for timer in self._timers if timer.active]

    def _schedule(
        self,
        delay: float,
        interval: Optional[float],
        callback: Callback,
        args: Tuple[Any, ...],
    ) -> TimerHandle:
        self._seq += 1
        timer = _ManualTimer(self._now + delay, self._seq, interval, callback, args)
        self._timers.append(timer)
        return timer

    def _next_due(self, target: float) -> Optional[_ManualTimer]:
        due = [t for t in self._timers if t.active and t.due <= target]
        if not due:
            return None
        return min(due, key=lambda t: (t.due, t.seq))
