from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable


logger = logging.getLogger("obdrelay.loop")

ClockFn = Callable[[], float]


class TimerHandle:
    """A scheduled (or posted) event on the relay loop."""

    def __init__(self, kind: str, fn: Callable[..., Any], args: tuple[Any, ...], due: float) -> None:
        self.kind = kind
        self.due = due
        self._fn = fn
        self._args = args
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def _run(self) -> None:
        self._fn(*self._args)

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "pending"
        return f"<TimerHandle kind={self.kind} due={self.due:.3f} {state}>"


@dataclass(order=True)
class _Entry:
    due: float
    seq: int
    handle: TimerHandle = field(compare=False)


class EventLoop:
    """Single serialized consumer context.

    Every timer firing, monitor tick and switch callback runs here, one at a
    time, so relay state is only ever mutated by one event handler at once.
    Producers only enqueue events; they never run handlers themselves.

    The loop can run on its own daemon thread (`start`) or be driven by hand
    with `run_pending`, which is what the tests do with a fake clock.
    """

    def __init__(self, *, clock: ClockFn = time.monotonic, name: str = "obdrelay-loop") -> None:
        self._clock = clock
        self._name = name
        self._cond = threading.Condition()
        self._heap: list[_Entry] = []
        self._seq = itertools.count()
        self._thread: threading.Thread | None = None
        self._stopping = False

    def now(self) -> float:
        return self._clock()

    def post(self, kind: str, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        return self.call_later(0.0, kind, fn, *args)

    def call_later(self, delay_s: float, kind: str, fn: Callable[..., Any], *args: Any) -> TimerHandle:
        due = self._clock() + max(0.0, float(delay_s))
        handle = TimerHandle(kind, fn, args, due)
        with self._cond:
            if self._stopping:
                handle.cancel()
                return handle
            heapq.heappush(self._heap, _Entry(due, next(self._seq), handle))
            self._cond.notify()
        return handle

    def pending(self) -> list[TimerHandle]:
        with self._cond:
            entries = sorted(e for e in self._heap if not e.handle.cancelled)
        return [e.handle for e in entries]

    def next_due(self) -> float | None:
        with self._cond:
            self._drop_cancelled_head()
            return self._heap[0].due if self._heap else None

    def run_pending(self) -> int:
        """Run every event that is due now. Returns the number of handlers run."""

        ran = 0
        while True:
            handle = self._pop_due()
            if handle is None:
                return ran
            ran += 1
            try:
                handle._run()  # noqa: SLF001 - loop owns handle execution
            except Exception:
                logger.exception("loop_handler_failed", extra={"fields": {"kind": handle.kind}})

    def _pop_due(self) -> TimerHandle | None:
        with self._cond:
            self._drop_cancelled_head()
            if not self._heap:
                return None
            if self._heap[0].due > self._clock():
                return None
            return heapq.heappop(self._heap).handle

    def _drop_cancelled_head(self) -> None:
        while self._heap and self._heap[0].handle.cancelled:
            heapq.heappop(self._heap)

    def start(self) -> None:
        with self._cond:
            if self._thread is not None:
                return
            self._stopping = False
            self._thread = threading.Thread(target=self._run_forever, name=self._name, daemon=True)
            self._thread.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        with self._cond:
            self._stopping = True
            for entry in self._heap:
                entry.handle.cancel()
            self._heap.clear()
            self._cond.notify_all()
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout_s)

    def _run_forever(self) -> None:
        while True:
            with self._cond:
                if self._stopping:
                    return
                self._drop_cancelled_head()
                if self._heap:
                    wait_s = self._heap[0].due - self._clock()
                    if wait_s > 0:
                        self._cond.wait(timeout=wait_s)
                else:
                    self._cond.wait()
                if self._stopping:
                    return
            self.run_pending()
