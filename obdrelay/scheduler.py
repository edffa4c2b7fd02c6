from __future__ import annotations

import threading
from typing import Callable

from .loop import EventLoop, TimerHandle


class FlushScheduler:
    """Debounce accepted samples into one flush per quiet period.

    The first accepted sample arms a one-shot timer; further samples while it
    is armed are coalesced into the same flush. Firing disarms before the
    flush handler runs, so a sample arriving during the flush arms the next one.
    """

    def __init__(
        self,
        loop: EventLoop,
        on_flush: Callable[[], None],
        *,
        interval_fn: Callable[[], float],
    ) -> None:
        self._loop = loop
        self._on_flush = on_flush
        self._interval_fn = interval_fn
        self._lock = threading.Lock()
        self._handle: TimerHandle | None = None

    @property
    def armed(self) -> bool:
        with self._lock:
            return self._handle is not None

    def arm(self) -> bool:
        """Arm the flush timer unless already armed. Returns True if armed now."""

        with self._lock:
            if self._handle is not None:
                return False
            self._handle = self._loop.call_later(
                max(0.0, float(self._interval_fn())),
                "flush-fired",
                self._fire,
            )
            return True

    def cancel(self) -> None:
        with self._lock:
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    def _fire(self) -> None:
        with self._lock:
            self._handle = None
        self._on_flush()
