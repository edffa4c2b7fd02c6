from __future__ import annotations

import threading

from obdrelay.loop import EventLoop


def test_run_pending_fires_due_events_in_order(clock, loop: EventLoop) -> None:
    ran: list[str] = []
    loop.call_later(2.0, "flush-fired", ran.append, "late")
    loop.post("sample-in", ran.append, "first")
    loop.post("sample-in", ran.append, "second")
    loop.call_later(1.0, "monitor-tick", ran.append, "early")

    assert loop.run_pending() == 2
    assert ran == ["first", "second"]

    clock.advance(5.0)
    assert loop.run_pending() == 2
    assert ran == ["first", "second", "early", "late"]


def test_cancelled_handle_never_runs(clock, loop: EventLoop) -> None:
    ran: list[str] = []
    handle = loop.call_later(1.0, "switch-callback", ran.append, "x")
    handle.cancel()

    clock.advance(2.0)
    assert loop.run_pending() == 0
    assert ran == []
    assert loop.next_due() is None
    assert loop.pending() == []


def test_handler_exception_is_logged_and_loop_continues(loop: EventLoop, caplog) -> None:
    ran: list[str] = []

    def boom() -> None:
        raise RuntimeError("boom")

    loop.post("manual-flush", boom)
    loop.post("sample-in", ran.append, "after")

    assert loop.run_pending() == 2
    assert ran == ["after"]
    assert any(r.getMessage() == "loop_handler_failed" for r in caplog.records)


def test_events_posted_after_stop_are_cancelled(loop: EventLoop) -> None:
    pending = loop.call_later(10.0, "ledger-purge", lambda: None)
    loop.stop()

    assert pending.cancelled
    late = loop.post("sample-in", lambda: None)
    assert late.cancelled
    assert loop.run_pending() == 0


def test_background_thread_runs_posted_events() -> None:
    loop = EventLoop()
    done = threading.Event()
    loop.start()
    try:
        loop.post("config-changed", done.set)
        assert done.wait(timeout=2.0)
    finally:
        loop.stop()
