from __future__ import annotations

from typing import Callable

import pytest

from obdrelay.loop import EventLoop


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeBackend:
    """Scriptable WifiBackend. `reconnect` associates with the network when `connect_on_reconnect`."""

    def __init__(self) -> None:
        self.current: str | None = None
        self.internet = True
        self.visible: set[str] = set()
        self.known: dict[str, str] | None = {"CarHotspot": "car-conn", "HomeWifi": "home-conn"}
        self.enable_ok = True
        self.reconnect_ok = True
        self.connect_on_reconnect = True
        self.scan_error: Exception | None = None
        self.known_error: Exception | None = None
        self.disconnect_error: Exception | None = None
        self.scans = 0
        self.calls: list[tuple[str, ...]] = []

    def current_ssid(self) -> str | None:
        return self.current

    def has_internet(self) -> bool:
        return self.internet

    def scan_ssids(self) -> set[str]:
        self.scans += 1
        if self.scan_error is not None:
            raise self.scan_error
        return set(self.visible)

    def known_networks(self) -> dict[str, str] | None:
        self.calls.append(("known_networks",))
        if self.known_error is not None:
            raise self.known_error
        return None if self.known is None else dict(self.known)

    def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        if self.disconnect_error is not None:
            raise self.disconnect_error
        self.current = None

    def enable_network(self, network_id: str) -> bool:
        self.calls.append(("enable", network_id))
        return self.enable_ok

    def reconnect(self, network_id: str) -> bool:
        self.calls.append(("reconnect", network_id))
        if not self.reconnect_ok:
            return False
        if self.connect_on_reconnect and self.known:
            for ssid, known_id in self.known.items():
                if known_id == network_id:
                    self.current = ssid
        return True

    def switch_requests(self) -> list[str]:
        return [c[1] for c in self.calls if c[0] == "reconnect"]


class FakePublisher:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False
        self.closed = False
        self.configs: list[object] = []

    def send(self, key: str, value: str, *, on_sent: Callable[[], None] | None = None) -> None:
        self.sent.append((key, value))
        if on_sent is not None and not self.fail:
            on_sent()

    def reconfigure(self, config: object) -> None:
        self.configs.append(config)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def loop(clock: FakeClock) -> EventLoop:
    return EventLoop(clock=clock)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def drive(clock: FakeClock, loop: EventLoop) -> Callable[[float], None]:
    """Advance the fake clock by `seconds`, firing every event that falls due on the way."""

    def _drive(seconds: float) -> None:
        end = clock.t + seconds
        while True:
            loop.run_pending()
            due = loop.next_due()
            if due is None or due > end:
                break
            clock.t = max(clock.t, due)
        clock.t = end
        loop.run_pending()

    return _drive
