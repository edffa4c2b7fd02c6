from __future__ import annotations

import logging
from typing import Callable

from .config import RelayConfig, clean_ssid
from .gate import ConnectivityFacts, TransmissionMode
from .loop import EventLoop, TimerHandle
from .network import NetworkReadError, WifiBackend


logger = logging.getLogger("obdrelay.monitor")

FactsListener = Callable[[ConnectivityFacts], None]


def network_status(facts: ConnectivityFacts) -> str:
    if facts.connected_to_target:
        return "target"
    if facts.connected_to_source:
        return "source"
    if facts.current_ssid:
        return "other"
    return "disconnected"


class NetworkMonitor:
    """Periodically refresh connection identity and (when needed) target visibility.

    Cheap checks (current SSID, internet) run every tick. The WiFi scan only
    runs in ssid_in_range mode, and the source network is only looked for when
    auto-switching is enabled. Nothing a tick reads from the device is fatal:
    failures degrade to "not in range" / "no internet" for that tick.
    """

    def __init__(
        self,
        backend: WifiBackend,
        *,
        config_fn: Callable[[], RelayConfig],
        on_facts: FactsListener | None = None,
    ) -> None:
        self._backend = backend
        self._config_fn = config_fn
        self._on_facts = on_facts
        self._facts = ConnectivityFacts()
        self._status: str | None = None
        self._loop: EventLoop | None = None
        self._handle: TimerHandle | None = None

    @property
    def facts(self) -> ConnectivityFacts:
        return self._facts

    def check(self) -> ConnectivityFacts:
        config = self._config_fn()
        target = clean_ssid(config.target_ssid)
        source = clean_ssid(config.source_ssid)

        current = self._read_current_ssid()
        connected_to_target = bool(target) and current == target
        connected_to_source = bool(source) and current == source
        has_internet = self._read_has_internet()

        target_in_range = False
        source_in_range = False
        if config.transmission_mode is TransmissionMode.SSID_IN_RANGE and target:
            visible = self._scan()
            target_in_range = target in visible
            if config.auto_switch and source:
                source_in_range = source in visible

        facts = ConnectivityFacts(
            connected_to_target=connected_to_target,
            target_in_range=target_in_range,
            source_in_range=source_in_range,
            has_internet=has_internet,
            connected_to_source=connected_to_source,
            current_ssid=current,
        )
        self._facts = facts

        logger.debug(
            "network_facts",
            extra={
                "fields": {
                    "mode": config.mode,
                    "connected_to_target": connected_to_target,
                    "target_in_range": target_in_range,
                    "source_in_range": source_in_range,
                    "has_internet": has_internet,
                }
            },
        )

        status = network_status(facts)
        if status != self._status:
            logger.info("network status: %s", status, extra={"fields": {"previous": self._status}})
            self._status = status
        return facts

    def tick(self) -> ConnectivityFacts:
        facts = self.check()
        if self._on_facts is not None:
            self._on_facts(facts)
        return facts

    def start(self, loop: EventLoop, *, immediate: bool = True) -> None:
        self._loop = loop
        self.cancel()
        if immediate:
            self._handle = loop.post("monitor-tick", self._run_tick)
        else:
            self._schedule_next()

    def reschedule(self) -> None:
        """Restart the period from now with an immediate check."""

        if self._loop is None:
            return
        self.cancel()
        self._handle = self._loop.post("monitor-tick", self._run_tick)

    def cancel(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    def _run_tick(self) -> None:
        self._handle = None
        try:
            self.tick()
        finally:
            self._schedule_next()

    def _schedule_next(self) -> None:
        if self._loop is None:
            return
        period_s = max(0.1, float(self._config_fn().monitor_period_s))
        self._handle = self._loop.call_later(period_s, "monitor-tick", self._run_tick)

    def _read_current_ssid(self) -> str | None:
        try:
            ssid = self._backend.current_ssid()
        except Exception as exc:
            logger.warning("could not read current network: %r", exc)
            return None
        cleaned = clean_ssid(ssid)
        return cleaned or None

    def _read_has_internet(self) -> bool:
        try:
            return bool(self._backend.has_internet())
        except Exception as exc:
            logger.warning("could not check internet connectivity: %r", exc)
            return False

    def _scan(self) -> set[str]:
        try:
            return {clean_ssid(s) for s in self._backend.scan_ssids()}
        except PermissionError as exc:
            logger.warning("wifi scan not permitted; treating networks as out of range: %s", exc)
        except NetworkReadError as exc:
            logger.warning("wifi scan failed; treating networks as out of range: %s", exc)
        except Exception:
            logger.exception("unexpected wifi scan failure")
        return set()
