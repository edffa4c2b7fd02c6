from __future__ import annotations

import logging
from dataclasses import replace
from functools import partial
from typing import Any, Dict, Iterable

from .buffer import SampleBuffer
from .config import (
    ConfigurationError,
    RelayConfig,
    RelayConfigError,
    SettingsStore,
    with_known_keys,
)
from .gate import ConnectivityFacts, accept_key, should_send
from .ledger import SqliteLedger, now_ms
from .loop import EventLoop, TimerHandle
from .monitor import NetworkMonitor, network_status
from .network import WifiBackend
from .publisher import Publisher
from .scheduler import FlushScheduler
from .switch import PERSISTENT_FAILURE_THRESHOLD, SwitchController


logger = logging.getLogger("obdrelay.orchestrator")


def parse_catalog_csv(text: str) -> set[str]:
    """Extract sample keys from a `key;description;value;units` catalog, one item per line."""

    keys: set[str] = set()
    for line in text.splitlines():
        key = line.split(";", 1)[0].strip()
        if key:
            keys.add(key)
    return keys


class TransmissionOrchestrator:
    """Relay samples from the producer side to the publisher, gated by network state.

    Producers call `on_sample` / `on_catalog_update` from any thread; those only
    touch the buffer and the flush timer, and post everything else to the
    loop. Flushes, monitor ticks, switch callbacks and config changes all run
    on the loop, one at a time.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        publisher: Publisher,
        backend: WifiBackend,
        ledger: SqliteLedger | None = None,
        settings_store: SettingsStore | None = None,
        loop: EventLoop | None = None,
    ) -> None:
        self._config = config
        self._publisher = publisher
        self._ledger = ledger
        self._settings_store = settings_store
        self.loop = loop or EventLoop()
        self.buffer = SampleBuffer()
        self.scheduler = FlushScheduler(
            self.loop,
            self._handle_flush,
            interval_fn=lambda: self._config.flush_interval_s,
        )
        self.monitor = NetworkMonitor(backend, config_fn=self._get_config, on_facts=self._handle_facts)
        self.switch = SwitchController(
            backend,
            self.loop,
            config_fn=self._get_config,
            refresh_facts=self.monitor.check,
            on_target_connected=self._on_target_connected,
        )
        self._purge_handle: TimerHandle | None = None
        self.config_failures = 0
        self.flushes = 0
        self.dispatched_total = 0

    @property
    def config(self) -> RelayConfig:
        return self._config

    def _get_config(self) -> RelayConfig:
        return self._config

    # Producer side

    def on_sample(self, key: str | None, value: str | None) -> bool:
        """Buffer one sample. Returns False when it is ignored."""

        if not key or value is None or value == "":
            return False
        config = self._config
        if not accept_key(key, config.selected_keys):
            return False

        self.buffer.put(key, str(value))
        self.scheduler.arm()
        if key not in config.known_keys:
            self.loop.post("sample-in", self._merge_known_keys, frozenset((key,)))
        return True

    def on_catalog_update(self, catalog: str | Iterable[str]) -> None:
        """Merge a catalog of known keys and start a fresh buffering session."""

        keys = parse_catalog_csv(catalog) if isinstance(catalog, str) else {k for k in catalog if k}
        dropped = self.buffer.clear()
        if dropped:
            logger.info("catalog update reset buffer", extra={"fields": {"dropped": dropped}})
        self.loop.post("catalog-update", self._merge_known_keys, frozenset(keys))

    def apply_config(self, config: RelayConfig) -> None:
        self.loop.post("config-changed", self._apply_config, config)

    def flush_now(self) -> None:
        """Flush immediately, skipping the debounce delay but not the gate."""

        self.loop.post("manual-flush", self._handle_flush)

    # Loop side

    def _merge_known_keys(self, keys: frozenset[str]) -> None:
        updated = with_known_keys(self._config, keys)
        if updated is self._config:
            return
        new_keys = sorted(updated.known_keys - self._config.known_keys)
        self._config = updated
        logger.debug("known keys updated", extra={"fields": {"added": new_keys}})

        if self._settings_store is None:
            return
        try:
            self._settings_store.merge_known_keys(new_keys)
        except (OSError, RelayConfigError) as exc:
            logger.warning("could not persist known keys: %s", exc)

    def _apply_config(self, config: RelayConfig) -> None:
        previous = self._config
        self._config = replace(config, known_keys=previous.known_keys | config.known_keys)
        self.config_failures = 0

        reconfigure = getattr(self._publisher, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(self._config)

        logger.info(
            "configuration applied",
            extra={
                "fields": {
                    "mode": config.mode,
                    "auto_switch": config.auto_switch,
                    "flush_interval_s": config.flush_interval_s,
                    "selected_keys": len(config.selected_keys),
                }
            },
        )

        network_changed = (
            previous.mode != config.mode
            or previous.target_ssid != config.target_ssid
            or previous.source_ssid != config.source_ssid
            or previous.auto_switch != config.auto_switch
            or previous.monitor_period_s != config.monitor_period_s
        )
        if network_changed:
            self.monitor.reschedule()

    def _handle_flush(self) -> None:
        if self.buffer.is_empty():
            return

        config = self._config
        try:
            config.ensure_publishable()
        except ConfigurationError as exc:
            self.config_failures += 1
            if self.config_failures >= PERSISTENT_FAILURE_THRESHOLD:
                logger.error(
                    "flush skipped: %s (%s consecutive)",
                    exc,
                    self.config_failures,
                    extra={"fields": {"consecutive_failures": self.config_failures}},
                )
            else:
                logger.warning("flush skipped: %s", exc)
            return
        self.config_failures = 0

        facts = self.monitor.facts
        if not should_send(config.mode, facts):
            logger.debug(
                "flush gated",
                extra={
                    "fields": {
                        "mode": config.mode,
                        "connected_to_target": facts.connected_to_target,
                        "has_internet": facts.has_internet,
                        "buffered": len(self.buffer),
                    }
                },
            )
            self.scheduler.arm()
            return

        samples = self.buffer.drain()
        if not samples:
            return
        self.flushes += 1
        logger.info("flush", extra={"fields": {"samples": len(samples), "mode": config.mode}})
        for key, value in samples.items():
            self._dispatch(key, value)

    def _dispatch(self, key: str, value: str) -> None:
        on_sent = None
        if self._ledger is not None:
            record_id = self._ledger.insert_record(key, value)
            if record_id is not None:
                on_sent = partial(self._ledger.mark_sent, record_id)
        try:
            self._publisher.send(key, value, on_sent=on_sent)
        except Exception:
            logger.exception("could not dispatch sample %s", key)
            return
        self.dispatched_total += 1

    def _handle_facts(self, facts: ConnectivityFacts) -> None:
        if not self._config.auto_switch or self.switch.in_progress:
            return
        self.switch.evaluate(facts, self.buffer.is_empty())

    def _on_target_connected(self) -> None:
        # A gated-out flush may still be pending past the transmission window.
        if not self.buffer.is_empty():
            self.scheduler.cancel()
            self.flush_now()

    def _schedule_purge(self) -> None:
        if self._ledger is None:
            return
        self._purge_handle = self.loop.call_later(
            self._config.ledger_purge_interval_s,
            "ledger-purge",
            self._run_purge,
        )

    def _run_purge(self) -> None:
        self._purge_handle = None
        try:
            self.purge_ledger()
        finally:
            self._schedule_purge()

    def purge_ledger(self) -> int:
        if self._ledger is None:
            return 0
        cutoff = now_ms() - int(self._config.ledger_retention_s * 1000)
        deleted = self._ledger.delete_old_sent(cutoff)
        if deleted:
            logger.info("ledger purge", extra={"fields": {"deleted": deleted}})
        return deleted

    # Lifecycle

    def start(self, *, background: bool = True) -> None:
        config = self._config
        logger.info(
            "relay starting",
            extra={
                "fields": {
                    "mode": config.mode,
                    "auto_switch": config.auto_switch,
                    "flush_interval_s": config.flush_interval_s,
                    "monitor_period_s": config.monitor_period_s,
                    "ledger": self._ledger is not None,
                }
            },
        )
        self.monitor.start(self.loop)
        self._schedule_purge()
        if background:
            self.loop.start()

    def stop(self) -> None:
        if self.switch.in_progress:
            logger.warning(
                "stopping with a network switch in progress; it will not be reverted",
                extra={"fields": {"switch_state": self.switch.state.value}},
            )
        self.scheduler.cancel()
        self.monitor.cancel()
        self.switch.cancel()
        if self._purge_handle is not None:
            self._purge_handle.cancel()
            self._purge_handle = None
        self.loop.stop()
        self._publisher.close()
        logger.info("relay stopped", extra={"fields": {"buffered": len(self.buffer)}})

    def status(self) -> Dict[str, Any]:
        facts = self.monitor.facts
        status: Dict[str, Any] = {
            "mode": self._config.mode,
            "network": network_status(facts),
            "has_internet": facts.has_internet,
            "switch_state": self.switch.state.value,
            "buffered": len(self.buffer),
            "flushes": self.flushes,
            "dispatched_total": self.dispatched_total,
        }
        if self._ledger is not None:
            status.update(self._ledger.metrics())
        return status
