from __future__ import annotations

from obdrelay.config import RelayConfig
from obdrelay.gate import ConnectivityFacts
from obdrelay.monitor import NetworkMonitor, network_status
from obdrelay.network import NetworkReadError


def _monitor(backend, cfg: RelayConfig, seen: list[ConnectivityFacts] | None = None) -> NetworkMonitor:
    return NetworkMonitor(
        backend,
        config_fn=lambda: cfg,
        on_facts=seen.append if seen is not None else None,
    )


def test_connected_mode_never_scans(backend) -> None:
    backend.current = "HomeWifi"
    backend.visible = {"HomeWifi"}
    cfg = RelayConfig(mode="ssid_connected", target_ssid="HomeWifi")

    facts = _monitor(backend, cfg).check()

    assert backend.scans == 0
    assert facts.connected_to_target is True
    assert facts.target_in_range is False
    assert facts.has_internet is True


def test_in_range_mode_scans_for_target_and_source(backend) -> None:
    backend.current = "CarHotspot"
    backend.visible = {"HomeWifi", "CarHotspot"}
    cfg = RelayConfig(
        mode="ssid_in_range",
        target_ssid='"HomeWifi"',
        source_ssid="CarHotspot",
        auto_switch=True,
    )

    facts = _monitor(backend, cfg).check()

    assert backend.scans == 1
    assert facts.target_in_range is True
    assert facts.source_in_range is True
    assert facts.connected_to_source is True
    assert facts.connected_to_target is False
    assert facts.current_ssid == "CarHotspot"


def test_source_range_only_checked_with_auto_switch(backend) -> None:
    backend.visible = {"HomeWifi", "CarHotspot"}
    cfg = RelayConfig(mode="ssid_in_range", target_ssid="HomeWifi", source_ssid="CarHotspot")

    facts = _monitor(backend, cfg).check()

    assert facts.target_in_range is True
    assert facts.source_in_range is False


def test_scan_failures_degrade_to_not_in_range(backend, caplog) -> None:
    cfg = RelayConfig(mode="ssid_in_range", target_ssid="HomeWifi")
    monitor = _monitor(backend, cfg)

    backend.visible = {"HomeWifi"}
    backend.scan_error = PermissionError("not authorized")
    assert monitor.check().target_in_range is False

    backend.scan_error = NetworkReadError("scan failed")
    assert monitor.check().target_in_range is False
    assert "treating networks as out of range" in caplog.text


def test_read_errors_never_raise() -> None:
    class Broken:
        def current_ssid(self):
            raise OSError("gone")

        def has_internet(self):
            raise OSError("gone")

    facts = _monitor(Broken(), RelayConfig()).check()
    assert facts == ConnectivityFacts()


def test_periodic_ticks_publish_facts(backend, loop, drive) -> None:
    seen: list[ConnectivityFacts] = []
    cfg = RelayConfig(monitor_period_s=30.0)
    monitor = _monitor(backend, cfg, seen)

    monitor.start(loop)
    loop.run_pending()
    assert len(seen) == 1

    drive(95.0)
    assert len(seen) == 4

    monitor.cancel()
    drive(100.0)
    assert len(seen) == 4


def test_status_change_is_logged_once(backend, caplog) -> None:
    cfg = RelayConfig(mode="ssid_connected", target_ssid="HomeWifi", source_ssid="CarHotspot")
    monitor = _monitor(backend, cfg)

    with caplog.at_level("INFO", logger="obdrelay.monitor"):
        backend.current = "CarHotspot"
        monitor.check()
        monitor.check()
        backend.current = "HomeWifi"
        monitor.check()

    messages = [r.getMessage() for r in caplog.records if r.name == "obdrelay.monitor"]
    assert messages.count("network status: source") == 1
    assert messages.count("network status: target") == 1


def test_network_status_labels() -> None:
    assert network_status(ConnectivityFacts(connected_to_target=True)) == "target"
    assert network_status(ConnectivityFacts(connected_to_source=True)) == "source"
    assert network_status(ConnectivityFacts(current_ssid="Cafe")) == "other"
    assert network_status(ConnectivityFacts()) == "disconnected"
