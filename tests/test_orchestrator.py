from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

from obdrelay.config import RelayConfig, SettingsStore
from obdrelay.ledger import SqliteLedger, now_ms
from obdrelay.orchestrator import TransmissionOrchestrator, parse_catalog_csv
from obdrelay.switch import SwitchState

BASE = RelayConfig(
    base_url="http://ha.local:8123",
    token="tok",
    flush_interval_s=5.0,
    monitor_period_s=30.0,
)


def _relay(
    backend,
    publisher,
    loop,
    *,
    ledger=None,
    settings_store=None,
    **overrides,
) -> TransmissionOrchestrator:
    relay = TransmissionOrchestrator(
        replace(BASE, **overrides),
        publisher=publisher,
        backend=backend,
        ledger=ledger,
        settings_store=settings_store,
        loop=loop,
    )
    relay.start(background=False)
    loop.run_pending()
    return relay


def test_end_to_end_realtime_flush(backend, publisher, loop, drive) -> None:
    relay = _relay(backend, publisher, loop)

    assert relay.on_sample("speed", "100") is True
    assert relay.on_sample("rpm", "3000") is True
    drive(5.0)

    assert sorted(publisher.sent) == [("rpm", "3000"), ("speed", "100")]
    assert relay.buffer.is_empty()
    assert relay.flushes == 1


def test_burst_within_interval_is_one_flush_with_latest_values(
    backend, publisher, loop, clock, drive
) -> None:
    relay = _relay(backend, publisher, loop)

    for rpm in ("900", "1500", "2200"):
        relay.on_sample("rpm", rpm)
        clock.advance(1.0)
    drive(5.0)

    assert publisher.sent == [("rpm", "2200")]
    assert relay.flushes == 1


def test_gated_flush_retains_buffer_and_rearms(backend, publisher, loop, drive) -> None:
    relay = _relay(backend, publisher, loop, mode="ssid_connected", target_ssid="HomeWifi")

    relay.on_sample("rpm", "1200")
    drive(5.0)

    assert publisher.sent == []
    assert relay.buffer.snapshot() == {"rpm": "1200"}
    assert relay.scheduler.armed

    backend.current = "HomeWifi"
    drive(35.0)

    assert publisher.sent == [("rpm", "1200")]
    assert relay.buffer.is_empty()


def test_configuration_error_skips_without_rearming(backend, publisher, loop, drive, caplog) -> None:
    relay = _relay(backend, publisher, loop, base_url="")

    for attempt in range(1, 4):
        relay.on_sample("rpm", str(attempt))
        drive(5.0)
        assert relay.config_failures == attempt
        assert not relay.scheduler.armed

    assert publisher.sent == []
    assert relay.buffer.snapshot() == {"rpm": "3"}
    errors = [r for r in caplog.records if r.name == "obdrelay.orchestrator" and r.levelname == "ERROR"]
    assert len(errors) == 1


def test_selection_filter_and_empty_samples(backend, publisher, loop) -> None:
    relay = _relay(backend, publisher, loop, selected_keys=frozenset({"speed"}))

    assert relay.on_sample("rpm", "3000") is False
    assert relay.on_sample("speed", "80") is True
    assert relay.on_sample("", "1") is False
    assert relay.on_sample("speed", "") is False
    assert relay.on_sample("speed", None) is False

    assert relay.buffer.snapshot() == {"speed": "80"}


def test_new_keys_are_merged_and_persisted(backend, publisher, loop, tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    store.save({"mode": "realtime"})
    relay = _relay(backend, publisher, loop, settings_store=store)

    relay.on_sample("rpm", "1")
    relay.on_sample("speed", "2")
    loop.run_pending()

    assert relay.config.known_keys == frozenset({"rpm", "speed"})
    saved = json.loads(store.path.read_text("utf-8"))
    assert saved == {"mode": "realtime", "known_keys": ["rpm", "speed"]}


def test_catalog_update_resets_buffer_and_merges_keys(backend, publisher, loop, drive) -> None:
    relay = _relay(backend, publisher, loop)
    relay.on_sample("rpm", "1000")

    relay.on_catalog_update("Engine speed;Engine RPM;;rpm\nVehicle speed;Speed;;km/h\n\n")
    assert relay.buffer.is_empty()
    drive(5.0)

    assert publisher.sent == []
    assert {"Engine speed", "Vehicle speed", "rpm"} <= relay.config.known_keys


def test_parse_catalog_csv() -> None:
    text = "rpm;Engine speed;3000;1/min\n  speed ;Vehicle speed;;km/h\n;;;\n"
    assert parse_catalog_csv(text) == {"rpm", "speed"}


def test_ledger_records_and_marks_sent(backend, publisher, loop, drive, tmp_path: Path) -> None:
    ledger = SqliteLedger(str(tmp_path / "ledger.sqlite"))
    relay = _relay(backend, publisher, loop, ledger=ledger)

    relay.on_sample("speed", "100")
    relay.on_sample("rpm", "3000")
    drive(5.0)
    assert ledger.count() == 2
    assert ledger.unsent_count() == 0

    publisher.fail = True
    relay.on_sample("rpm", "3100")
    drive(5.0)
    assert [(r.key, r.value) for r in ledger.unsent_records()] == [("rpm", "3100")]


def test_periodic_ledger_purge(backend, publisher, loop, drive, tmp_path: Path) -> None:
    ledger = SqliteLedger(str(tmp_path / "ledger.sqlite"))
    old_id = ledger.insert_record("rpm", "1", timestamp=now_ms() - 3 * 24 * 3600 * 1000)
    ledger.insert_record("rpm", "2", timestamp=now_ms() - 3 * 24 * 3600 * 1000)
    assert old_id is not None
    ledger.mark_sent(old_id)

    _relay(
        backend,
        publisher,
        loop,
        ledger=ledger,
        ledger_retention_s=24 * 3600.0,
        ledger_purge_interval_s=60.0,
    )
    drive(61.0)

    assert [r.value for r in ledger.unsent_records()] == ["2"]
    assert ledger.count() == 1


def test_flush_now_skips_debounce_but_not_gate(backend, publisher, loop) -> None:
    relay = _relay(backend, publisher, loop)
    relay.on_sample("rpm", "1")
    relay.flush_now()
    loop.run_pending()
    assert publisher.sent == [("rpm", "1")]

    backend.internet = False
    relay.monitor.check()
    relay.on_sample("rpm", "2")
    relay.flush_now()
    loop.run_pending()
    assert publisher.sent == [("rpm", "1")]


def test_apply_config_reconfigures_and_rechecks_network(backend, publisher, loop, tmp_path: Path) -> None:
    relay = _relay(backend, publisher, loop)
    relay.on_sample("rpm", "1")
    loop.run_pending()

    backend.current = "HomeWifi"
    relay.apply_config(replace(BASE, mode="ssid_connected", target_ssid="HomeWifi"))
    loop.run_pending()

    assert relay.config.mode == "ssid_connected"
    assert "rpm" in relay.config.known_keys
    assert publisher.configs and publisher.configs[-1] is relay.config
    assert relay.monitor.facts.connected_to_target is True


def test_auto_switch_delivers_buffer_then_returns(backend, publisher, loop, drive) -> None:
    backend.current = "CarHotspot"
    backend.visible = {"HomeWifi", "CarHotspot"}
    relay = _relay(
        backend,
        publisher,
        loop,
        mode="ssid_in_range",
        target_ssid="HomeWifi",
        source_ssid="CarHotspot",
        auto_switch=True,
        switch_stabilize_delay_s=5.0,
        await_transmission_timeout_s=10.0,
    )

    relay.on_sample("rpm", "1")
    drive(25.0)
    assert publisher.sent == []

    drive(40.0)
    assert publisher.sent == [("rpm", "1")]
    assert backend.switch_requests() == ["home-conn", "car-conn"]
    assert relay.switch.state is SwitchState.IDLE
    assert backend.current == "CarHotspot"


def test_stop_cancels_everything(backend, publisher, loop, drive) -> None:
    relay = _relay(backend, publisher, loop)
    relay.on_sample("rpm", "1")

    relay.stop()
    drive(60.0)

    assert publisher.closed
    assert publisher.sent == []
    assert loop.pending() == []
    assert relay.status()["buffered"] == 1


def test_auto_switch_flushes_on_arrival_when_interval_exceeds_window(backend, publisher, loop, drive) -> None:
    backend.current = "CarHotspot"
    backend.visible = {"HomeWifi", "CarHotspot"}
    relay = _relay(
        backend,
        publisher,
        loop,
        mode="ssid_in_range",
        target_ssid="HomeWifi",
        source_ssid="CarHotspot",
        auto_switch=True,
        flush_interval_s=30.0,
        switch_stabilize_delay_s=5.0,
        await_transmission_timeout_s=10.0,
    )

    relay.on_sample("rpm", "1")
    drive(40.0)

    assert publisher.sent == [("rpm", "1")]
    assert backend.switch_requests() == ["home-conn"]
    assert relay.switch.state is SwitchState.AWAITING_TRANSMISSION
    assert not relay.scheduler.armed

    drive(80.0)

    assert publisher.sent == [("rpm", "1")]
    assert backend.switch_requests() == ["home-conn", "car-conn"]
    assert relay.switch.state is SwitchState.IDLE
