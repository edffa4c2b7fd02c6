from __future__ import annotations

import argparse
import hashlib
import logging
import math
import random
import time
from typing import Callable, Dict

from dotenv import load_dotenv

from .config import RelayConfigError, SettingsStore, load_relay_config_from_env
from .ledger import SqliteLedger
from .network import NmcliWifiBackend, WifiBackend
from .observability import configure_logging_from_env
from .orchestrator import TransmissionOrchestrator
from .publisher import HomeAssistantPublisher


logger = logging.getLogger("obdrelay.simulator")


class StaticWifiBackend:
    """Bench backend: always associated with one network, never switches."""

    def __init__(self, ssid: str | None = None, *, online: bool = True) -> None:
        self.ssid = ssid
        self.online = online

    def current_ssid(self) -> str | None:
        return self.ssid if self.online else None

    def has_internet(self) -> bool:
        return self.online

    def scan_ssids(self) -> set[str]:
        return {self.ssid} if self.ssid and self.online else set()

    def known_networks(self) -> dict[str, str] | None:
        return {self.ssid: self.ssid} if self.ssid else {}

    def disconnect(self) -> None:
        return None

    def enable_network(self, network_id: str) -> bool:
        return network_id == self.ssid

    def reconnect(self, network_id: str) -> bool:
        return network_id == self.ssid


def _rng_for(vehicle_id: str) -> random.Random:
    seed_bytes = hashlib.sha256(vehicle_id.encode("utf-8")).digest()[:8]
    return random.Random(int.from_bytes(seed_bytes, "big", signed=False))


def make_reader(vehicle_id: str = "sim-vehicle-001") -> Callable[[float], Dict[str, str]]:
    """Return a function producing one round of synthetic OBD readings at time t."""

    rng = _rng_for(vehicle_id)

    def read(t: float) -> Dict[str, str]:
        # A drive cycle: accelerate, cruise, brake, idle; five minutes per loop.
        phase = (t % 300.0) / 300.0
        speed = max(0.0, 110.0 * math.sin(math.pi * phase) + rng.uniform(-3.0, 3.0))
        rpm = 800.0 + speed * 28.0 + rng.uniform(-50.0, 50.0)
        load_pct = min(100.0, 15.0 + speed * 0.5 + rng.uniform(-4.0, 4.0))
        coolant_c = min(92.0, 20.0 + t / 10.0) + rng.uniform(-0.5, 0.5)
        intake_c = 25.0 + 5.0 * math.sin(t / 600.0) + rng.uniform(-0.3, 0.3)
        throttle_pct = max(0.0, min(100.0, 10.0 + 60.0 * math.cos(math.pi * phase) ** 2))
        fuel_level_pct = max(0.0, 80.0 - t / 600.0)
        battery_v = 13.8 + rng.uniform(-0.2, 0.2) if rpm > 0 else 12.4

        return {
            "Vehicle speed": f"{speed:.0f}",
            "Engine speed": f"{rpm:.0f}",
            "Calculated engine load value": f"{load_pct:.1f}",
            "Engine coolant temperature": f"{coolant_c:.1f}",
            "Intake air temperature": f"{intake_c:.1f}",
            "Throttle position": f"{throttle_pct:.1f}",
            "Fuel Level Input": f"{fuel_level_pct:.1f}",
            "Control module voltage": f"{battery_v:.2f}",
        }

    return read


CATALOG_CSV = "\n".join(
    f"{key};{key};;"
    for key in make_reader()(0.0)
)


def main() -> None:
    """Drive a relay with synthetic readings, optionally simulating a dropout."""

    load_dotenv()
    configure_logging_from_env()

    parser = argparse.ArgumentParser(description="OBD relay simulator (synthetic vehicle readings)")
    parser.add_argument("--sample-interval-s", type=float, default=1.0, help="Seconds between sample rounds")
    parser.add_argument(
        "--duration-s",
        type=float,
        default=0.0,
        help="Stop after N seconds (0 = run forever)",
    )
    parser.add_argument(
        "--static-network",
        default=None,
        metavar="SSID",
        help="Use an always-online bench backend associated with SSID instead of nmcli",
    )
    parser.add_argument(
        "--simulate-offline-after-s",
        type=float,
        default=0.0,
        help="Static backend only: drop connectivity after N seconds (samples stay buffered)",
    )
    parser.add_argument(
        "--resume-after-s",
        type=float,
        default=0.0,
        help="Static backend only: restore connectivity after N seconds",
    )
    parser.add_argument("--vehicle-id", default="sim-vehicle-001")
    args = parser.parse_args()

    try:
        store = SettingsStore.from_env()
        config = load_relay_config_from_env(store.load())
    except RelayConfigError as exc:
        raise SystemExit(f"[simulator] invalid relay config: {exc}") from exc

    static_backend: StaticWifiBackend | None = None
    backend: WifiBackend
    if args.static_network is not None:
        static_backend = StaticWifiBackend(args.static_network or None)
        backend = static_backend
    else:
        backend = NmcliWifiBackend(interface_name=config.wifi_interface)

    ledger = SqliteLedger(config.ledger_path) if config.ledger_path else None
    relay = TransmissionOrchestrator(
        config,
        publisher=HomeAssistantPublisher.from_config(config),
        backend=backend,
        ledger=ledger,
        settings_store=store,
    )
    read = make_reader(args.vehicle_id)

    print(
        "[simulator] vehicle=%s mode=%s backend=%s offline_after=%ss resume_after=%ss"
        % (
            args.vehicle_id,
            config.mode,
            "static" if static_backend is not None else "nmcli",
            args.simulate_offline_after_s,
            args.resume_after_s,
        )
    )

    relay.start()
    relay.on_catalog_update(CATALOG_CSV)
    start = time.time()
    try:
        while True:
            elapsed = time.time() - start
            if args.duration_s > 0 and elapsed >= args.duration_s:
                break

            if static_backend is not None:
                offline = args.simulate_offline_after_s > 0 and elapsed >= args.simulate_offline_after_s
                if args.resume_after_s > 0 and elapsed >= args.resume_after_s:
                    offline = False
                if static_backend.online == offline:
                    static_backend.online = not offline
                    logger.info("simulated connectivity change", extra={"fields": {"online": not offline}})

            for key, value in read(elapsed).items():
                relay.on_sample(key, value)
            time.sleep(max(0.05, args.sample_interval_s))
    except KeyboardInterrupt:
        pass
    finally:
        print(f"[simulator] status {relay.status()}")
        relay.stop()


if __name__ == "__main__":
    main()
