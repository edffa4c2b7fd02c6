from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from importlib import metadata
from pathlib import Path
from typing import IO

from dotenv import load_dotenv

from .config import RelayConfigError, SettingsStore, load_relay_config_from_env
from .ledger import SqliteLedger
from .network import NmcliWifiBackend
from .observability import configure_logging_from_env
from .orchestrator import TransmissionOrchestrator
from .publisher import HomeAssistantPublisher


logger = logging.getLogger("obdrelay.agent")


def _version() -> str:
    try:
        return metadata.version("obd-relay")
    except metadata.PackageNotFoundError:
        return "dev"


def handle_line(relay: TransmissionOrchestrator, line: str) -> bool:
    """Feed one JSON line from the data source into the relay.

    Accepted shapes:
      {"key": "Vehicle speed", "value": "88"}
      {"catalog": "key;description;value;units\\n..."}
      {"known_keys": ["Vehicle speed", "Engine speed"]}

    Returns False for blank or unrecognized lines.
    """

    text = line.strip()
    if not text:
        return False
    try:
        msg = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("ignoring malformed input line: %s", text[:120])
        return False
    if not isinstance(msg, dict):
        logger.warning("ignoring non-object input line")
        return False

    if "catalog" in msg and isinstance(msg["catalog"], str):
        relay.on_catalog_update(msg["catalog"])
        return True
    if "known_keys" in msg and isinstance(msg["known_keys"], list):
        relay.on_catalog_update([str(k) for k in msg["known_keys"]])
        return True
    if "key" in msg:
        value = msg.get("value")
        return relay.on_sample(
            str(msg["key"]) if msg["key"] is not None else None,
            None if value is None else str(value),
        )

    logger.warning("ignoring unrecognized input line")
    return False


def _read_input(relay: TransmissionOrchestrator, stream: IO[str], done: threading.Event) -> None:
    try:
        for line in stream:
            if done.is_set():
                return
            handle_line(relay, line)
    finally:
        done.set()


def main() -> None:
    # Load repo-level .env (if present), then package-local overrides.
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")
    configure_logging_from_env()

    try:
        store = SettingsStore.from_env()
        config = load_relay_config_from_env(store.load())
    except RelayConfigError as exc:
        raise SystemExit(f"[obd-relay] invalid relay config: {exc}") from exc

    ledger = SqliteLedger(config.ledger_path) if config.ledger_path else None
    relay = TransmissionOrchestrator(
        config,
        publisher=HomeAssistantPublisher.from_config(config),
        backend=NmcliWifiBackend(interface_name=config.wifi_interface),
        ledger=ledger,
        settings_store=store,
    )

    print(
        "[obd-relay] version=%s ha=%s mode=%s auto_switch=%s target=%s source=%s ledger=%s settings=%s"
        % (
            _version(),
            config.base_url or "(unset)",
            config.mode,
            config.auto_switch,
            config.target_ssid or "(unset)",
            config.source_ssid or "(unset)",
            config.ledger_path or "disabled",
            store.path,
        )
    )

    done = threading.Event()

    def _reload(signum, frame) -> None:
        try:
            relay.apply_config(load_relay_config_from_env(store.load()))
        except RelayConfigError as exc:
            logger.error("settings reload rejected: %s", exc)
            return
        logger.info("settings reload requested")

    def _stop(signum, frame) -> None:
        logger.info("stop requested", extra={"fields": {"signal": signum}})
        done.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _reload)

    relay.start()
    reader = threading.Thread(
        target=_read_input,
        args=(relay, sys.stdin, done),
        name="obdrelay-input",
        daemon=True,
    )
    reader.start()
    try:
        while not done.wait(timeout=1.0):
            pass
    finally:
        relay.stop()


if __name__ == "__main__":
    main()
