from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable, Mapping

from .gate import TransmissionMode


logger = logging.getLogger("obdrelay.config")

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}

DEFAULT_ENTITY_PREFIX = "sensor.obd_"
DEFAULT_SOURCE_NAME = "obd-relay"


class RelayConfigError(ValueError):
    """Raised when relay env/settings configuration is invalid."""


class ConfigurationError(RuntimeError):
    """Raised when the relay is missing what it needs to publish."""


def clean_ssid(raw: str | None) -> str:
    return (raw or "").replace('"', "").strip()


@dataclass(frozen=True)
class RelayConfig:
    base_url: str = ""
    token: str = ""
    entity_prefix: str = DEFAULT_ENTITY_PREFIX
    source_name: str = DEFAULT_SOURCE_NAME
    mode: str = TransmissionMode.REALTIME.value
    target_ssid: str = ""
    source_ssid: str = ""
    auto_switch: bool = False
    flush_interval_s: float = 5.0
    monitor_period_s: float = 30.0
    switch_stabilize_delay_s: float = 5.0
    await_transmission_timeout_s: float = 10.0
    selected_keys: frozenset[str] = field(default_factory=frozenset)
    known_keys: frozenset[str] = field(default_factory=frozenset)
    request_timeout_s: float = 10.0
    ledger_path: str | None = None
    ledger_retention_s: float = 7 * 24 * 3600.0
    ledger_purge_interval_s: float = 3600.0
    wifi_interface: str | None = None

    @property
    def transmission_mode(self) -> TransmissionMode | None:
        return TransmissionMode.parse(self.mode)

    def missing_for_publish(self) -> list[str]:
        missing: list[str] = []
        if not self.base_url:
            missing.append("base_url")
        if not self.token:
            missing.append("token")
        mode = self.transmission_mode
        if mode is not None and mode.requires_target and not self.target_ssid:
            missing.append("target_ssid")
        return missing

    def ensure_publishable(self) -> None:
        missing = self.missing_for_publish()
        if missing:
            raise ConfigurationError(
                f"relay not configured for mode={self.mode}: missing {', '.join(missing)}"
            )


def with_known_keys(config: RelayConfig, keys: Iterable[str]) -> RelayConfig:
    merged = frozenset(config.known_keys) | frozenset(k for k in keys if k)
    if merged == config.known_keys:
        return config
    return replace(config, known_keys=merged)


class SettingsStore:
    """JSON settings document written by the settings UI and read by the relay.

    Keys mirror the relay's configuration surface (mode, target_ssid,
    source_ssid, auto_switch, update_interval_seconds, selected_keys,
    known_keys, ha_url, ha_token, entity_prefix).
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def from_env(cls) -> SettingsStore:
        raw = os.getenv("RELAY_SETTINGS_PATH", "./obd_relay_settings.json").strip()
        if not raw:
            raise RelayConfigError("RELAY_SETTINGS_PATH must be non-empty")
        return cls(Path(raw))

    def load(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RelayConfigError(f"settings file {self.path} is not valid JSON") from exc
        if not isinstance(data, dict):
            raise RelayConfigError(f"settings file {self.path} must contain a JSON object")
        return data

    def save(self, settings: Mapping[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(dict(settings), f, sort_keys=True, indent=2)
            os.replace(tmp_name, self.path)
        except Exception:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def merge_known_keys(self, keys: Iterable[str]) -> frozenset[str]:
        settings = self.load()
        known = set(_as_str_set(settings.get("known_keys"), name="known_keys"))
        incoming = {k for k in keys if k}
        if incoming <= known:
            return frozenset(known)
        known |= incoming
        settings["known_keys"] = sorted(known)
        self.save(settings)
        return frozenset(known)


def load_relay_config_from_env(settings: Mapping[str, Any] | None = None) -> RelayConfig:
    settings = settings or {}

    base_url = _setting_str(settings, "ha_url", os.getenv("HA_URL", "")).rstrip("/")
    token = _setting_str(settings, "ha_token", os.getenv("HA_TOKEN", ""))
    entity_prefix = _setting_str(
        settings,
        "entity_prefix",
        os.getenv("HA_ENTITY_PREFIX", DEFAULT_ENTITY_PREFIX),
    )
    source_name = os.getenv("RELAY_SOURCE_NAME", DEFAULT_SOURCE_NAME).strip() or DEFAULT_SOURCE_NAME

    mode = _setting_str(settings, "mode", os.getenv("RELAY_MODE", TransmissionMode.REALTIME.value)).lower()
    if TransmissionMode.parse(mode) is None:
        logger.warning("unknown transmission mode %r; gating on internet connectivity only", mode)

    target_ssid = clean_ssid(_setting_str(settings, "target_ssid", os.getenv("RELAY_TARGET_SSID", "")))
    source_ssid = clean_ssid(_setting_str(settings, "source_ssid", os.getenv("RELAY_SOURCE_SSID", "")))

    if "auto_switch" in settings:
        auto_switch = _coerce_bool(settings["auto_switch"], name="auto_switch")
    else:
        auto_switch = _parse_bool_env("RELAY_AUTO_SWITCH", default=False)
    if auto_switch and (not target_ssid or not source_ssid):
        logger.warning("auto-switch enabled but target/source SSIDs are not both configured")

    if "update_interval_seconds" in settings:
        flush_interval_s = float(
            _coerce_positive_int(settings["update_interval_seconds"], name="update_interval_seconds")
        )
    else:
        flush_interval_s = _parse_positive_float_env("RELAY_UPDATE_INTERVAL_S", default=5.0)

    if "selected_keys" in settings:
        selected_keys = frozenset(_as_str_set(settings["selected_keys"], name="selected_keys"))
    else:
        selected_keys = frozenset(_parse_list_env("RELAY_SELECTED_KEYS"))
    known_keys = frozenset(_as_str_set(settings.get("known_keys"), name="known_keys"))

    ledger_path = os.getenv("LEDGER_DB_PATH", "./obd_relay_ledger.sqlite").strip() or None
    wifi_interface = os.getenv("RELAY_WIFI_INTERFACE", "").strip() or None

    return RelayConfig(
        base_url=base_url,
        token=token,
        entity_prefix=entity_prefix,
        source_name=source_name,
        mode=mode,
        target_ssid=target_ssid,
        source_ssid=source_ssid,
        auto_switch=auto_switch,
        flush_interval_s=flush_interval_s,
        monitor_period_s=_parse_positive_float_env("RELAY_MONITOR_PERIOD_S", default=30.0),
        switch_stabilize_delay_s=_parse_positive_float_env("RELAY_SWITCH_DELAY_S", default=5.0),
        await_transmission_timeout_s=_parse_positive_float_env("RELAY_TRANSMISSION_TIMEOUT_S", default=10.0),
        selected_keys=selected_keys,
        known_keys=known_keys,
        request_timeout_s=_parse_positive_float_env("HA_REQUEST_TIMEOUT_S", default=10.0),
        ledger_path=ledger_path,
        ledger_retention_s=_parse_positive_float_env("LEDGER_RETENTION_S", default=7 * 24 * 3600.0),
        ledger_purge_interval_s=_parse_positive_float_env("LEDGER_PURGE_INTERVAL_S", default=3600.0),
        wifi_interface=wifi_interface,
    )


def _setting_str(settings: Mapping[str, Any], name: str, default: str) -> str:
    value = settings.get(name)
    if value is None:
        return default.strip()
    if not isinstance(value, str):
        raise RelayConfigError(f"{name} must be a string")
    return value.strip()


def _as_str_set(value: Any, *, name: str) -> set[str]:
    if value is None:
        return set()
    if isinstance(value, str):
        return {s.strip() for s in value.split(",") if s.strip()}
    if isinstance(value, (list, tuple, set, frozenset)):
        out: set[str] = set()
        for item in value:
            if not isinstance(item, str):
                raise RelayConfigError(f"{name} must contain only strings")
            if item.strip():
                out.add(item.strip())
        return out
    raise RelayConfigError(f"{name} must be a list of strings")


def _coerce_bool(value: Any, *, name: str) -> bool:
    if isinstance(value, bool):
        return value
    norm = str(value).strip().lower()
    if norm in _TRUE_VALUES:
        return True
    if norm in _FALSE_VALUES:
        return False
    raise RelayConfigError(f"{name} must be one of: {sorted(_TRUE_VALUES | _FALSE_VALUES)}")


def _coerce_positive_int(value: Any, *, name: str) -> int:
    if isinstance(value, bool):
        raise RelayConfigError(f"{name} must be an integer")
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise RelayConfigError(f"{name} must be an integer") from exc
    if parsed <= 0:
        raise RelayConfigError(f"{name} must be > 0")
    return parsed


def _parse_bool_env(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return _coerce_bool(raw, name=name)


def _parse_positive_float_env(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return float(default)
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise RelayConfigError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise RelayConfigError(f"{name} must be > 0")
    return parsed


def _parse_list_env(name: str) -> list[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return []
    return [s.strip() for s in raw.split(",") if s.strip()]
