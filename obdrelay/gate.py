from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet


class TransmissionMode(str, Enum):
    REALTIME = "realtime"
    SSID_CONNECTED = "ssid_connected"
    SSID_IN_RANGE = "ssid_in_range"

    @classmethod
    def parse(cls, raw: "str | TransmissionMode | None") -> "TransmissionMode | None":
        """Return the matching mode, or None for an unknown/empty value."""

        if isinstance(raw, TransmissionMode):
            return raw
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            return None

    @property
    def requires_target(self) -> bool:
        return self is not TransmissionMode.REALTIME


@dataclass(frozen=True)
class ConnectivityFacts:
    """One monitor tick's view of the network. Replaced whole, never patched."""

    connected_to_target: bool = False
    target_in_range: bool = False
    source_in_range: bool = False
    has_internet: bool = False
    connected_to_source: bool = False
    current_ssid: str | None = None


def should_send(mode: "TransmissionMode | str | None", facts: ConnectivityFacts) -> bool:
    """Decide whether a flush may go out now.

    Being in range of the target is never enough on its own: ssid_in_range
    still requires an actual association. Range only feeds auto-switching.
    """

    parsed = TransmissionMode.parse(mode)
    if parsed is TransmissionMode.REALTIME:
        return facts.has_internet
    if parsed in (TransmissionMode.SSID_CONNECTED, TransmissionMode.SSID_IN_RANGE):
        return facts.connected_to_target and facts.has_internet
    return facts.has_internet


def accept_key(key: str, selected_keys: AbstractSet[str]) -> bool:
    """Selection filter: an empty selection publishes everything."""

    return not selected_keys or key in selected_keys
