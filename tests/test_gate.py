from __future__ import annotations

import pytest

from obdrelay.gate import ConnectivityFacts, TransmissionMode, accept_key, should_send


def test_realtime_needs_only_internet() -> None:
    assert should_send(TransmissionMode.REALTIME, ConnectivityFacts(has_internet=True)) is True
    assert should_send(TransmissionMode.REALTIME, ConnectivityFacts(has_internet=False)) is False


def test_ssid_connected_requires_target_association_and_internet() -> None:
    ok = ConnectivityFacts(connected_to_target=True, has_internet=True)
    assert should_send(TransmissionMode.SSID_CONNECTED, ok) is True
    assert should_send(TransmissionMode.SSID_CONNECTED, ConnectivityFacts(has_internet=True)) is False
    assert should_send(TransmissionMode.SSID_CONNECTED, ConnectivityFacts(connected_to_target=True)) is False


def test_in_range_alone_never_allows_send() -> None:
    facts = ConnectivityFacts(connected_to_target=False, target_in_range=True, has_internet=True)
    assert should_send(TransmissionMode.SSID_IN_RANGE, facts) is False

    connected = ConnectivityFacts(connected_to_target=True, target_in_range=True, has_internet=True)
    assert should_send(TransmissionMode.SSID_IN_RANGE, connected) is True


@pytest.mark.parametrize("mode", ["", "bogus", None])
def test_unknown_mode_falls_back_to_internet(mode) -> None:
    assert should_send(mode, ConnectivityFacts(has_internet=True)) is True
    assert should_send(mode, ConnectivityFacts(has_internet=False)) is False


def test_mode_parse_accepts_strings_case_insensitively() -> None:
    assert TransmissionMode.parse(" SSID_In_Range ") is TransmissionMode.SSID_IN_RANGE
    assert TransmissionMode.parse("nope") is None
    assert TransmissionMode.REALTIME.requires_target is False
    assert TransmissionMode.SSID_CONNECTED.requires_target is True


def test_selection_filter() -> None:
    assert accept_key("rpm", frozenset()) is True
    assert accept_key("rpm", frozenset({"speed"})) is False
    assert accept_key("speed", frozenset({"speed"})) is True
