from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from .config import RelayConfig, clean_ssid
from .gate import ConnectivityFacts
from .loop import EventLoop, TimerHandle
from .network import WifiBackend


logger = logging.getLogger("obdrelay.switch")

PERSISTENT_FAILURE_THRESHOLD = 3


class SwitchError(RuntimeError):
    """Raised when a network switch cannot be issued."""


class SwitchState(str, Enum):
    IDLE = "idle"
    SWITCHING_TO_TARGET = "switching_to_target"
    AWAITING_TRANSMISSION = "awaiting_transmission"
    SWITCHING_TO_SOURCE = "switching_to_source"


class SwitchController:
    """Temporarily move the device onto the target network to deliver buffered data.

    Transitions:

      IDLE -> SWITCHING_TO_TARGET      buffer non-empty, target in range, not on target
      IDLE -> SWITCHING_TO_SOURCE      target out of range, source in range, not on source
      SWITCHING_TO_TARGET -> AWAITING_TRANSMISSION   on target after stabilization
      SWITCHING_TO_TARGET -> IDLE      issuance failed, or still not on target
      AWAITING_TRANSMISSION -> SWITCHING_TO_SOURCE   transmission window elapsed
      SWITCHING_TO_SOURCE -> IDLE      after stabilization, whatever the outcome

    Any state other than IDLE means a switch is in flight; `evaluate` is a no-op
    until the state returns to IDLE, so at most one switch request is ever
    outstanding. Every path out of a failed request lands back on IDLE.

    All methods run on the relay loop.
    """

    def __init__(
        self,
        backend: WifiBackend,
        loop: EventLoop,
        *,
        config_fn: Callable[[], RelayConfig],
        refresh_facts: Callable[[], ConnectivityFacts],
        on_target_connected: Callable[[], None] | None = None,
    ) -> None:
        self._backend = backend
        self._loop = loop
        self._config_fn = config_fn
        self._refresh_facts = refresh_facts
        self._on_target_connected = on_target_connected
        self._state = SwitchState.IDLE
        self._handle: TimerHandle | None = None
        self.consecutive_failures = 0
        self.requests_issued = 0

    @property
    def state(self) -> SwitchState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._state is not SwitchState.IDLE

    def evaluate(self, facts: ConnectivityFacts, buffer_is_empty: bool) -> bool:
        """Start a switch if the facts call for one. Returns True if a request was issued."""

        if self.in_progress:
            return False

        config = self._config_fn()
        if not buffer_is_empty and facts.target_in_range and not facts.connected_to_target:
            logger.info("auto-switch: moving to target network to transmit buffered data")
            return self._begin(config.target_ssid, SwitchState.SWITCHING_TO_TARGET)

        if (
            config.source_ssid
            and not facts.target_in_range
            and facts.source_in_range
            and not facts.connected_to_source
        ):
            logger.info("auto-switch: moving back to source network to continue collection")
            return self._begin(config.source_ssid, SwitchState.SWITCHING_TO_SOURCE)

        return False

    def cancel(self) -> None:
        """Drop any pending switch timer. The state is left where it is."""

        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    def _begin(self, ssid: str, state: SwitchState) -> bool:
        self._state = state
        try:
            self._issue(ssid)
        except SwitchError as exc:
            self._fail(f"switch to {clean_ssid(ssid)!r} aborted: {exc}")
            return False
        except Exception:
            logger.exception("unexpected error switching networks")
            self._fail(f"switch to {clean_ssid(ssid)!r} aborted by unexpected error")
            return False

        self.requests_issued += 1
        delay_s = float(self._config_fn().switch_stabilize_delay_s)
        logger.info(
            "switch requested; waiting for connection to stabilize",
            extra={"fields": {"ssid": clean_ssid(ssid), "state": state.value, "delay_s": delay_s}},
        )
        self._handle = self._loop.call_later(delay_s, "switch-callback", self._on_stabilized)
        return True

    def _issue(self, ssid: str) -> None:
        wanted = clean_ssid(ssid)
        if not wanted:
            raise SwitchError("network name not configured")

        try:
            known = self._backend.known_networks()
            if known is None:
                raise SwitchError("configured networks unavailable")

            network_id = None
            for known_ssid, known_id in known.items():
                if clean_ssid(known_ssid) == wanted:
                    network_id = known_id
                    break
            if network_id is None:
                raise SwitchError(
                    f"network {wanted!r} not among configured networks; connect to it manually once"
                )

            self._backend.disconnect()
            if not self._backend.enable_network(network_id):
                raise SwitchError(f"failed to enable network {wanted!r}")
            if not self._backend.reconnect(network_id):
                raise SwitchError(f"failed to reconnect to network {wanted!r}")
        except PermissionError as exc:
            raise SwitchError(f"not permitted to change networks: {exc}") from exc

    def _fail(self, message: str) -> None:
        self._state = SwitchState.IDLE
        self._handle = None
        self.consecutive_failures += 1
        if self.consecutive_failures >= PERSISTENT_FAILURE_THRESHOLD:
            logger.error(
                "%s (%s consecutive switch failures)",
                message,
                self.consecutive_failures,
                extra={"fields": {"consecutive_failures": self.consecutive_failures}},
            )
        else:
            logger.warning(message)

    def _on_stabilized(self) -> None:
        self._handle = None
        state = self._state

        if state is SwitchState.SWITCHING_TO_TARGET:
            try:
                facts = self._refresh_facts()
            except Exception:
                logger.exception("connectivity check after switch failed")
                self._fail("switch to target could not be confirmed")
                return
            if not facts.connected_to_target:
                self._fail("switch to target network did not complete")
                return

            self.consecutive_failures = 0
            self._state = SwitchState.AWAITING_TRANSMISSION
            timeout_s = float(self._config_fn().await_transmission_timeout_s)
            logger.info(
                "connected to target network; transmission window open",
                extra={"fields": {"timeout_s": timeout_s}},
            )
            self._handle = self._loop.call_later(
                timeout_s,
                "switch-callback",
                self._on_transmission_window_elapsed,
            )
            if self._on_target_connected is not None:
                self._on_target_connected()
            return

        if state is SwitchState.SWITCHING_TO_SOURCE:
            self._state = SwitchState.IDLE
            try:
                facts = self._refresh_facts()
            except Exception:
                logger.exception("connectivity check after switch failed")
                return
            if facts.connected_to_source:
                self.consecutive_failures = 0
                logger.info("back on source network; resuming collection")
            else:
                logger.warning("switch back to source network may not have completed")

    def _on_transmission_window_elapsed(self) -> None:
        self._handle = None
        if self._state is not SwitchState.AWAITING_TRANSMISSION:
            return

        config = self._config_fn()
        if not config.source_ssid:
            logger.warning("transmission window elapsed but no source network configured; staying put")
            self._state = SwitchState.IDLE
            return
        self._begin(config.source_ssid, SwitchState.SWITCHING_TO_SOURCE)
