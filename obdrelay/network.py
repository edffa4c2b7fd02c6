from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Protocol

import requests


logger = logging.getLogger("obdrelay.network")


class NetworkReadError(RuntimeError):
    """Raised when the device cannot report network state (scan failed, tool missing)."""


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


CommandRunner = Callable[[list[str], float], "CommandResult | None"]
HttpProbe = Callable[[str, float], bool]

_WIFI_CONNECTION_TYPES = {"802-11-wireless", "wifi"}
_PERMISSION_MARKERS = ("not authorized", "insufficient privileges", "permission denied")


class WifiBackend(Protocol):
    """Device network operations used by the monitor and the switch controller."""

    def current_ssid(self) -> str | None: ...

    def has_internet(self) -> bool: ...

    def scan_ssids(self) -> set[str]: ...

    def known_networks(self) -> dict[str, str] | None: ...

    def disconnect(self) -> None: ...

    def enable_network(self, network_id: str) -> bool: ...

    def reconnect(self, network_id: str) -> bool: ...


class NmcliWifiBackend:
    """WiFi backend driven by NetworkManager's `nmcli` in terse mode."""

    def __init__(
        self,
        *,
        interface_name: str | None = None,
        command_timeout_s: float = 15.0,
        connectivity_url: str = "https://www.gstatic.com/generate_204",
        probe_timeout_s: float = 2.5,
        command_runner: CommandRunner | None = None,
        http_probe: HttpProbe | None = None,
    ) -> None:
        self._interface_name = interface_name
        self.command_timeout_s = float(command_timeout_s)
        self.connectivity_url = connectivity_url
        self.probe_timeout_s = float(probe_timeout_s)
        self._command_runner = command_runner or _run_command
        self._http_probe = http_probe or _default_http_probe
        self._nmcli_available: bool | None = None

    def current_ssid(self) -> str | None:
        result = self._nmcli(["-t", "-f", "ACTIVE,SSID", "device", "wifi", "list", "--rescan", "no"])
        if result is None or not result.ok:
            return None
        for line in result.stdout.splitlines():
            fields = split_terse(line)
            if len(fields) >= 2 and fields[0] == "yes" and fields[1]:
                return fields[1]
        return None

    def has_internet(self) -> bool:
        result = self._nmcli(["networking", "connectivity", "check"])
        if result is not None and result.ok:
            state = result.stdout.strip().lower()
            if state == "full":
                return True
            if state in {"none", "limited", "portal"}:
                return False
        # NetworkManager could not tell; ask the network directly.
        try:
            return bool(self._http_probe(self.connectivity_url, self.probe_timeout_s))
        except Exception:
            return False

    def scan_ssids(self) -> set[str]:
        args = ["-t", "-f", "SSID", "device", "wifi", "list", "--rescan", "yes"]
        if self._interface_name:
            args += ["ifname", self._interface_name]
        result = self._nmcli(args)
        if result is None:
            raise NetworkReadError("nmcli unavailable; cannot scan for networks")
        self._raise_for_permission(result)
        if not result.ok:
            raise NetworkReadError(f"wifi scan failed: {result.stderr.strip()[:200]}")

        ssids: set[str] = set()
        for line in result.stdout.splitlines():
            fields = split_terse(line)
            if fields and fields[0]:
                ssids.add(fields[0])
        return ssids

    def known_networks(self) -> dict[str, str] | None:
        result = self._nmcli(["-t", "-f", "NAME,TYPE", "connection", "show"])
        if result is None:
            return None
        self._raise_for_permission(result)
        if not result.ok:
            return None

        networks: dict[str, str] = {}
        for line in result.stdout.splitlines():
            fields = split_terse(line)
            if len(fields) < 2 or fields[1] not in _WIFI_CONNECTION_TYPES:
                continue
            name = fields[0]
            ssid = self._connection_ssid(name) or name
            networks.setdefault(ssid, name)
        return networks

    def disconnect(self) -> None:
        interface_name = self._resolve_interface_name()
        if not interface_name:
            return
        result = self._nmcli(["device", "disconnect", interface_name])
        if result is not None:
            self._raise_for_permission(result)

    def enable_network(self, network_id: str) -> bool:
        result = self._nmcli(["connection", "modify", "id", network_id, "connection.autoconnect", "yes"])
        if result is None:
            return False
        self._raise_for_permission(result)
        return result.ok

    def reconnect(self, network_id: str) -> bool:
        args = ["connection", "up", "id", network_id]
        interface_name = self._resolve_interface_name()
        if interface_name:
            args += ["ifname", interface_name]
        result = self._nmcli(args)
        if result is None:
            return False
        self._raise_for_permission(result)
        return result.ok

    def _connection_ssid(self, name: str) -> str | None:
        result = self._nmcli(["-g", "802-11-wireless.ssid", "connection", "show", "id", name])
        if result is None or not result.ok:
            return None
        ssid = result.stdout.strip()
        return ssid or None

    def _resolve_interface_name(self) -> str | None:
        if self._interface_name:
            return self._interface_name
        result = self._nmcli(["-t", "-f", "DEVICE,TYPE", "device"])
        if result is None or not result.ok:
            return None
        for line in result.stdout.splitlines():
            fields = split_terse(line)
            if len(fields) >= 2 and fields[1] == "wifi":
                self._interface_name = fields[0]
                return fields[0]
        return None

    def _is_nmcli_available(self) -> bool:
        if self._nmcli_available is None:
            self._nmcli_available = shutil.which("nmcli") is not None
        return bool(self._nmcli_available)

    def _nmcli(self, args: list[str]) -> CommandResult | None:
        if not self._is_nmcli_available():
            return None
        return self._command_runner(["nmcli", *args], self.command_timeout_s)

    @staticmethod
    def _raise_for_permission(result: CommandResult) -> None:
        if result.ok:
            return
        text = f"{result.stdout}\n{result.stderr}".lower()
        if any(marker in text for marker in _PERMISSION_MARKERS):
            raise PermissionError(result.stderr.strip()[:200] or "not authorized")


def split_terse(line: str) -> list[str]:
    """Split one line of `nmcli -t` output on unescaped colons."""

    fields: list[str] = []
    current: list[str] = []
    escaped = False
    for ch in line.rstrip("\n"):
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == ":":
            fields.append("".join(current))
            current = []
        else:
            current.append(ch)
    fields.append("".join(current))
    return fields


def _run_command(command: list[str], timeout_s: float) -> CommandResult | None:
    try:
        proc = subprocess.run(
            command,
            check=False,
            capture_output=True,
            text=True,
            timeout=max(0.1, float(timeout_s)),
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
        logger.debug("command failed: %s (%r)", command[:3], exc)
        return None
    return CommandResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def _default_http_probe(url: str, timeout_s: float) -> bool:
    try:
        resp = requests.head(url, timeout=timeout_s, allow_redirects=True)
        if resp.status_code == 405:
            resp = requests.get(url, timeout=timeout_s, allow_redirects=True, stream=True)
        return 200 <= resp.status_code < 500
    except requests.RequestException:
        return False
