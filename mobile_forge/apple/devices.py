"""Simulator and device control through ``xcrun simctl`` / ``xcrun devicectl``."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from ..config import Platform
from ..device import ConnectionState, Device, DeviceKind
from ..errors import InstallFailed, LaunchFailed, LogAttachFailed, SessionError
from ..utils import format_command, run_command

logger = logging.getLogger(__name__)

_SIMULATOR_STATES = {
    "Booted": ConnectionState.CONNECTED,
    "Shutdown": ConnectionState.OFFLINE,
    "Shutting Down": ConnectionState.OFFLINE,
    "Booting": ConnectionState.UNKNOWN,
}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_simulators(payload: dict[str, Any]) -> list[Device]:
    """Parse ``simctl list devices --json``; only available iOS runtimes count."""
    devices: list[Device] = []
    for runtime, entries in sorted(payload.get("devices", {}).items()):
        if "iOS" not in runtime:
            continue
        os_version = runtime.rsplit(".", 1)[-1].replace("iOS-", "iOS ").replace("-", ".")
        for entry in entries:
            if not entry.get("isAvailable", True) or not entry.get("udid"):
                continue
            devices.append(
                Device(
                    id=entry["udid"],
                    platform=Platform.APPLE,
                    kind=DeviceKind.EMULATOR,
                    connection_state=_SIMULATOR_STATES.get(entry.get("state", ""), ConnectionState.UNKNOWN),
                    name=entry.get("name", ""),
                    model=os_version,
                )
            )
    return devices


def parse_physical_devices(payload: dict[str, Any]) -> list[Device]:
    """Parse the ``devicectl list devices --json-output`` document."""
    devices: list[Device] = []
    for entry in payload.get("result", {}).get("devices", []):
        hardware = entry.get("hardwareProperties", {})
        connection = entry.get("connectionProperties", {})
        if hardware.get("reality") == "virtual":
            continue
        udid = hardware.get("udid") or entry.get("identifier", "")
        if not udid:
            continue
        if connection.get("pairingState", "paired") != "paired":
            state = ConnectionState.UNAUTHORIZED
        elif connection.get("transportType") in ("wired", "localNetwork"):
            state = ConnectionState.CONNECTED
        else:
            state = ConnectionState.OFFLINE
        devices.append(
            Device(
                id=udid,
                platform=Platform.APPLE,
                kind=DeviceKind.PHYSICAL,
                connection_state=state,
                name=entry.get("deviceProperties", {}).get("name", ""),
                model=hardware.get("marketingName") or hardware.get("productType", ""),
            )
        )
    return devices


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


async def list_simulators(xcrun: Path, timeout: float) -> list[Device]:
    """Raises SessionError when ``simctl`` fails or prints something that is not JSON."""
    cmd = [str(xcrun), "simctl", "list", "devices", "--json"]
    try:
        rc, stdout, stderr = await run_command(cmd, timeout=timeout)
    except OSError as exc:
        raise SessionError(f"Failed to run simctl: {exc}", platform=Platform.APPLE, command=format_command(cmd)) from exc
    if rc != 0:
        raise SessionError(
            "simctl failed to list simulators",
            platform=Platform.APPLE,
            command=format_command(cmd),
            exit_code=rc,
            output=stderr or stdout,
        )
    try:
        return parse_simulators(json.loads(stdout))
    except json.JSONDecodeError as exc:
        raise SessionError(
            f"simctl printed invalid JSON: {exc}",
            platform=Platform.APPLE,
            command=format_command(cmd),
            output=stdout,
        ) from exc


async def list_physical_devices(xcrun: Path, timeout: float) -> list[Device]:
    """Physical devices via ``devicectl``.

    ``devicectl`` ships with Xcode 15+; on older Xcodes (or any failure) the
    list is empty rather than an error, since simulators still work.
    """
    fd, tmp_name = tempfile.mkstemp(prefix="mobile-forge-devicectl-", suffix=".json")
    os.close(fd)
    output = Path(tmp_name)
    cmd = [str(xcrun), "devicectl", "list", "devices", "--json-output", str(output)]
    try:
        try:
            rc, stdout, stderr = await run_command(cmd, timeout=timeout)
        except OSError as exc:
            logger.debug("devicectl unavailable: %s", exc)
            return []
        if rc != 0:
            logger.debug("devicectl failed (%s): %s", rc, stderr or stdout)
            return []
        try:
            payload = json.loads(await asyncio.to_thread(output.read_text, encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.debug("unreadable devicectl output: %s", exc)
            return []
        return parse_physical_devices(payload)
    finally:
        output.unlink(missing_ok=True)


async def list_devices(xcrun: Path, timeout: float) -> list[Device]:
    simulators = await list_simulators(xcrun, timeout)
    physical = await list_physical_devices(xcrun, timeout)
    return sorted(physical + simulators, key=lambda d: (d.kind.value, d.name, d.id))


# ---------------------------------------------------------------------------
# Install / launch
# ---------------------------------------------------------------------------


def install_command(xcrun: Path, device: Device, app: Path) -> list[str]:
    if device.kind is DeviceKind.EMULATOR:
        return [str(xcrun), "simctl", "install", device.id, str(app)]
    return [str(xcrun), "devicectl", "device", "install", "app", "--device", device.id, str(app)]


def launch_command(xcrun: Path, device: Device, bundle_id: str) -> list[str]:
    if device.kind is DeviceKind.EMULATOR:
        return [str(xcrun), "simctl", "launch", device.id, bundle_id]
    return [str(xcrun), "devicectl", "device", "process", "launch", "--device", device.id, bundle_id]


async def install(xcrun: Path, device: Device, app: Path, timeout: float) -> None:
    cmd = install_command(xcrun, device, app)
    try:
        rc, stdout, stderr = await run_command(cmd, timeout=timeout)
    except OSError as exc:
        raise InstallFailed(f"Failed to run xcrun: {exc}", platform=Platform.APPLE, command=format_command(cmd)) from exc
    if rc != 0:
        raise InstallFailed(
            f"Failed to install {app.name} on {device.describe()}",
            platform=Platform.APPLE,
            path=app,
            command=format_command(cmd),
            exit_code=rc,
            output="\n".join(s for s in (stdout, stderr) if s),
        )


async def launch(xcrun: Path, device: Device, bundle_id: str, timeout: float) -> None:
    cmd = launch_command(xcrun, device, bundle_id)
    try:
        rc, stdout, stderr = await run_command(cmd, timeout=timeout)
    except OSError as exc:
        raise LaunchFailed(f"Failed to run xcrun: {exc}", platform=Platform.APPLE, command=format_command(cmd)) from exc
    if rc != 0:
        raise LaunchFailed(
            f"Failed to launch {bundle_id} on {device.describe()}",
            platform=Platform.APPLE,
            command=format_command(cmd),
            exit_code=rc,
            output="\n".join(s for s in (stdout, stderr) if s),
        )


def log_command(xcrun: Path, device: Device, process_name: str, idevicesyslog: Path | None = None) -> list[str]:
    """Unified log stream for simulators, ``idevicesyslog`` for devices.

    Raises:
        LogAttachFailed: For a physical device when ``idevicesyslog`` is missing.
    """
    if device.kind is DeviceKind.EMULATOR:
        return [
            str(xcrun), "simctl", "spawn", device.id,
            "log", "stream", "--style", "ndjson",
            "--predicate", f'process == "{process_name}"',
        ]
    if idevicesyslog is None:
        raise LogAttachFailed(
            "idevicesyslog is required to follow logs on a physical device "
            "(brew install libimobiledevice)",
            platform=Platform.APPLE,
        )
    return [str(idevicesyslog), "-u", device.id, "-p", process_name]
