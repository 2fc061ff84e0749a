"""``adb`` device discovery and app control."""

from __future__ import annotations

import logging
from pathlib import Path

from ..config import Platform
from ..device import ConnectionState, Device, DeviceKind
from ..errors import InstallFailed, LaunchFailed, SessionError
from ..utils import format_command, run_command

logger = logging.getLogger(__name__)

_STATES = {
    "device": ConnectionState.CONNECTED,
    "offline": ConnectionState.OFFLINE,
    "unauthorized": ConnectionState.UNAUTHORIZED,
}


def adb_command(adb: Path, serial: str, *args: str) -> list[str]:
    return [str(adb), "-s", serial, *args]


def parse_devices(output: str) -> list[Device]:
    """Parse ``adb devices -l`` output.

    Example line::

        emulator-5554  device product:sdk_gphone64 model:sdk_gphone64_arm64 device:emu64a transport_id:1
    """
    devices: list[Device] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line or line.startswith(("List of devices", "*")):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        serial, state = parts[0], parts[1]
        props = dict(p.split(":", 1) for p in parts[2:] if ":" in p)
        model = props.get("model", "").replace("_", " ")
        product = props.get("product", "")
        emulator = serial.startswith("emulator-") or product.startswith("sdk_")
        devices.append(
            Device(
                id=serial,
                platform=Platform.ANDROID,
                kind=DeviceKind.EMULATOR if emulator else DeviceKind.PHYSICAL,
                connection_state=_STATES.get(state, ConnectionState.UNKNOWN),
                name=model or serial,
                model=props.get("device", ""),
            )
        )
    return sorted(devices, key=lambda d: d.id)


async def list_devices(adb: Path, timeout: float) -> list[Device]:
    """Ask adb for attached devices.

    Raises:
        SessionError: If ``adb devices`` fails.
    """
    cmd = [str(adb), "devices", "-l"]
    try:
        rc, stdout, stderr = await run_command(cmd, timeout=timeout)
    except OSError as exc:
        raise SessionError(f"Failed to run adb: {exc}", platform=Platform.ANDROID, command=format_command(cmd)) from exc
    if rc != 0:
        raise SessionError(
            "adb failed to list devices",
            platform=Platform.ANDROID,
            command=format_command(cmd),
            exit_code=rc,
            output=stderr or stdout,
        )
    return parse_devices(stdout)


async def install(adb: Path, device: Device, apk: Path, timeout: float) -> None:
    """``adb install -r``; adb can exit 0 while printing ``Failure [...]``."""
    cmd = adb_command(adb, device.id, "install", "-r", str(apk))
    try:
        rc, stdout, stderr = await run_command(cmd, timeout=timeout)
    except OSError as exc:
        raise InstallFailed(f"Failed to run adb: {exc}", platform=Platform.ANDROID, command=format_command(cmd)) from exc
    output = "\n".join(s for s in (stdout, stderr) if s)
    if rc != 0 or "Failure" in output:
        raise InstallFailed(
            f"Failed to install {apk.name} on {device.describe()}",
            platform=Platform.ANDROID,
            path=apk,
            command=format_command(cmd),
            exit_code=rc,
            output=output,
        )


async def launch(adb: Path, device: Device, component: str, timeout: float) -> None:
    """``am start -W -n <component>``; ``am`` reports most failures as ``Error:`` lines.

    ``-W`` returns once the activity is up, so the app process exists when
    the log command looks up its pid.
    """
    cmd = adb_command(adb, device.id, "shell", "am", "start", "-W", "-n", component)
    try:
        rc, stdout, stderr = await run_command(cmd, timeout=timeout)
    except OSError as exc:
        raise LaunchFailed(f"Failed to run adb: {exc}", platform=Platform.ANDROID, command=format_command(cmd)) from exc
    output = "\n".join(s for s in (stdout, stderr) if s)
    if rc != 0 or "Error:" in output:
        raise LaunchFailed(
            f"Failed to start {component} on {device.describe()}",
            platform=Platform.ANDROID,
            command=format_command(cmd),
            exit_code=rc,
            output=output,
        )


async def wake_screen(adb: Path, device: Device, timeout: float) -> bool:
    """Send ``KEYCODE_WAKEUP``.

    Failure is logged and reported as ``False``; the app keeps running with
    the screen off.
    """
    cmd = adb_command(adb, device.id, "shell", "input", "keyevent", "KEYCODE_WAKEUP")
    try:
        rc, _, stderr = await run_command(cmd, timeout=timeout)
    except OSError as exc:
        logger.warning("Failed to wake the screen of %s: %s", device.id, exc)
        return False
    if rc != 0:
        logger.warning("Failed to wake the screen of %s: %s", device.id, stderr)
        return False
    return True


def logcat_command(adb: Path, device: Device, package: str) -> list[str]:
    """Follow *package*'s log from its most recent line.

    The pid is resolved by the device shell; when the app is not running
    ``logcat --pid=`` exits with an error right away.
    """
    return adb_command(
        adb, device.id, "shell",
        f"logcat -v threadtime -T 1 --pid=$(pidof -s {package})",
    )
