"""Device Session Manager.

Selects a target device for a succeeded build and sequences install ->
launch -> log attach on it.  Steps run one after another; a failing step
aborts the rest, and an install that already happened is not rolled back.
Devices are discovered fresh on every request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .build import BuildSession
from .config import AppConfig, ForgeSettings, Platform
from .errors import AmbiguousDevice, BuildStateError, DeviceNotFound, LogAttachFailed
from .logs import LogFilter, LogStream
from .toolchain import ToolchainInfo
from .utils import format_command, spawn, terminate_process

logger = logging.getLogger(__name__)


class DeviceKind(str, Enum):
    PHYSICAL = "physical"
    EMULATOR = "emulator"


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    OFFLINE = "offline"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Device:
    """A physical device or emulator as reported by the platform tools."""

    id: str
    platform: Platform
    kind: DeviceKind
    connection_state: ConnectionState = ConnectionState.UNKNOWN
    name: str = ""
    model: str = ""

    @property
    def connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    def describe(self) -> str:
        label = self.name or self.model or self.id
        return f"{label} ({self.id}, {self.kind.value}, {self.connection_state.value})"


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceSelector:
    """How to pick the target device.

    Args:
        device_id: When set, only a device with exactly this id matches.
        kind: Required device kind; ``None`` accepts both.
    """

    device_id: Optional[str] = None
    kind: Optional[DeviceKind] = None

    def candidates(self, devices: list[Device], platform: Platform) -> list[Device]:
        """Filter *devices* down to the ones this selector accepts."""
        matching = [d for d in devices if d.platform is platform]
        if self.device_id is not None:
            return [d for d in matching if d.id == self.device_id]
        return [
            d for d in matching
            if d.connected and (self.kind is None or d.kind is self.kind)
        ]


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class SessionStep(str, Enum):
    SELECTED = "selected"
    INSTALLED = "installed"
    LAUNCHED = "launched"
    ATTACHED = "attached"


@dataclass
class DeviceSession:
    """One build running on one device."""

    device: Device
    build: BuildSession
    app_id: str
    steps: list[SessionStep] = field(default_factory=list)
    log_stream: Optional[LogStream] = None

    @property
    def attached(self) -> bool:
        return self.log_stream is not None and self.log_stream.attached

    async def close(self) -> None:
        """Detach the log stream, killing the log process."""
        if self.log_stream is not None:
            await self.log_stream.detach()


class DeviceSessionManager:
    """Discovers devices and runs build artifacts on them.

    Args:
        settings: Provides the device, step, and log-attach timeouts plus the
            log buffer size.
    """

    def __init__(self, settings: Optional[ForgeSettings] = None) -> None:
        self.settings = settings or ForgeSettings()

    async def discover(self, platform: Platform, toolchain: ToolchainInfo) -> list[Device]:
        """List the devices the platform tools currently report."""
        from .platform import get_support

        devices = await get_support(platform).list_devices(toolchain, self.settings)
        logger.debug("discovered %d %s device(s)", len(devices), platform.value)
        return devices

    async def select(
        self,
        platform: Platform,
        selector: DeviceSelector,
        toolchain: ToolchainInfo,
    ) -> Device:
        """Pick exactly one device, polling until the device timeout.

        Raises:
            DeviceNotFound: If nothing matches before the timeout.
            AmbiguousDevice: If more than one device matches.
        """
        timeouts = self.settings.timeouts
        deadline = time.monotonic() + timeouts.device
        seen: list[Device] = []
        while True:
            seen = await self.discover(platform, toolchain)
            candidates = selector.candidates(seen, platform)
            if len(candidates) == 1:
                return candidates[0]
            if len(candidates) > 1:
                names = ", ".join(d.describe() for d in candidates)
                raise AmbiguousDevice(
                    f"{len(candidates)} {platform.display_name} devices match: {names}",
                    candidates=candidates,
                    platform=platform,
                )
            if time.monotonic() >= deadline:
                break
            logger.info("waiting for a %s device...", platform.display_name)
            await asyncio.sleep(timeouts.device_poll_interval)

        wanted = f"device {selector.device_id!r}" if selector.device_id else "a connected device"
        if selector.kind is not None and not selector.device_id:
            wanted += f" ({selector.kind.value})"
        found = ", ".join(d.describe() for d in seen) or "none"
        raise DeviceNotFound(
            f"No {platform.display_name} {wanted} found within {timeouts.device:.0f}s (seen: {found})",
            platform=platform,
        )

    async def run(
        self,
        session: BuildSession,
        selector: DeviceSelector,
        toolchain: ToolchainInfo,
        config: AppConfig,
        log_filter: LogFilter,
    ) -> DeviceSession:
        """Install, launch, and attach to the log of a succeeded build.

        Raises:
            BuildStateError: If *session* did not succeed.
            DeviceNotFound, AmbiguousDevice: From device selection.
            InstallFailed, LaunchFailed, LogAttachFailed: From the steps.
        """
        from .platform import get_support

        if not session.succeeded or session.artifact_path is None:
            raise BuildStateError(f"cannot run a build in state {session.status.value}")

        platform = session.target_platform
        support = get_support(platform)
        if selector.kind is None and selector.device_id is None:
            selector = DeviceSelector(kind=support.required_device_kind(config))

        device = await self.select(platform, selector, toolchain)
        result = DeviceSession(device=device, build=session, app_id=config.bundle_identifier)
        result.steps.append(SessionStep.SELECTED)
        logger.info("selected %s", device.describe())

        await support.install(device, session.artifact_path, toolchain, self.settings)
        result.steps.append(SessionStep.INSTALLED)

        await support.launch(device, config, toolchain, self.settings)
        result.steps.append(SessionStep.LAUNCHED)

        result.log_stream = await self.attach_logs(device, config, toolchain, log_filter)
        result.steps.append(SessionStep.ATTACHED)
        return result

    async def attach_logs(
        self,
        device: Device,
        config: AppConfig,
        toolchain: ToolchainInfo,
        log_filter: LogFilter,
    ) -> LogStream:
        """Start the device log process and wrap it in a started :class:`LogStream`.

        Raises:
            LogAttachFailed: If the log process cannot start or exits with
                an error right away.
        """
        from .platform import get_support

        support = get_support(device.platform)
        cmd = support.log_command(device, config, toolchain)
        try:
            process = await spawn(cmd, merge_stderr=True)
        except OSError as exc:
            raise LogAttachFailed(
                f"Failed to start the log process: {exc}",
                platform=device.platform,
                command=format_command(cmd),
            ) from exc

        try:
            await self._check_log_process(process, device, cmd)
            stream = LogStream(
                process,
                support.map_log,
                log_filter,
                buffer=self.settings.log_buffer,
                terminate_grace=self.settings.timeouts.terminate_grace,
            )
            stream.start()
        except BaseException:
            # The log process runs in its own session; nothing else stops it.
            await terminate_process(process, grace=self.settings.timeouts.terminate_grace)
            raise
        return stream

    async def _check_log_process(self, process: asyncio.subprocess.Process, device: Device, cmd: list[str]) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.timeouts.log_attach)
        except asyncio.TimeoutError:
            return
        if process.returncode != 0:
            output = ""
            if process.stdout is not None:
                output = (await process.stdout.read()).decode("utf-8", errors="replace").strip()
            raise LogAttachFailed(
                f"Log process exited with status {process.returncode}",
                platform=device.platform,
                command=format_command(cmd),
                exit_code=process.returncode,
                output=output,
            )
