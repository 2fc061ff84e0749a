"""Android platform support: Gradle generation, adb sessions, logcat."""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from ..build import BuildStep
from ..config import AppConfig, ForgeSettings, NoiseLevel, Platform, Profile
from ..device import Device, DeviceKind
from ..errors import ToolchainNotFound
from ..logs import LogRecord
from ..platform import PlatformProject, PlatformSupport
from ..templating.renderer import RenderedTree
from ..toolchain import ToolchainInfo
from . import adb
from .logcat import map_logcat_line
from .project import APP_MODULE, generate_android, launch_component
from .toolchain import locate_android

_GRADLE_NOISE_FLAGS = {
    NoiseLevel.POLITE: "--warn",
    NoiseLevel.LOUD: "--info",
    NoiseLevel.PEDANTIC: "--debug",
}


def apk_suffix(profile: Profile) -> str:
    # unsigned until a signing config is provided
    return "release-unsigned" if profile is Profile.RELEASE else profile.value


class AndroidSupport(PlatformSupport):
    platform = Platform.ANDROID

    async def generate(self, tree: RenderedTree, config: AppConfig) -> PlatformProject:
        return await generate_android(tree, config, self.project_dir(tree.root))

    async def locate(self, settings: ForgeSettings, environ: Optional[Mapping[str, str]] = None) -> ToolchainInfo:
        return await asyncio.to_thread(locate_android, environ)

    # -- Build -------------------------------------------------------------

    def gradle_executable(self, project_dir: Path, toolchain: ToolchainInfo) -> Path:
        """The project's Gradle wrapper, or ``gradle`` from ``PATH``."""
        wrapper = project_dir / ("gradlew.bat" if os.name == "nt" else "gradlew")
        if wrapper.is_file():
            return wrapper
        if toolchain.has_tool("gradle"):
            return toolchain.tool("gradle")
        raise ToolchainNotFound(
            f"No Gradle wrapper in {project_dir} and no gradle on PATH",
            platform=Platform.ANDROID,
            path=project_dir,
        )

    def build_steps(
        self,
        project_dir: Path,
        config: AppConfig,
        profile: Profile,
        toolchain: ToolchainInfo,
        noise: NoiseLevel,
    ) -> list[BuildStep]:
        gradle = self.gradle_executable(project_dir, toolchain)
        return [
            BuildStep(
                description=f"gradle assemble{profile.title}",
                command=[
                    str(gradle),
                    "--project-dir",
                    str(project_dir),
                    f"assemble{profile.title}",
                    _GRADLE_NOISE_FLAGS[noise],
                ],
                cwd=project_dir,
                env={"ANDROID_SDK_ROOT": str(toolchain.root), "ANDROID_HOME": str(toolchain.root)},
            )
        ]

    def artifact_path(self, project_dir: Path, config: AppConfig, profile: Profile) -> Path:
        return (
            project_dir / APP_MODULE / "build" / "outputs" / "apk" / profile.value
            / f"{APP_MODULE}-{apk_suffix(profile)}.apk"
        )

    # -- Devices -----------------------------------------------------------

    def required_device_kind(self, config: AppConfig) -> Optional[DeviceKind]:
        return None

    async def list_devices(self, toolchain: ToolchainInfo, settings: ForgeSettings) -> list[Device]:
        return await adb.list_devices(toolchain.tool("adb"), settings.timeouts.toolchain)

    async def install(self, device: Device, artifact: Path, toolchain: ToolchainInfo, settings: ForgeSettings) -> None:
        await adb.install(toolchain.tool("adb"), device, artifact, settings.timeouts.step)

    async def launch(self, device: Device, config: AppConfig, toolchain: ToolchainInfo, settings: ForgeSettings) -> None:
        adb_path = toolchain.tool("adb")
        await adb.launch(adb_path, device, launch_component(config), settings.timeouts.step)
        await adb.wake_screen(adb_path, device, settings.timeouts.step)

    # -- Logs --------------------------------------------------------------

    def log_command(self, device: Device, config: AppConfig, toolchain: ToolchainInfo) -> list[str]:
        return adb.logcat_command(toolchain.tool("adb"), device, config.bundle_identifier)

    def map_log(self, line: str) -> Optional[LogRecord]:
        return map_logcat_line(line)

    # -- IDE ---------------------------------------------------------------

    def open_steps(self, project_dir: Path, config: AppConfig, toolchain: ToolchainInfo) -> list[BuildStep]:
        if sys.platform == "darwin":
            cmd = ["open", "-a", "Android Studio", str(project_dir)]
        else:
            studio = shutil.which("studio") or shutil.which("studio.sh")
            if studio is None:
                raise ToolchainNotFound(
                    "Android Studio launcher (studio / studio.sh) not found on PATH",
                    platform=Platform.ANDROID,
                )
            cmd = [studio, str(project_dir)]
        return [BuildStep(description="open Android Studio", command=cmd, cwd=project_dir)]


__all__ = ["AndroidSupport"]
