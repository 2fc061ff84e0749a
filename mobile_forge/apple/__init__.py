"""Apple platform support: XcodeGen generation, xcodebuild, simctl/devicectl."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from ..build import BuildStep
from ..config import AppConfig, ForgeSettings, NoiseLevel, Platform, Profile
from ..device import Device, DeviceKind
from ..logs import LogRecord
from ..platform import PlatformProject, PlatformSupport
from ..templating.renderer import RenderedTree
from ..toolchain import ToolchainInfo
from . import devices
from .oslog import map_apple_line
from .project import SPEC_FILE, apple_sdk, generate_apple, product_name, target_name
from .toolchain import locate_apple

DERIVED_DATA_DIR = "build"

_XCODEBUILD_NOISE_FLAGS = {
    NoiseLevel.POLITE: ["-quiet"],
    NoiseLevel.LOUD: [],
    NoiseLevel.PEDANTIC: ["-verbose"],
}


class AppleSupport(PlatformSupport):
    platform = Platform.APPLE

    async def generate(self, tree: RenderedTree, config: AppConfig) -> PlatformProject:
        return await generate_apple(tree, config, self.project_dir(tree.root))

    async def locate(self, settings: ForgeSettings, environ: Optional[Mapping[str, str]] = None) -> ToolchainInfo:
        return await locate_apple(environ, timeout=settings.timeouts.toolchain)

    # -- Build -------------------------------------------------------------

    def xcodeproj_path(self, project_dir: Path, config: AppConfig) -> Path:
        return project_dir / f"{product_name(config)}.xcodeproj"

    def xcodegen_step(self, project_dir: Path, toolchain: ToolchainInfo) -> BuildStep:
        return BuildStep(
            description="xcodegen generate",
            command=[str(toolchain.tool("xcodegen")), "generate", "--spec", SPEC_FILE],
            cwd=project_dir,
        )

    def build_steps(
        self,
        project_dir: Path,
        config: AppConfig,
        profile: Profile,
        toolchain: ToolchainInfo,
        noise: NoiseLevel,
    ) -> list[BuildStep]:
        steps: list[BuildStep] = []
        xcodeproj = self.xcodeproj_path(project_dir, config)
        if not xcodeproj.exists():
            steps.append(self.xcodegen_step(project_dir, toolchain))

        sdk = apple_sdk(config)
        command = [
            str(toolchain.tool("xcodebuild")),
            "-project", xcodeproj.name,
            "-scheme", target_name(config),
            "-configuration", profile.title,
            "-sdk", sdk,
            "-derivedDataPath", DERIVED_DATA_DIR,
            *_XCODEBUILD_NOISE_FLAGS[noise],
        ]
        if sdk == "iphoneos":
            command.append("-allowProvisioningUpdates")
        command.append("build")
        steps.append(
            BuildStep(
                description=f"xcodebuild {profile.title}",
                command=command,
                cwd=project_dir,
                env={"DEVELOPER_DIR": str(toolchain.root)},
            )
        )
        return steps

    def artifact_path(self, project_dir: Path, config: AppConfig, profile: Profile) -> Path:
        return (
            project_dir / DERIVED_DATA_DIR / "Build" / "Products"
            / f"{profile.title}-{apple_sdk(config)}" / f"{product_name(config)}.app"
        )

    # -- Devices -----------------------------------------------------------

    def required_device_kind(self, config: AppConfig) -> Optional[DeviceKind]:
        if apple_sdk(config) == "iphonesimulator":
            return DeviceKind.EMULATOR
        return DeviceKind.PHYSICAL

    async def list_devices(self, toolchain: ToolchainInfo, settings: ForgeSettings) -> list[Device]:
        return await devices.list_devices(toolchain.tool("xcrun"), settings.timeouts.toolchain)

    async def install(self, device: Device, artifact: Path, toolchain: ToolchainInfo, settings: ForgeSettings) -> None:
        await devices.install(toolchain.tool("xcrun"), device, artifact, settings.timeouts.step)

    async def launch(self, device: Device, config: AppConfig, toolchain: ToolchainInfo, settings: ForgeSettings) -> None:
        await devices.launch(toolchain.tool("xcrun"), device, config.bundle_identifier, settings.timeouts.step)

    # -- Logs --------------------------------------------------------------

    def log_command(self, device: Device, config: AppConfig, toolchain: ToolchainInfo) -> list[str]:
        syslog = toolchain.tools.get("idevicesyslog")
        return devices.log_command(toolchain.tool("xcrun"), device, product_name(config), syslog)

    def map_log(self, line: str) -> Optional[LogRecord]:
        return map_apple_line(line)

    # -- IDE ---------------------------------------------------------------

    def open_steps(self, project_dir: Path, config: AppConfig, toolchain: ToolchainInfo) -> list[BuildStep]:
        steps: list[BuildStep] = []
        xcodeproj = self.xcodeproj_path(project_dir, config)
        if not xcodeproj.exists():
            steps.append(self.xcodegen_step(project_dir, toolchain))
        steps.append(BuildStep(description="open Xcode", command=["open", str(xcodeproj)], cwd=project_dir))
        return steps


__all__ = ["AppleSupport"]
