"""Platform dispatch.

The set of platforms is closed (:class:`~mobile_forge.config.Platform`), so
every platform-specific behaviour sits behind one :class:`PlatformSupport`
subclass per platform and :func:`get_support` maps the enum onto it.  The
generic orchestrators (build, device sessions, logs) only talk to this
interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar, Optional

from .config import AppConfig, ForgeSettings, NoiseLevel, Platform, Profile

if TYPE_CHECKING:
    from .build import BuildStep
    from .device import Device, DeviceKind
    from .logs import LogRecord
    from .templating.renderer import RenderedTree
    from .toolchain import ToolchainInfo

GEN_DIR = "gen"


@dataclass
class PlatformProject:
    """Generated platform descriptor files for one platform.

    Attributes:
        platform: Which platform the descriptor is for.
        directory: ``gen/<platform>`` inside the project.
        descriptor: The main descriptor file (``project.yml`` /
            ``settings.gradle.kts``).
        target: Apple scheme / target name, or the Android app module.
        files: Written files, relative to ``directory``, sorted.
    """

    platform: Platform
    directory: Path
    descriptor: Path
    target: str
    files: list[str] = field(default_factory=list)


class PlatformSupport(ABC):
    """Everything mobile-forge needs to know about one platform."""

    platform: ClassVar[Platform]

    def project_dir(self, project_root: str | Path) -> Path:
        return Path(project_root) / GEN_DIR / self.platform.value

    # -- Generation --------------------------------------------------------

    @abstractmethod
    async def generate(self, tree: "RenderedTree", config: AppConfig) -> PlatformProject:
        """Write the platform project descriptor for *tree*."""

    # -- Toolchain ---------------------------------------------------------

    @abstractmethod
    async def locate(self, settings: ForgeSettings, environ: Optional[Mapping[str, str]] = None) -> "ToolchainInfo":
        """Locate and version-check the native toolchain."""

    # -- Build -------------------------------------------------------------

    @abstractmethod
    def build_steps(
        self,
        project_dir: Path,
        config: AppConfig,
        profile: Profile,
        toolchain: "ToolchainInfo",
        noise: NoiseLevel,
    ) -> list["BuildStep"]:
        """Commands that build the project, in order."""

    @abstractmethod
    def artifact_path(self, project_dir: Path, config: AppConfig, profile: Profile) -> Path:
        """Where a successful build leaves its installable artifact."""

    # -- Devices -----------------------------------------------------------

    @abstractmethod
    def required_device_kind(self, config: AppConfig) -> Optional["DeviceKind"]:
        """The device kind the configured build can run on, if restricted."""

    @abstractmethod
    async def list_devices(self, toolchain: "ToolchainInfo", settings: ForgeSettings) -> list["Device"]:
        """Devices currently reported by the platform tools."""

    @abstractmethod
    async def install(self, device: "Device", artifact: Path, toolchain: "ToolchainInfo", settings: ForgeSettings) -> None:
        """Install *artifact*; raises ``InstallFailed``."""

    @abstractmethod
    async def launch(self, device: "Device", config: AppConfig, toolchain: "ToolchainInfo", settings: ForgeSettings) -> None:
        """Start the installed app; raises ``LaunchFailed``."""

    # -- Logs --------------------------------------------------------------

    @abstractmethod
    def log_command(self, device: "Device", config: AppConfig, toolchain: "ToolchainInfo") -> list[str]:
        """Command whose stdout is the device log."""

    @abstractmethod
    def map_log(self, line: str) -> Optional["LogRecord"]:
        """Map one raw log line; ``None`` for noise."""

    # -- IDE ---------------------------------------------------------------

    @abstractmethod
    def open_steps(self, project_dir: Path, config: AppConfig, toolchain: "ToolchainInfo") -> list["BuildStep"]:
        """Commands that open the generated project in the platform IDE."""


def get_support(platform: Platform) -> PlatformSupport:
    """Return the :class:`PlatformSupport` for *platform*.

    A new instance is returned on every call; support objects hold no state.
    """
    if platform is Platform.APPLE:
        from .apple import AppleSupport

        return AppleSupport()
    if platform is Platform.ANDROID:
        from .android import AndroidSupport

        return AndroidSupport()
    raise ValueError(f"unsupported platform: {platform!r}")


async def generate(platform: Platform, tree: "RenderedTree", config: AppConfig) -> PlatformProject:
    """Generate the descriptor for *platform* from a rendered tree.

    Raises:
        InvalidIdentifier, UnsupportedPlatformCombination, GenerationIOError
    """
    return await get_support(platform).generate(tree, config)
