"""Environment report (``mobile-forge doctor``).

Collects what mobile-forge can see of the host: itself, each platform
toolchain, and the connected devices.  Every check is independent; a
failure is reported as an item and never stops the remaining checks.
"""

from __future__ import annotations

import platform as host_platform
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import ForgeSettings, Platform
from .errors import ForgeError
from .platform import get_support
from .templating.pack import TemplatePackRegistry
from .toolchain import ToolchainInfo
from .utils import console


class ItemStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    FAILED = "failed"


_STATUS_MARKS = {
    ItemStatus.OK: "[green]+[/green]",
    ItemStatus.WARNING: "[yellow]![/yellow]",
    ItemStatus.FAILED: "[red]x[/red]",
}


@dataclass
class ReportItem:
    status: ItemStatus
    message: str


@dataclass
class ReportSection:
    title: str
    items: list[ReportItem] = field(default_factory=list)

    def ok(self, message: str) -> "ReportSection":
        self.items.append(ReportItem(ItemStatus.OK, message))
        return self

    def warn(self, message: str) -> "ReportSection":
        self.items.append(ReportItem(ItemStatus.WARNING, message))
        return self

    def fail(self, message: str) -> "ReportSection":
        self.items.append(ReportItem(ItemStatus.FAILED, message))
        return self

    @property
    def healthy(self) -> bool:
        return all(item.status is not ItemStatus.FAILED for item in self.items)


@dataclass
class DoctorReport:
    sections: list[ReportSection] = field(default_factory=list)
    toolchains: dict[Platform, ToolchainInfo] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return all(section.healthy for section in self.sections)

    def print(self) -> None:
        for section in self.sections:
            table = Table(show_header=False, box=None, padding=(0, 1))
            table.add_column("", no_wrap=True)
            table.add_column("")
            for item in section.items:
                table.add_row(_STATUS_MARKS[item.status], item.message)
            border = "green" if section.healthy else "red"
            console.print(Panel(table, title=section.title, border_style=border))


def contract_home(path: Path) -> str:
    """Show *path* with the home directory as ``~``."""
    try:
        return "~/" + path.relative_to(Path.home()).as_posix()
    except ValueError:
        return str(path)


def check_self(settings: ForgeSettings, registry: TemplatePackRegistry) -> ReportSection:
    section = ReportSection("mobile-forge")
    section.ok(f"mobile-forge v{__version__} on Python {sys.version.split()[0]} ({host_platform.system()})")
    section.ok(f"Configuration root: {contract_home(settings.home)}")
    packs = registry.discover()
    if packs:
        section.ok("Template packs: " + ", ".join(pack.reference for pack in packs))
    else:
        section.fail("No template packs found")
    for skipped in registry.skipped:
        section.warn(f"Skipped malformed pack at {contract_home(skipped.path)}: {skipped.reason}")
    return section


async def check_toolchain(platform: Platform, settings: ForgeSettings) -> tuple[ReportSection, Optional[ToolchainInfo]]:
    section = ReportSection(f"{platform.display_name} developer tools")
    try:
        info = await get_support(platform).locate(settings)
    except ForgeError as exc:
        section.fail(exc.message)
        return section, None

    label = "Xcode" if platform is Platform.APPLE else "Android platform-tools"
    section.ok(f"{label} v{info.version} installed at {contract_home(info.root)}")
    for name, path in sorted(info.tools.items()):
        version = info.extras.get(name)
        suffix = f" v{version}" if version else ""
        section.ok(f"{name}{suffix}: {contract_home(path)}")
    for warning in info.warnings:
        section.warn(warning)
    return section, info


async def check_devices(toolchains: dict[Platform, ToolchainInfo], settings: ForgeSettings) -> ReportSection:
    section = ReportSection("Connected devices")
    found = 0
    for platform, info in sorted(toolchains.items(), key=lambda item: item[0].value):
        try:
            devices = await get_support(platform).list_devices(info, settings)
        except ForgeError as exc:
            section.fail(f"{platform.display_name}: {exc.message}")
            continue
        for device in devices:
            found += 1
            if device.connected:
                section.ok(f"{platform.display_name}: {device.describe()}")
            else:
                section.warn(f"{platform.display_name}: {device.describe()}")
    if not found:
        section.warn("No devices detected")
    return section


async def run_doctor(settings: Optional[ForgeSettings] = None, registry: Optional[TemplatePackRegistry] = None) -> DoctorReport:
    settings = settings or ForgeSettings.from_env()
    registry = registry or TemplatePackRegistry.default(settings)

    report = DoctorReport()
    report.sections.append(check_self(settings, registry))
    for platform in (Platform.APPLE, Platform.ANDROID):
        if platform is Platform.APPLE and sys.platform != "darwin":
            report.sections.append(
                ReportSection("Apple developer tools").warn("Skipped: Apple builds require macOS")
            )
            continue
        section, info = await check_toolchain(platform, settings)
        report.sections.append(section)
        if info is not None:
            report.toolchains[platform] = info
    report.sections.append(await check_devices(report.toolchains, settings))
    return report
