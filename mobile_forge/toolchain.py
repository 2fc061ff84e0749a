"""Toolchain Locator.

Finds the native SDK for a platform and checks its version.  Discovery never
installs or updates anything, and nothing is cached between calls: each
invocation looks at the environment again.  The platform specifics live in
``android/toolchain.py`` and ``apple/toolchain.py``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import ForgeSettings, Platform
from .errors import ToolchainNotFound, ToolchainVersionTooOld


@dataclass
class ToolchainInfo:
    """A located, version-checked platform toolchain.

    Attributes:
        platform: The platform this toolchain builds for.
        root: SDK root (Android) or Xcode developer directory (Apple).
        version: Version string as reported by the toolchain.
        tools: Executables found, by short name (``adb``, ``xcrun``...).
        extras: Optional components and their versions (``ndk``...).
        warnings: Non-fatal findings worth showing to the user.
    """

    platform: Platform
    root: Path
    version: str
    tools: dict[str, Path] = field(default_factory=dict)
    extras: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def tool(self, name: str) -> Path:
        """Return the path of tool *name*.

        Raises:
            ToolchainNotFound: If the tool was not found during discovery.
        """
        try:
            return self.tools[name]
        except KeyError:
            raise ToolchainNotFound(
                f"{name} was not found in the {self.platform.display_name} toolchain at {self.root}",
                platform=self.platform,
                path=self.root,
            ) from None

    def has_tool(self, name: str) -> bool:
        return name in self.tools


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


def parse_version(text: str) -> tuple[int, ...]:
    """Extract the leading dotted number from *text*.

    ``"Xcode 15.2"`` -> ``(15, 2)``; ``"34.0.5"`` -> ``(34, 0, 5)``.

    Raises:
        ValueError: If *text* has no version number.
    """
    match = re.search(r"\d+(?:\.\d+)*", text)
    if not match:
        raise ValueError(f"no version number in {text!r}")
    return tuple(int(part) for part in match.group(0).split("."))


def version_at_least(found: str, minimum: str) -> bool:
    """Compare two dotted versions, padding the shorter one with zeros."""
    a, b = parse_version(found), parse_version(minimum)
    width = max(len(a), len(b))
    return a + (0,) * (width - len(a)) >= b + (0,) * (width - len(b))


def require_version(platform: Platform, component: str, found: str, minimum: str, path: Optional[Path] = None) -> None:
    """Raise :class:`ToolchainVersionTooOld` unless *found* >= *minimum*.

    An unparseable *found* raises :class:`ToolchainNotFound`.
    """
    try:
        recent_enough = version_at_least(found, minimum)
    except ValueError as exc:
        raise ToolchainNotFound(
            f"Unrecognized {component} version {found!r}",
            platform=platform,
            path=path,
        ) from exc
    if not recent_enough:
        raise ToolchainVersionTooOld(
            f"{component} {found} is too old; {minimum} or newer is required",
            found=found,
            minimum=minimum,
            platform=platform,
            path=path,
        )


def read_properties(path: Path) -> dict[str, str]:
    """Parse a Java-style ``key=value`` properties file."""
    properties: dict[str, str] = {}
    for raw in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", "!")):
            continue
        key, sep, value = line.partition("=")
        if sep:
            properties[key.strip()] = value.strip()
    return properties


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def locate(
    platform: Platform,
    settings: Optional[ForgeSettings] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ToolchainInfo:
    """Locate and version-check the toolchain for *platform*.

    Raises:
        ToolchainNotFound: If the toolchain or a required tool is missing.
        ToolchainVersionTooOld: If the toolchain is below the minimum version.
    """
    from .platform import get_support

    return await get_support(platform).locate(settings or ForgeSettings(), environ)
