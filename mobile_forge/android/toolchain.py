"""Android SDK discovery.

Only the file system is inspected; no subprocess is started, so a missing
SDK is reported without spawning anything.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from ..config import Platform
from ..errors import ToolchainNotFound
from ..toolchain import ToolchainInfo, parse_version, read_properties, require_version, version_at_least

logger = logging.getLogger(__name__)

MIN_PLATFORM_TOOLS = "30.0.0"
MIN_NDK = "19.0"

_SDK_HINT = (
    "Have you installed the Android SDK? Set ANDROID_SDK_ROOT to the SDK "
    "directory (the one containing platform-tools/)."
)


def _exe(name: str) -> str:
    return f"{name}.exe" if os.name == "nt" else name


def default_sdk_locations(home: Path) -> list[Path]:
    return [
        home / "Android" / "Sdk",
        home / "Library" / "Android" / "sdk",
        home / "AppData" / "Local" / "Android" / "Sdk",
        Path("/opt/android-sdk"),
    ]


def find_sdk_root(environ: Mapping[str, str], warnings: Optional[list[str]] = None) -> Path:
    """Resolve the SDK root from the environment, then default locations.

    ``ANDROID_SDK_ROOT`` wins.  ``ANDROID_HOME`` is accepted as a deprecated
    fallback with a warning.

    Raises:
        ToolchainNotFound: If no candidate is an existing directory.
    """
    warnings = warnings if warnings is not None else []

    sdk_root = environ.get("ANDROID_SDK_ROOT")
    if sdk_root and Path(sdk_root).is_dir():
        return Path(sdk_root)

    android_home = environ.get("ANDROID_HOME")
    if android_home and Path(android_home).is_dir():
        if sdk_root:
            message = (
                "ANDROID_SDK_ROOT doesn't point to an existing directory; "
                "falling back to ANDROID_HOME, which is deprecated"
            )
        else:
            message = "ANDROID_SDK_ROOT isn't set; falling back to ANDROID_HOME, which is deprecated"
        logger.warning(message)
        warnings.append(message)
        return Path(android_home)

    if sdk_root:
        raise ToolchainNotFound(
            "ANDROID_SDK_ROOT is set, but doesn't point to an existing directory",
            platform=Platform.ANDROID,
            path=sdk_root,
        )

    home = Path(environ["HOME"]) if environ.get("HOME") else Path.home()
    for candidate in default_sdk_locations(home):
        if candidate.is_dir():
            logger.debug("using Android SDK at default location %s", candidate)
            return candidate

    raise ToolchainNotFound(
        f"Android SDK not found. {_SDK_HINT}",
        platform=Platform.ANDROID,
    )


def platform_tools_version(sdk_root: Path) -> str:
    """Read ``Pkg.Revision`` from ``platform-tools/source.properties``.

    Raises:
        ToolchainNotFound: If the file or the revision is missing.
    """
    path = sdk_root / "platform-tools" / "source.properties"
    try:
        revision = read_properties(path).get("Pkg.Revision", "")
    except OSError as exc:
        raise ToolchainNotFound(
            f"Android platform-tools are not installed in {sdk_root}: {exc}",
            platform=Platform.ANDROID,
            path=path,
        ) from exc
    if not revision:
        raise ToolchainNotFound(
            f"No version number was present in {path}",
            platform=Platform.ANDROID,
            path=path,
        )
    return revision


def find_ndk(environ: Mapping[str, str], sdk_root: Path) -> Optional[tuple[Path, str]]:
    """Return ``(ndk_home, version)`` for the NDK in use, if any.

    ``NDK_HOME`` and ``ANDROID_NDK_HOME`` win over the newest side-by-side
    install under ``<sdk>/ndk/``.
    """
    candidates: list[Path] = []
    for var in ("NDK_HOME", "ANDROID_NDK_HOME"):
        if environ.get(var):
            candidates.append(Path(environ[var]))

    side_by_side = sdk_root / "ndk"
    if side_by_side.is_dir():
        versions = []
        for child in side_by_side.iterdir():
            try:
                versions.append((parse_version(child.name), child))
            except ValueError:
                continue
        candidates.extend(path for _, path in sorted(versions, reverse=True))
    candidates.append(sdk_root / "ndk-bundle")

    for candidate in candidates:
        properties = candidate / "source.properties"
        if not properties.is_file():
            continue
        try:
            revision = read_properties(properties).get("Pkg.Revision", "")
        except OSError:
            logger.debug("unreadable NDK properties at %s", properties)
            continue
        if revision:
            return candidate, revision
    return None


def find_gradle(environ: Mapping[str, str]) -> Optional[Path]:
    """``gradle`` on ``PATH``; used when a project has no wrapper."""
    found = shutil.which("gradle", path=environ.get("PATH"))
    return Path(found) if found else None


def locate_android(environ: Optional[Mapping[str, str]] = None) -> ToolchainInfo:
    """Locate and version-check the Android SDK.

    Raises:
        ToolchainNotFound: If the SDK or ``adb`` is missing.
        ToolchainVersionTooOld: If platform-tools are older than 30.0.0.
    """
    env = os.environ if environ is None else environ
    warnings: list[str] = []
    sdk_root = find_sdk_root(env, warnings)

    version = platform_tools_version(sdk_root)
    require_version(Platform.ANDROID, "Android platform-tools", version, MIN_PLATFORM_TOOLS, sdk_root)

    adb = sdk_root / "platform-tools" / _exe("adb")
    if not adb.is_file():
        raise ToolchainNotFound(
            f"adb not found at {adb}",
            platform=Platform.ANDROID,
            path=adb,
        )

    info = ToolchainInfo(
        platform=Platform.ANDROID,
        root=sdk_root,
        version=version,
        tools={"adb": adb},
        warnings=warnings,
    )

    gradle = find_gradle(env)
    if gradle is not None:
        info.tools["gradle"] = gradle

    ndk = find_ndk(env, sdk_root)
    if ndk is not None:
        ndk_home, ndk_version = ndk
        try:
            recent_enough = version_at_least(ndk_version, MIN_NDK)
        except ValueError:
            info.warnings.append(f"Unrecognized NDK version {ndk_version!r} at {ndk_home}")
        else:
            if recent_enough:
                info.tools["ndk"] = ndk_home
                info.extras["ndk"] = ndk_version
            else:
                info.warnings.append(
                    f"NDK {ndk_version} at {ndk_home} is too old; r{MIN_NDK.split('.')[0]} or newer is required"
                )
    return info
