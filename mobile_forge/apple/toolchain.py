"""Xcode discovery.

The developer directory comes from ``DEVELOPER_DIR``, then ``xcode-select
-p``, then the default ``/Applications/Xcode.app`` install.  The version is
read from ``version.plist`` next to it, with ``xcodebuild -version`` as a
fallback.
"""

from __future__ import annotations

import logging
import os
import plistlib
import shutil
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from ..config import Platform
from ..errors import ToolchainNotFound
from ..toolchain import ToolchainInfo, require_version
from ..utils import run_command

logger = logging.getLogger(__name__)

MIN_XCODE = "14.0"
DEFAULT_DEVELOPER_DIR = Path("/Applications/Xcode.app/Contents/Developer")


async def find_developer_dir(environ: Mapping[str, str], timeout: float) -> Path:
    """Resolve the active Xcode developer directory.

    Raises:
        ToolchainNotFound: If no candidate directory exists.
    """
    if environ.get("DEVELOPER_DIR"):
        candidate = Path(environ["DEVELOPER_DIR"])
        if candidate.is_dir():
            return candidate
        logger.warning("DEVELOPER_DIR=%s is not a directory; ignoring it", candidate)

    try:
        rc, stdout, stderr = await run_command(["xcode-select", "-p"], timeout=timeout)
    except OSError as exc:
        logger.debug("xcode-select unavailable: %s", exc)
    else:
        if rc == 0 and stdout and Path(stdout).is_dir():
            return Path(stdout)
        logger.debug("xcode-select -p failed (%s): %s", rc, stderr)

    if DEFAULT_DEVELOPER_DIR.is_dir():
        return DEFAULT_DEVELOPER_DIR

    raise ToolchainNotFound(
        "Xcode not found. Install Xcode from the App Store, or point DEVELOPER_DIR at it.",
        platform=Platform.APPLE,
    )


def read_version_plist(developer_dir: Path) -> Optional[str]:
    """``CFBundleShortVersionString`` of the Xcode that owns *developer_dir*."""
    plist = developer_dir.parent / "version.plist"
    try:
        with plist.open("rb") as handle:
            data = plistlib.load(handle)
    except (OSError, plistlib.InvalidFileException) as exc:
        logger.debug("cannot read %s: %s", plist, exc)
        return None
    version = data.get("CFBundleShortVersionString")
    return str(version) if version else None


async def xcodebuild_version(xcodebuild: Path, timeout: float) -> Optional[str]:
    """Parse ``Xcode 15.2`` from ``xcodebuild -version``."""
    try:
        rc, stdout, _ = await run_command([str(xcodebuild), "-version"], timeout=timeout)
    except OSError as exc:
        logger.debug("xcodebuild -version failed: %s", exc)
        return None
    if rc != 0:
        return None
    for line in stdout.splitlines():
        if line.startswith("Xcode "):
            return line.split(None, 1)[1].strip()
    return None


def _which(name: str, environ: Mapping[str, str]) -> Optional[Path]:
    found = shutil.which(name, path=environ.get("PATH"))
    return Path(found) if found else None


async def locate_apple(
    environ: Optional[Mapping[str, str]] = None,
    timeout: float = 15.0,
    host: str = sys.platform,
) -> ToolchainInfo:
    """Locate and version-check Xcode.

    Raises:
        ToolchainNotFound: On non-macOS hosts, or if Xcode is missing.
        ToolchainVersionTooOld: If Xcode is older than 14.0.
    """
    if host != "darwin":
        raise ToolchainNotFound(
            "Apple builds require macOS with Xcode installed",
            platform=Platform.APPLE,
        )
    env = os.environ if environ is None else environ

    developer_dir = await find_developer_dir(env, timeout)
    xcodebuild = developer_dir / "usr" / "bin" / "xcodebuild"
    if not xcodebuild.is_file():
        xcodebuild = _which("xcodebuild", env) or xcodebuild
    if not xcodebuild.is_file():
        raise ToolchainNotFound(
            f"xcodebuild not found in {developer_dir}",
            platform=Platform.APPLE,
            path=developer_dir,
        )

    version = read_version_plist(developer_dir) or await xcodebuild_version(xcodebuild, timeout)
    if version is None:
        raise ToolchainNotFound(
            f"Could not determine the Xcode version at {developer_dir}",
            platform=Platform.APPLE,
            path=developer_dir,
        )
    require_version(Platform.APPLE, "Xcode", version, MIN_XCODE, developer_dir)

    info = ToolchainInfo(
        platform=Platform.APPLE,
        root=developer_dir,
        version=version,
        tools={"xcodebuild": xcodebuild},
    )
    xcrun = _which("xcrun", env) or Path("/usr/bin/xcrun")
    if xcrun.is_file():
        info.tools["xcrun"] = xcrun

    xcodegen = Path(env["XCODEGEN_PATH"]) if env.get("XCODEGEN_PATH") else _which("xcodegen", env)
    if xcodegen is not None and xcodegen.is_file():
        info.tools["xcodegen"] = xcodegen
    else:
        info.warnings.append("xcodegen not found; install it with `brew install xcodegen`")

    syslog = _which("idevicesyslog", env)
    if syslog is not None:
        info.tools["idevicesyslog"] = syslog
    return info
