"""Shared pytest fixtures for the mobile-forge test suite.

Provides reusable fixtures for:
- Project configurations and tool settings with short timeouts
- Throw-away template packs and a registry over them
- Fake Android SDK trees
- Mock subprocess helpers (captured output and streamed stdout)
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml

from mobile_forge.config import AppConfig, ForgeSettings, Platform, TimeoutConfig
from mobile_forge.templating.pack import BUILTIN_PACKS_DIR, TemplatePack, TemplatePackRegistry, load_pack


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def app_config() -> AppConfig:
    """A two-platform project named Foo."""
    return AppConfig(project_name="Foo", bundle_identifier="com.example.foo")


@pytest.fixture
def settings(tmp_path: Path) -> ForgeSettings:
    """Tool settings rooted in a temp directory, with timeouts short enough for tests."""
    return ForgeSettings(
        home=tmp_path / "forge-home",
        timeouts=TimeoutConfig(
            toolchain=2.0,
            device=0.2,
            device_poll_interval=0.05,
            build=10.0,
            step=2.0,
            log_attach=0.05,
            terminate_grace=0.1,
        ),
        log_buffer=16,
    )


# ---------------------------------------------------------------------------
# Template packs
# ---------------------------------------------------------------------------

@pytest.fixture
def registry(settings: ForgeSettings) -> TemplatePackRegistry:
    """User templates directory (initially empty) followed by the built-in packs."""
    return TemplatePackRegistry.default(settings)


@pytest.fixture
def builtin_pack() -> TemplatePack:
    return TemplatePackRegistry(search_paths=[BUILTIN_PACKS_DIR]).get("basic")


def write_pack(
    parent: Path,
    name: str,
    files: dict[str, str | bytes],
    manifest: Optional[dict[str, Any]] = None,
) -> Path:
    """Create ``<parent>/<name>/pack.yaml`` and ``files/`` and return the pack root."""
    root = parent / name
    (root / "files").mkdir(parents=True)
    data = {"name": name, "version": "1.0.0"}
    data.update(manifest or {})
    (root / "pack.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")
    for rel, content in files.items():
        target = root / "files" / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")
    return root


@pytest.fixture
def make_pack(tmp_path: Path):
    """Factory that writes a pack under a temp directory and loads it.

    Usage:
        def test_render(make_pack):
            pack = make_pack({"README.md": "# {{name}}"})
    """
    packs_dir = tmp_path / "packs"

    def factory(
        files: dict[str, str | bytes],
        manifest: Optional[dict[str, Any]] = None,
        name: str = "custom",
    ) -> TemplatePack:
        return load_pack(write_pack(packs_dir, name, files, manifest))

    return factory


# ---------------------------------------------------------------------------
# Android SDK
# ---------------------------------------------------------------------------

def write_sdk(root: Path, platform_tools: str = "34.0.5", adb: bool = True) -> Path:
    """Lay out the parts of an Android SDK that discovery looks at."""
    tools = root / "platform-tools"
    tools.mkdir(parents=True)
    (tools / "source.properties").write_text(
        f"Pkg.UserSrc=false\nPkg.Revision={platform_tools}\n", encoding="utf-8"
    )
    if adb:
        (tools / "adb").write_text("#!/bin/sh\n", encoding="utf-8")
    return root


@pytest.fixture
def fake_sdk(tmp_path: Path) -> Path:
    return write_sdk(tmp_path / "android-sdk")


# ---------------------------------------------------------------------------
# Subprocess mocks
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_subprocess():
    """Mock asyncio subprocess for testing command execution.

    Returns a factory that creates mock subprocess instances with configurable
    stdout, stderr, and return codes.

    Usage:
        def test_command(mock_subprocess):
            proc = mock_subprocess(stdout="output", returncode=0)
            with patch("asyncio.create_subprocess_exec", return_value=proc):
                ...
    """
    def factory(
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
    ) -> AsyncMock:
        mock_proc = AsyncMock()
        mock_proc.communicate = AsyncMock(
            return_value=(stdout.encode("utf-8"), stderr.encode("utf-8"))
        )
        mock_proc.returncode = returncode
        mock_proc.pid = 99999
        mock_proc.kill = MagicMock()
        mock_proc.wait = AsyncMock(return_value=returncode)
        return mock_proc

    return factory


async def _block_forever() -> bytes:
    await asyncio.Event().wait()
    return b""


@pytest.fixture
def streaming_process():
    """Factory for a mock process whose stdout yields *lines* then EOF.

    With ``block=True`` stdout never reaches EOF (a log process that keeps
    running); ``returncode`` stays ``None`` in that case.
    """
    def factory(
        lines: list[str] | None = None,
        returncode: int = 0,
        block: bool = False,
    ) -> MagicMock:
        chunks = [f"{line}\n".encode("utf-8") for line in lines or []]
        proc = MagicMock()
        proc.pid = 99999
        proc.stdout = MagicMock()
        if block:
            queue = list(chunks)

            async def readline() -> bytes:
                if queue:
                    return queue.pop(0)
                return await _block_forever()

            proc.stdout.readline = AsyncMock(side_effect=readline)
            proc.returncode = None
            proc.wait = AsyncMock(side_effect=_block_forever)
        else:
            proc.stdout.readline = AsyncMock(side_effect=chunks + [b""])
            proc.returncode = returncode
            proc.wait = AsyncMock(return_value=returncode)
        proc.stdout.read = AsyncMock(return_value=b"")
        return proc

    return factory


@pytest.fixture
def android_only() -> AppConfig:
    return AppConfig(
        project_name="Foo",
        bundle_identifier="com.example.foo",
        supported_platforms={Platform.ANDROID},
    )


@pytest.fixture
def make_sdk(tmp_path: Path):
    """Factory for fake SDK trees: ``make_sdk("sdk", platform_tools="29.0.1")``."""
    def factory(name: str = "sdk", platform_tools: str = "34.0.5", adb: bool = True) -> Path:
        return write_sdk(tmp_path / name, platform_tools=platform_tools, adb=adb)

    return factory
