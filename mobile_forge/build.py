"""Build Orchestrator.

Invokes the native build for one platform and tracks it as a
:class:`BuildSession` moving through ``pending -> building ->
succeeded|failed``.  A session only succeeds when every build step exits 0
*and* the expected artifact exists.  Tool output is kept verbatim; nothing
is retried.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from rich.panel import Panel

from .config import AppConfig, ForgeSettings, NoiseLevel, Platform, Profile
from .errors import BuildStateError
from .toolchain import ToolchainInfo
from .utils import console, format_command, format_duration, iter_lines, spawn, terminate_process

logger = logging.getLogger(__name__)


class BuildStatus(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS: dict[BuildStatus, frozenset[BuildStatus]] = {
    BuildStatus.PENDING: frozenset({BuildStatus.BUILDING}),
    BuildStatus.BUILDING: frozenset({BuildStatus.SUCCEEDED, BuildStatus.FAILED}),
    BuildStatus.SUCCEEDED: frozenset(),
    BuildStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class BuildStep:
    """One external command of a native build."""

    description: str
    command: list[str]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class BuildSession:
    """State of one native build.

    ``artifact_path`` is set if and only if ``status`` is ``succeeded``.
    """

    target_platform: Platform
    profile: Profile
    project_dir: Path
    status: BuildStatus = BuildStatus.PENDING
    artifact_path: Optional[Path] = None
    exit_code: Optional[int] = None
    diagnostics: str = ""
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    command: str = ""
    failure_reason: str = ""
    duration_seconds: float = 0.0
    _started_at: float = field(default=0.0, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status is BuildStatus.SUCCEEDED

    @property
    def finished(self) -> bool:
        return self.status in (BuildStatus.SUCCEEDED, BuildStatus.FAILED)

    def _transition(self, new: BuildStatus) -> None:
        if new not in _TRANSITIONS[self.status]:
            raise BuildStateError(f"illegal build transition {self.status.value} -> {new.value}")
        self.status = new

    def start(self) -> None:
        self._transition(BuildStatus.BUILDING)
        self._started_at = time.monotonic()

    def succeed(self, artifact: Path) -> None:
        self._transition(BuildStatus.SUCCEEDED)
        self.artifact_path = artifact
        self._stop_clock()

    def fail(self, reason: str) -> None:
        self._transition(BuildStatus.FAILED)
        self.artifact_path = None
        self.failure_reason = reason
        self._stop_clock()

    def _stop_clock(self) -> None:
        if self._started_at:
            self.duration_seconds = time.monotonic() - self._started_at

    def summary(self) -> str:
        """Return a human-readable summary of the session."""
        status = "[green]SUCCEEDED[/green]" if self.succeeded else f"[red]{self.status.value.upper()}[/red]"
        lines = [
            f"Status: {status}",
            f"Platform: {self.target_platform.display_name} ({self.profile.value})",
            f"Duration: {format_duration(self.duration_seconds)}",
        ]
        if self.artifact_path:
            lines.append(f"Artifact: {self.artifact_path}")
        if self.failure_reason:
            lines.append(f"Reason: {self.failure_reason}")
        if self.warnings:
            lines.append(f"Warnings: {len(self.warnings)}")
        if self.errors:
            lines.append(f"Errors: {len(self.errors)}")
            for err in self.errors[:5]:
                lines.append(f"  - {err[:200]}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

_ERROR_PATTERNS = [
    re.compile(r":\d+(?::\d+)?:\s*(?:fatal )?error:"),  # clang / swiftc
    re.compile(r"^e: "),  # kotlinc
    re.compile(r"^error: "),
    re.compile(r"^\*\*\s*BUILD FAILED\s*\*\*"),
    re.compile(r"^FAILURE: "),
    re.compile(r"^xcodebuild: error:"),
]
_WARNING_PATTERNS = [
    re.compile(r":\d+(?::\d+)?:\s*warning:"),
    re.compile(r"^w: "),
    re.compile(r"^warning: "),
]


def extract_diagnostics(output: str) -> tuple[list[str], list[str]]:
    """Pick compiler warnings and errors out of raw build output.

    Returns:
        ``(warnings, errors)``, each deduplicated in order of appearance.
    """
    warnings: list[str] = []
    errors: list[str] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        if any(p.search(line) for p in _ERROR_PATTERNS):
            if line not in errors:
                errors.append(line)
        elif any(p.search(line) for p in _WARNING_PATTERNS):
            if line not in warnings:
                warnings.append(line)
    return warnings, errors


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class BuildOrchestrator:
    """Runs platform build steps and produces :class:`BuildSession` objects.

    Args:
        settings: Provides the build timeout and termination grace period.
        noise: Controls tool verbosity flags and whether tool output is
            echoed while the build runs.
    """

    def __init__(self, settings: Optional[ForgeSettings] = None, noise: NoiseLevel = NoiseLevel.POLITE) -> None:
        self.settings = settings or ForgeSettings()
        self.noise = noise

    async def build(
        self,
        platform: Platform,
        profile: Profile,
        toolchain: ToolchainInfo,
        project_root: str | Path,
        config: AppConfig,
    ) -> BuildSession:
        """Build *config*'s generated project for *platform*.

        Returns:
            A finished session.  A failed build is reported through the
            session, not raised.

        Raises:
            asyncio.CancelledError: Re-raised after the build's process group
                has been terminated.
        """
        from .platform import get_support

        support = get_support(platform)
        project_dir = support.project_dir(project_root)
        session = BuildSession(target_platform=platform, profile=profile, project_dir=project_dir)
        steps = support.build_steps(project_dir, config, profile, toolchain, self.noise)
        artifact = support.artifact_path(project_dir, config, profile)

        console.print(
            Panel(
                f"[cyan]Building {config.project_name}[/cyan]\n"
                f"  Platform: {platform.display_name}\n"
                f"  Profile: {profile.value}\n"
                f"  Project: {project_dir}\n"
                f"  Timeout: {self.settings.timeouts.build:.0f}s",
                title="Build",
                border_style="cyan",
            )
        )

        session.start()
        output: list[str] = []
        try:
            await asyncio.wait_for(
                self._run_steps(session, steps, output),
                timeout=self.settings.timeouts.build,
            )
        except asyncio.TimeoutError:
            output.append(f"Build timed out after {self.settings.timeouts.build:.0f}s")
            session.exit_code = -1
            self._finish(session, output, artifact, reason="timed out")
            return session

        self._finish(session, output, artifact)
        return session

    async def _run_steps(self, session: BuildSession, steps: list[BuildStep], output: list[str]) -> None:
        for step in steps:
            session.command = format_command(step.command)
            logger.info("%s: %s", step.description, session.command)
            session.exit_code = await self._run_step(step, output)
            if session.exit_code != 0:
                return

    async def _run_step(self, step: BuildStep, output: list[str]) -> int:
        try:
            process = await spawn(step.command, cwd=step.cwd, env=step.env, merge_stderr=True)
        except OSError as exc:
            output.append(f"Failed to start {step.command[0]}: {exc}")
            return 127

        try:
            async for line in iter_lines(process):
                output.append(line)
                if self.noise >= NoiseLevel.LOUD:
                    console.print(f"  {line}", style="dim", markup=False, highlight=False)
            return await process.wait()
        except OSError as exc:
            output.append(f"Lost output of {step.command[0]}: {exc}")
            return -1
        finally:
            if process.returncode is None:
                await terminate_process(process, grace=self.settings.timeouts.terminate_grace)

    def _finish(self, session: BuildSession, output: list[str], artifact: Path, reason: str = "") -> None:
        session.diagnostics = "\n".join(output)
        session.warnings, session.errors = extract_diagnostics(session.diagnostics)

        if reason:
            session.fail(reason)
        elif session.exit_code != 0:
            session.fail(f"{session.command} exited with status {session.exit_code}")
        elif not artifact.exists():
            session.fail(f"build reported success but {artifact} does not exist")
        else:
            session.succeed(artifact)

        if session.succeeded:
            logger.info("build succeeded in %s: %s", format_duration(session.duration_seconds), artifact)
        else:
            logger.info("build failed: %s", session.failure_reason)
