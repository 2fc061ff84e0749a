"""mobile-forge command pipeline.

Sequences the subsystems behind each command:

init      -- Config Model -> Template Renderer -> Platform Project Generators
             -> manifest on disk.
regenerate-- reload the manifest, wipe the project, run init again.
run       -- Toolchain Locator -> Build Orchestrator -> Device Session
             Manager -> Log Filter/Mapper -> console.
devices, packs, doctor, open -- reporting and IDE passthrough.

Everything runs in one asyncio control flow; the device log follower is the
only long-lived concurrent task.  Ctrl-C cancels the main task, and every
step that owns a child process terminates its process group on the way out.

Usage::

    mobile-forge init Foo --bundle-id com.example.foo
    mobile-forge run android -v
    mobile-forge run apple --release --device 00008030-001A
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from rich.panel import Panel

from .build import BuildOrchestrator, BuildSession
from .config import (
    DEFAULT_PACK,
    AppConfig,
    ForgeSettings,
    NoiseLevel,
    Platform,
    Profile,
    parse_override,
)
from .device import Device, DeviceSelector, DeviceSession, DeviceSessionManager
from .doctor import DoctorReport, run_doctor
from .errors import (
    BuildError,
    ConfigError,
    ForgeError,
    GenerationError,
    LogAttachFailed,
    PreconditionError,
    RenderIOError,
    UnsupportedPlatformCombination,
)
from .logs import LogFilter, LogRecord, format_record
from .platform import PlatformProject, generate, get_support
from .templating.pack import TemplatePack, TemplatePackRegistry
from .templating.renderer import RenderedTree, TemplateRenderer
from .toolchain import ToolchainInfo
from .utils import (
    configure_logging,
    console,
    format_duration,
    is_empty_dir,
    print_error,
    print_step_header,
    print_success,
    print_summary_table,
    print_warning,
    run_command,
    snake_case,
)

logger = logging.getLogger(__name__)


@dataclass
class InitResult:
    root: Path
    config: AppConfig
    tree: RenderedTree
    projects: list[PlatformProject] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(err["msg"].removeprefix("Value error, ") for err in exc.errors())


def make_config(
    name: str,
    bundle_id: str,
    platforms: Optional[Iterable[Platform]] = None,
    pack: str = DEFAULT_PACK,
    overrides: Optional[dict[Platform, dict[str, str]]] = None,
) -> AppConfig:
    """Build and validate the Config Model for a new project.

    Raises:
        ConfigError: If a value does not validate.
    """
    kwargs: dict = {
        "project_name": name,
        "bundle_identifier": bundle_id,
        "template_pack": pack,
        "overrides": overrides or {},
    }
    if platforms:
        kwargs["supported_platforms"] = set(platforms)
    try:
        return AppConfig(**kwargs)
    except ValidationError as exc:
        raise ConfigError(f"Invalid project configuration: {_validation_message(exc)}") from exc


def load_config(project_root: str | Path) -> AppConfig:
    """Load ``mobile-forge.json`` from *project_root*.

    Raises:
        ConfigError: If the manifest is missing or invalid.
    """
    manifest = AppConfig.manifest_path(project_root)
    if not manifest.is_file():
        raise ConfigError(
            f"{Path(project_root).resolve()} is not a mobile-forge project (no {manifest.name})",
            path=manifest,
        )
    try:
        return AppConfig.load(manifest)
    except ValidationError as exc:
        raise ConfigError(f"Invalid {manifest.name}: {_validation_message(exc)}", path=manifest) from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read {manifest}: {exc}", path=manifest) from exc


# Version-control metadata belongs to the user, not to the rendered tree.
VCS_DIRS = frozenset({".git", ".hg", ".svn"})


def clear_directory(root: Path, keep: frozenset[str] = VCS_DIRS) -> None:
    """Delete everything inside *root* except the entries named in *keep*."""
    for child in root.iterdir():
        if child.name in keep:
            continue
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class Pipeline:
    """Drives every mobile-forge command.

    Attributes:
        settings: Tool-level settings (config root, timeouts).
        noise: Verbosity of the native tools and default log threshold.
        registry: Where template packs are looked up.
    """

    def __init__(
        self,
        settings: Optional[ForgeSettings] = None,
        noise: NoiseLevel = NoiseLevel.POLITE,
        registry: Optional[TemplatePackRegistry] = None,
    ) -> None:
        self.settings = settings or ForgeSettings.from_env()
        self.noise = noise
        self.registry = registry or TemplatePackRegistry.default(self.settings)
        self.renderer = TemplateRenderer(self.registry)

    # ------------------------------------------------------------------
    # init / regenerate
    # ------------------------------------------------------------------

    async def init(
        self,
        name: str,
        bundle_id: str,
        destination: str | Path,
        platforms: Optional[Iterable[Platform]] = None,
        pack: str = DEFAULT_PACK,
        overrides: Optional[dict[Platform, dict[str, str]]] = None,
    ) -> InitResult:
        """Create a new project in *destination* (absent or empty).

        Raises:
            ConfigError: If the name, identifier, or platforms are invalid.
            PackNotFound, DestinationNotEmpty, UnresolvedPlaceholder: Nothing
                was written.
            RenderIOError, GenerationError: The partial tree and the manifest
                are left on disk; fix the cause and regenerate.
        """
        config = make_config(name, bundle_id, platforms, pack, overrides)
        return await self._generate(config, Path(destination), regenerating=False)

    async def regenerate(self, destination: str | Path) -> InitResult:
        """Rebuild a project from its manifest.

        The pack is resolved and the render planned before anything is
        deleted, so pack and placeholder errors leave the project untouched.
        """
        root = Path(destination)
        config = load_config(root)
        pack = self.registry.get(config.template_pack)
        self.renderer.plan(pack, config)

        print_step_header(f"Regenerating {config.project_name}")
        await asyncio.to_thread(clear_directory, root)
        return await self._generate(config, root, regenerating=True, pack=pack)

    async def _generate(
        self,
        config: AppConfig,
        root: Path,
        regenerating: bool,
        pack: Optional[TemplatePack] = None,
    ) -> InitResult:
        if not regenerating:
            print_step_header(f"Creating {config.project_name}")
        try:
            ignore = VCS_DIRS if regenerating else ()
            tree = await self.renderer.render(pack or config.template_pack, config, root, ignore)
            console.print(f"  [green]+[/green] Rendered {len(tree.files)} files from {tree.pack}")
            projects: list[PlatformProject] = []
            for platform in config.sorted_platforms():
                project = await generate(platform, tree, config)
                console.print(f"  [green]+[/green] Generated {platform.display_name} project ({project.target})")
                projects.append(project)
        except (RenderIOError, GenerationError):
            if regenerating or not is_empty_dir(root):
                # keep the manifest so `init --regenerate` can recover
                await asyncio.to_thread(config.save, root)
            raise

        await asyncio.to_thread(config.save, root)
        return InitResult(root=root, config=config, tree=tree, projects=projects)

    # ------------------------------------------------------------------
    # Toolchain gate
    # ------------------------------------------------------------------

    async def _prepare(self, platform: Platform, project_root: Path) -> tuple[AppConfig, ToolchainInfo]:
        config = load_config(project_root)
        if not config.supports(platform):
            raise UnsupportedPlatformCombination(
                f"{config.project_name} was not generated for {platform.display_name}",
                platform=platform,
            )
        toolchain = await get_support(platform).locate(self.settings)
        for warning in toolchain.warnings:
            print_warning(f"  {warning}")
        logger.info("%s toolchain %s at %s", platform.display_name, toolchain.version, toolchain.root)

        project_dir = get_support(platform).project_dir(project_root)
        if not project_dir.is_dir():
            raise PreconditionError(
                f"{project_dir} does not exist; run `mobile-forge init --regenerate`",
                platform=platform,
                path=project_dir,
            )
        return config, toolchain

    # ------------------------------------------------------------------
    # open
    # ------------------------------------------------------------------

    async def open(self, platform: Platform, project_root: str | Path) -> None:
        """Open the generated project in Xcode or Android Studio."""
        root = Path(project_root)
        config, toolchain = await self._prepare(platform, root)
        support = get_support(platform)
        for step in support.open_steps(support.project_dir(root), config, toolchain):
            try:
                rc, stdout, stderr = await run_command(
                    step.command, cwd=step.cwd, timeout=self.settings.timeouts.step, env=step.env
                )
            except OSError as exc:
                raise PreconditionError(f"Failed to run {step.description}: {exc}", platform=platform) from exc
            if rc != 0:
                raise ForgeError(
                    f"{step.description} failed",
                    platform=platform,
                    command=" ".join(step.command),
                    exit_code=rc,
                    output=stderr or stdout,
                )

    # ------------------------------------------------------------------
    # build / run
    # ------------------------------------------------------------------

    async def build(
        self,
        platform: Platform,
        project_root: str | Path,
        profile: Profile = Profile.DEBUG,
    ) -> BuildSession:
        """Build the generated project.

        Raises:
            BuildError: If the build failed; carries the session.
        """
        root = Path(project_root)
        config, toolchain = await self._prepare(platform, root)
        return await self._build(platform, root, profile, config, toolchain)

    async def _build(
        self,
        platform: Platform,
        root: Path,
        profile: Profile,
        config: AppConfig,
        toolchain: ToolchainInfo,
    ) -> BuildSession:
        orchestrator = BuildOrchestrator(self.settings, self.noise)
        session = await orchestrator.build(platform, profile, toolchain, root, config)
        if not session.succeeded:
            raise BuildError(
                f"{platform.display_name} {profile.value} build failed: {session.failure_reason}",
                session=session,
                platform=platform,
                path=session.project_dir,
                command=session.command,
                exit_code=session.exit_code,
                output=session.diagnostics,
            )
        print_success(f"Built {session.artifact_path} in {format_duration(session.duration_seconds)}")
        return session

    async def run(
        self,
        platform: Platform,
        project_root: str | Path,
        profile: Profile = Profile.DEBUG,
        device_id: Optional[str] = None,
        log_level: Optional[str] = None,
        follow: bool = True,
        on_record: Optional[Callable[[LogRecord], None]] = None,
    ) -> DeviceSession:
        """Build, install, launch, and follow the app log.

        With *follow* the call only returns once the log stream ends (the
        log process exits or the task is cancelled); the stream is detached
        either way.
        """
        root = Path(project_root)
        log_filter = LogFilter.from_options(log_level, self.noise)
        config, toolchain = await self._prepare(platform, root)
        session = await self._build(platform, root, profile, config, toolchain)

        manager = DeviceSessionManager(self.settings)
        device_session = await manager.run(
            session, DeviceSelector(device_id=device_id), toolchain, config, log_filter
        )
        print_success(f"Launched {config.bundle_identifier} on {device_session.device.describe()}")
        if not follow:
            return device_session

        emit = on_record or _print_record
        stream = device_session.log_stream
        if stream is None:
            raise LogAttachFailed("No log stream attached to the device session", platform=platform)
        try:
            async for record in stream:
                emit(record)
        finally:
            await device_session.close()
        return device_session

    # ------------------------------------------------------------------
    # devices / packs / doctor
    # ------------------------------------------------------------------

    async def devices(self, platform: Optional[Platform] = None) -> dict[Platform, list[Device]]:
        """List devices per platform.

        With no *platform*, a platform whose toolchain or device listing
        fails is skipped with a warning instead of failing the listing.
        """
        platforms = [platform] if platform else [Platform.ANDROID, Platform.APPLE]
        found: dict[Platform, list[Device]] = {}
        manager = DeviceSessionManager(self.settings)
        for candidate in platforms:
            try:
                toolchain = await get_support(candidate).locate(self.settings)
                found[candidate] = await manager.discover(candidate, toolchain)
            except ForgeError as exc:
                if platform is not None:
                    raise
                print_warning(f"Skipping {candidate.display_name}: {exc.message}")
        return found

    def packs(self) -> list[TemplatePack]:
        packs = self.registry.discover()
        for skipped in self.registry.skipped:
            print_warning(f"Skipped malformed pack at {skipped.path}: {skipped.reason}")
        return packs

    async def doctor(self) -> DoctorReport:
        return await run_doctor(self.settings, self.registry)


def _print_record(record: LogRecord) -> None:
    styles = {"E": "red", "W": "yellow", "V": "dim", "D": "dim"}
    console.print(
        format_record(record),
        style=styles.get(record.level.letter),
        markup=False,
        highlight=False,
    )


# ---------------------------------------------------------------------------
# Error reporting
# ---------------------------------------------------------------------------

_OUTPUT_TAIL = 40


def report_error(exc: ForgeError) -> None:
    """Print *exc* with its context and remediation hint."""
    lines = [f"[bold]{exc.message}[/bold]"]
    for key, value in exc.details().items():
        lines.append(f"  {key}: {value}")
    if isinstance(exc, BuildError) and exc.session is not None and exc.session.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"  {err}" for err in exc.session.errors[:10])
    elif exc.output:
        tail = exc.output.splitlines()[-_OUTPUT_TAIL:]
        lines.append("")
        lines.extend(f"  [dim]{line}[/dim]" for line in tail)
    if exc.hint:
        lines.append("")
        lines.append(f"[cyan]{exc.hint}[/cyan]")
    title = f"{exc.category.capitalize()} error"
    console.print(Panel("\n".join(lines), title=title, border_style="red"))


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="mobile-forge",
        description="Scaffold cross-platform mobile apps and run them on devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  mobile-forge init Foo --bundle-id com.example.foo\n"
            "  mobile-forge init --regenerate --dir ./foo\n"
            "  mobile-forge run android -v\n"
            "  mobile-forge run apple --release --device 00008030-001A\n"
        ),
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="More output; repeat for even more (-vv)",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    platform_choices = [p.value for p in Platform]

    init = sub.add_parser("init", help="Create a project, or regenerate one from its manifest")
    init.add_argument("name", nargs="?", help="Project name, e.g. Foo")
    init.add_argument("--bundle-id", help="Reverse-DNS bundle identifier, e.g. com.example.foo")
    init.add_argument(
        "--platform",
        action="append",
        choices=platform_choices,
        help="Target platform (repeatable; default: all)",
    )
    init.add_argument("--pack", default=DEFAULT_PACK, help=f"Template pack reference (default: {DEFAULT_PACK})")
    init.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="PLATFORM.KEY=VALUE",
        help="Per-platform setting, e.g. apple.development_team=ABCDE12345",
    )
    init.add_argument("--dir", default=None, help="Project directory (default: ./<name_snake>, or . with --regenerate)")
    init.add_argument("--regenerate", action="store_true", help="Rebuild the project from mobile-forge.json")

    open_cmd = sub.add_parser("open", help="Open the generated project in the platform IDE")
    open_cmd.add_argument("platform", choices=platform_choices)
    open_cmd.add_argument("--dir", default=".", help="Project directory (default: .)")

    run = sub.add_parser("run", help="Build, install, launch, and follow the log")
    run.add_argument("platform", choices=platform_choices)
    run.add_argument("--release", action="store_true", help="Build the release profile")
    run.add_argument("--device", default=None, help="Exact device id to run on")
    run.add_argument(
        "--filter",
        default=None,
        metavar="LEVEL",
        help="Minimum log level: verbose, debug, info, warn, error",
    )
    run.add_argument("--dir", default=".", help="Project directory (default: .)")

    devices = sub.add_parser("devices", help="List connected devices")
    devices.add_argument("platform", nargs="?", choices=platform_choices)

    sub.add_parser("packs", help="List installed template packs")
    sub.add_parser("doctor", help="Report on the development environment")
    return parser


def _parse_overrides(assignments: list[str]) -> dict[Platform, dict[str, str]]:
    overrides: dict[Platform, dict[str, str]] = {}
    for assignment in assignments:
        platform, key, value = parse_override(assignment)
        overrides.setdefault(platform, {})[key] = value
    return overrides


async def _dispatch(pipeline: Pipeline, args) -> int:
    if args.command == "init":
        if args.regenerate:
            result = await pipeline.regenerate(args.dir or ".")
        else:
            config_dir = args.dir
            if config_dir is None:
                config_dir = snake_case(args.name)
            result = await pipeline.init(
                args.name,
                args.bundle_id,
                config_dir,
                platforms=[Platform(p) for p in args.platform or []],
                pack=args.pack,
                overrides=args.overrides,
            )
        print_summary_table(
            {
                "Project": result.config.project_name,
                "Bundle identifier": result.config.bundle_identifier,
                "Platforms": ", ".join(p.value for p in result.config.sorted_platforms()),
                "Template pack": result.tree.pack,
                "Directory": str(result.root),
            },
            title="Project",
        )
        print_success("Project ready.")
        return 0

    if args.command == "open":
        await pipeline.open(Platform(args.platform), args.dir)
        return 0

    if args.command == "run":
        await pipeline.run(
            Platform(args.platform),
            args.dir,
            profile=Profile.RELEASE if args.release else Profile.DEBUG,
            device_id=args.device,
            log_level=args.filter,
        )
        return 0

    if args.command == "devices":
        listing = await pipeline.devices(Platform(args.platform) if args.platform else None)
        for platform, found in listing.items():
            console.print(f"[bold]{platform.display_name}[/bold]")
            if not found:
                console.print("  [dim]no devices[/dim]")
            for device in found:
                mark = "[green]+[/green]" if device.connected else "[yellow]-[/yellow]"
                console.print(f"  {mark} {device.describe()}")
        return 0

    if args.command == "packs":
        packs = pipeline.packs()
        if not packs:
            print_warning("No template packs found.")
            return 1
        for pack in packs:
            origin = "built-in" if pack.builtin else str(pack.root)
            console.print(f"  [bold]{pack.reference}[/bold]  {pack.manifest.description}  [dim]({origin})[/dim]")
        return 0

    if args.command == "doctor":
        report = await pipeline.doctor()
        report.print()
        return 0 if report.healthy else 1

    raise ValueError(f"unknown command {args.command!r}")


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for ``mobile-forge`` / ``python -m mobile_forge``."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "init" and not args.regenerate and not (args.name and args.bundle_id):
        parser.error("init needs NAME and --bundle-id (or --regenerate)")
    if args.command == "run" and args.filter:
        try:
            LogFilter.from_options(args.filter)
        except ValueError as exc:
            parser.error(str(exc))
    if args.command == "init":
        try:
            args.overrides = _parse_overrides(args.set)
        except ValueError as exc:
            parser.error(str(exc))

    configure_logging(args.verbose)
    try:
        settings = ForgeSettings.from_env()
    except (ValueError, ValidationError) as exc:
        print_error(f"Error: invalid MOBILE_FORGE_* environment setting: {exc}")
        sys.exit(1)

    pipeline = Pipeline(settings, noise=NoiseLevel.from_verbosity(args.verbose))
    try:
        code = asyncio.run(_dispatch(pipeline, args))
    except ForgeError as exc:
        report_error(exc)
        sys.exit(1)
    except KeyboardInterrupt:
        print_warning("Interrupted.")
        sys.exit(130)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
