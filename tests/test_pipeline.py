"""Unit tests for the command pipeline (mobile_forge.pipeline).

Tests cover:
- make_config / load_config error reporting
- Pipeline.init end-to-end against the built-in pack
- Recovery rules: what is (not) left on disk when init fails
- Pipeline.regenerate
- Toolchain gate, open, build failures, run with a mocked device session
- Device listing that skips broken platforms
- report_error rendering
- main() argument handling
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml

from mobile_forge.android.logcat import map_logcat_line
from mobile_forge.build import BuildSession, BuildStep
from mobile_forge.config import MANIFEST_NAME, AppConfig, Platform, Profile
from mobile_forge.device import ConnectionState, Device, DeviceKind, DeviceSession, DeviceSessionManager
from mobile_forge.errors import (
    BuildError,
    ConfigError,
    DestinationNotEmpty,
    ForgeError,
    GenerationError,
    LogAttachFailed,
    PackNotFound,
    PreconditionError,
    ToolchainNotFound,
    UnresolvedPlaceholder,
    UnsupportedPlatformCombination,
)
from mobile_forge.logs import LogFilter, LogLevel, LogStream
from mobile_forge.pipeline import Pipeline, load_config, main, make_config, report_error
from mobile_forge.templating.pack import BUILTIN_PACKS_DIR, TemplatePackRegistry
from mobile_forge.toolchain import ToolchainInfo
from mobile_forge.utils import console


def _tree(root: Path) -> dict[str, bytes]:
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def pipeline(settings) -> Pipeline:
    return Pipeline(settings)


@pytest.fixture
def custom_pipeline(settings, tmp_path: Path) -> Pipeline:
    """A pipeline that also sees packs written by the ``make_pack`` fixture."""
    registry = TemplatePackRegistry(search_paths=[tmp_path / "packs", BUILTIN_PACKS_DIR])
    return Pipeline(settings, registry=registry)


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------


class TestConfigHelpers:
    @pytest.mark.unit
    def test_make_config_defaults(self):
        config = make_config("Foo", "com.example.foo")
        assert config.supported_platforms == {Platform.APPLE, Platform.ANDROID}
        assert config.template_pack == "basic"

    @pytest.mark.unit
    def test_make_config_invalid_identifier(self):
        with pytest.raises(ConfigError, match="bundle identifier"):
            make_config("Foo", "com.example.my-app")

    @pytest.mark.unit
    def test_platform_selection_changes_identifier_rules(self):
        config = make_config("Foo", "com.example.my_app", platforms=[Platform.ANDROID])
        assert config.supported_platforms == {Platform.ANDROID}

    @pytest.mark.unit
    def test_load_config_missing(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not a mobile-forge project"):
            load_config(tmp_path)

    @pytest.mark.unit
    def test_load_config_invalid(self, tmp_path: Path):
        (tmp_path / MANIFEST_NAME).write_text('{"project_name": "Foo"}', encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid mobile-forge.json"):
            load_config(tmp_path)


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


class TestInit:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_complete_project(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        result = await pipeline.init("Foo", "com.example.foo", root)

        assert [p.platform for p in result.projects] == [Platform.ANDROID, Platform.APPLE]
        assert AppConfig.load(root) == result.config
        assert (root / "apple" / "Sources" / "FooApp.swift").is_file()
        assert (root / "android/src/main/java/com/example/foo/MainActivity.kt").is_file()
        assert (root / "gen" / "android" / "settings.gradle.kts").is_file()
        assert (root / "gen" / "android" / "app" / "build.gradle.kts").is_file()

        spec = yaml.safe_load((root / "gen" / "apple" / "project.yml").read_text(encoding="utf-8"))
        assert "Foo_iOS" in spec["targets"]

        manifest = json.loads((root / MANIFEST_NAME).read_text(encoding="utf-8"))
        assert manifest["supported_platforms"] == ["android", "apple"]
        assert manifest["bundle_identifier"] == "com.example.foo"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_android_only(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        result = await pipeline.init("Foo", "com.example.my_app", root, platforms=[Platform.ANDROID])

        assert [p.platform for p in result.projects] == [Platform.ANDROID]
        assert not (root / "apple").exists()
        assert not (root / "gen" / "apple").exists()
        assert (root / "gen" / "android" / "settings.gradle.kts").is_file()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_config_writes_nothing(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        with pytest.raises(ConfigError):
            await pipeline.init("Foo", "foo", root)
        assert not root.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_empty_destination(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        root.mkdir()
        (root / "notes.txt").write_text("mine", encoding="utf-8")

        with pytest.raises(DestinationNotEmpty):
            await pipeline.init("Foo", "com.example.foo", root)

        assert _tree(root) == {"notes.txt": b"mine"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unresolved_placeholder_writes_nothing(self, custom_pipeline, make_pack, tmp_path: Path):
        make_pack({"README.md": "# {{name}} by {{author}}"}, name="broken")
        root = tmp_path / "foo"

        with pytest.raises(UnresolvedPlaceholder) as exc_info:
            await custom_pipeline.init("Foo", "com.example.foo", root, pack="broken")

        assert "author" in exc_info.value.tokens
        assert not root.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_pack(self, pipeline, tmp_path: Path):
        with pytest.raises(PackNotFound):
            await pipeline.init("Foo", "com.example.foo", tmp_path / "foo", pack="fancy")
        assert not (tmp_path / "foo").exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_generation_failure_keeps_manifest(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        with pytest.raises(GenerationError):
            await pipeline.init(
                "Foo",
                "com.example.foo",
                root,
                overrides={Platform.ANDROID: {"min_sdk": "twenty-four"}},
            )

        assert (root / MANIFEST_NAME).is_file()
        assert (root / "README.md").is_file()
        assert AppConfig.load(root).override(Platform.ANDROID, "min_sdk") == "twenty-four"


# ---------------------------------------------------------------------------
# regenerate
# ---------------------------------------------------------------------------


class TestRegenerate:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rebuilds_from_manifest(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)
        (root / "stray.txt").write_text("left over", encoding="utf-8")

        manifest = json.loads((root / MANIFEST_NAME).read_text(encoding="utf-8"))
        manifest["overrides"] = {"android": {"min_sdk": "26"}}
        (root / MANIFEST_NAME).write_text(json.dumps(manifest), encoding="utf-8")

        result = await pipeline.regenerate(root)

        assert not (root / "stray.txt").exists()
        gradle = (root / "gen" / "android" / "app" / "build.gradle.kts").read_text(encoding="utf-8")
        assert "minSdk = 26" in gradle
        assert result.config.override(Platform.ANDROID, "min_sdk") == "26"
        assert AppConfig.load(root) == result.config

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keeps_version_control(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)
        (root / ".git").mkdir()
        (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")

        await pipeline.regenerate(root)

        assert (root / ".git" / "HEAD").read_text(encoding="utf-8") == "ref: refs/heads/main\n"
        assert (root / "gen" / "android" / "settings.gradle.kts").is_file()
        assert AppConfig.load(root).bundle_identifier == "com.example.foo"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_regeneration_is_deterministic(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)
        before = _tree(root)
        await pipeline.regenerate(root)
        assert _tree(root) == before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_manifest(self, pipeline, tmp_path: Path):
        with pytest.raises(ConfigError):
            await pipeline.regenerate(tmp_path)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_pack_leaves_project_untouched(self, custom_pipeline, make_pack, tmp_path: Path):
        pack = make_pack({"README.md": "# {{name}}\n"}, name="tiny")
        root = tmp_path / "foo"
        await custom_pipeline.init("Foo", "com.example.foo", root, pack="tiny")
        before = _tree(root)

        shutil.rmtree(pack.root)
        with pytest.raises(PackNotFound):
            await custom_pipeline.regenerate(root)

        assert _tree(root) == before


# ---------------------------------------------------------------------------
# build / run
# ---------------------------------------------------------------------------

TOOLCHAIN = ToolchainInfo(Platform.ANDROID, Path("/sdk"), "34.0.5", tools={"adb": Path("/sdk/platform-tools/adb")})


def _located_support(root: Path) -> MagicMock:
    support = MagicMock()
    support.locate = AsyncMock(return_value=TOOLCHAIN)
    support.project_dir.return_value = root / "gen" / "android"
    return support


def _finished(root: Path, succeeded: bool) -> BuildSession:
    session = BuildSession(Platform.ANDROID, Profile.DEBUG, root / "gen" / "android")
    session.start()
    if succeeded:
        session.succeed(root / "app-debug.apk")
    else:
        session.command = "gradle assembleDebug"
        session.exit_code = 1
        session.diagnostics = "e: Main.kt: (3, 1): Unresolved reference: foo\nFAILURE: Build failed"
        session.errors = ["e: Main.kt: (3, 1): Unresolved reference: foo"]
        session.fail("gradle assembleDebug exited with status 1")
    return session


class TestBuildAndRun:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsupported_platform(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root, platforms=[Platform.ANDROID])
        with patch("mobile_forge.pipeline.get_support") as get_support:
            with pytest.raises(UnsupportedPlatformCombination):
                await pipeline.build(Platform.APPLE, root)
        get_support.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_generated_project(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)
        shutil.rmtree(root / "gen" / "android")
        with patch("mobile_forge.pipeline.get_support", return_value=_located_support(root)):
            with pytest.raises(PreconditionError, match="--regenerate"):
                await pipeline.build(Platform.ANDROID, root)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_toolchain_missing(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)
        support = _located_support(root)
        support.locate = AsyncMock(side_effect=ToolchainNotFound("no SDK", platform=Platform.ANDROID))
        with patch("mobile_forge.pipeline.get_support", return_value=support), patch(
            "mobile_forge.pipeline.BuildOrchestrator"
        ) as orchestrator:
            with pytest.raises(ToolchainNotFound):
                await pipeline.build(Platform.ANDROID, root)
        orchestrator.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_build_raises(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)
        failed = _finished(root, succeeded=False)

        with patch("mobile_forge.pipeline.get_support", return_value=_located_support(root)), patch(
            "mobile_forge.pipeline.BuildOrchestrator"
        ) as orchestrator:
            orchestrator.return_value.build = AsyncMock(return_value=failed)
            with pytest.raises(BuildError) as exc_info:
                await pipeline.build(Platform.ANDROID, root)

        err = exc_info.value
        assert err.session is failed
        assert err.exit_code == 1
        assert err.command == "gradle assembleDebug"
        assert "Unresolved reference" in err.output

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_build_never_reaches_devices(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)

        with patch("mobile_forge.pipeline.get_support", return_value=_located_support(root)), patch(
            "mobile_forge.pipeline.BuildOrchestrator"
        ) as orchestrator, patch("mobile_forge.pipeline.DeviceSessionManager") as manager:
            orchestrator.return_value.build = AsyncMock(return_value=_finished(root, succeeded=False))
            with pytest.raises(BuildError):
                await pipeline.run(Platform.ANDROID, root)
        manager.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_follows_log(self, pipeline, streaming_process, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)
        build = _finished(root, succeeded=True)
        device = Device("R58M", Platform.ANDROID, DeviceKind.PHYSICAL, ConnectionState.CONNECTED, "Pixel 8")

        stream = LogStream(
            streaming_process(
                [
                    "10-19 12:34:56.001  1234  1240 I Foo: started",
                    "10-19 12:34:56.002  1234  1240 E Foo: crashed",
                ]
            ),
            map_logcat_line,
            LogFilter(LogLevel.INFO),
        )
        stream.start()
        session = DeviceSession(device=device, build=build, app_id="com.example.foo", log_stream=stream)
        received = []

        with patch("mobile_forge.pipeline.get_support", return_value=_located_support(root)), patch(
            "mobile_forge.pipeline.BuildOrchestrator"
        ) as orchestrator, patch("mobile_forge.pipeline.DeviceSessionManager") as manager:
            orchestrator.return_value.build = AsyncMock(return_value=build)
            manager.return_value.run = AsyncMock(return_value=session)
            result = await pipeline.run(Platform.ANDROID, root, device_id="R58M", on_record=received.append)

        assert result is session
        assert [r.message for r in received] == ["started", "crashed"]
        selector = manager.return_value.run.await_args[0][1]
        assert selector.device_id == "R58M"
        assert not session.attached

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_without_log_stream(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)
        build = _finished(root, succeeded=True)
        device = Device("R58M", Platform.ANDROID, DeviceKind.PHYSICAL, ConnectionState.CONNECTED)
        session = DeviceSession(device=device, build=build, app_id="com.example.foo")

        with patch("mobile_forge.pipeline.get_support", return_value=_located_support(root)), patch(
            "mobile_forge.pipeline.BuildOrchestrator"
        ) as orchestrator, patch("mobile_forge.pipeline.DeviceSessionManager") as manager:
            orchestrator.return_value.build = AsyncMock(return_value=build)
            manager.return_value.run = AsyncMock(return_value=session)
            with pytest.raises(LogAttachFailed, match="No log stream"):
                await pipeline.run(Platform.ANDROID, root)


class TestOpen:
    def _support(self, root: Path) -> MagicMock:
        support = _located_support(root)
        support.open_steps.return_value = [
            BuildStep(description="open Android Studio", command=["studio", str(root / "gen" / "android")], cwd=root)
        ]
        return support

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_runs_ide_command(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)
        with patch("mobile_forge.pipeline.get_support", return_value=self._support(root)), patch(
            "mobile_forge.pipeline.run_command", new=AsyncMock(return_value=(0, "", ""))
        ) as mock_run:
            await pipeline.open(Platform.ANDROID, root)
        assert mock_run.await_args[0][0] == ["studio", str(root / "gen" / "android")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ide_command_failure(self, pipeline, tmp_path: Path):
        root = tmp_path / "foo"
        await pipeline.init("Foo", "com.example.foo", root)
        with patch("mobile_forge.pipeline.get_support", return_value=self._support(root)), patch(
            "mobile_forge.pipeline.run_command", new=AsyncMock(return_value=(1, "", "cannot open display"))
        ):
            with pytest.raises(ForgeError, match="open Android Studio failed") as exc_info:
                await pipeline.open(Platform.ANDROID, root)
        assert exc_info.value.output == "cannot open display"


# ---------------------------------------------------------------------------
# devices / packs
# ---------------------------------------------------------------------------


class TestListing:
    SIMULATOR = Device("SIM-1", Platform.APPLE, DeviceKind.EMULATOR, ConnectionState.CONNECTED, "iPhone 15")

    def _supports(self):
        android = MagicMock()
        android.locate = AsyncMock(side_effect=ToolchainNotFound("Android SDK not found", platform=Platform.ANDROID))
        apple = MagicMock()
        apple.locate = AsyncMock(return_value=ToolchainInfo(Platform.APPLE, Path("/Xcode"), "15.2"))
        return {Platform.ANDROID: android, Platform.APPLE: apple}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_all_platforms_skips_failures(self, pipeline):
        supports = self._supports()
        with patch("mobile_forge.pipeline.get_support", side_effect=supports.__getitem__), patch.object(
            DeviceSessionManager, "discover", new=AsyncMock(return_value=[self.SIMULATOR])
        ):
            listing = await pipeline.devices()
        assert listing == {Platform.APPLE: [self.SIMULATOR]}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_platform_reports_failure(self, pipeline):
        supports = self._supports()
        with patch("mobile_forge.pipeline.get_support", side_effect=supports.__getitem__):
            with pytest.raises(ToolchainNotFound):
                await pipeline.devices(Platform.ANDROID)

    @pytest.mark.unit
    def test_packs(self, pipeline):
        assert [p.reference for p in pipeline.packs()] == ["basic@1.0.0"]


# ---------------------------------------------------------------------------
# report_error
# ---------------------------------------------------------------------------


class TestReportError:
    @pytest.mark.unit
    def test_build_error_lists_compiler_errors(self, tmp_path: Path):
        session = _finished(tmp_path, succeeded=False)
        exc = BuildError("Android debug build failed", session=session, platform=Platform.ANDROID, exit_code=1)
        with console.capture() as capture:
            report_error(exc)
        text = capture.get()
        assert "Android debug build failed" in text
        assert "Exit code: 1" in text
        assert "Unresolved reference: foo" in text

    @pytest.mark.unit
    def test_output_tail_and_hint(self):
        exc = ToolchainNotFound("Android SDK not found", output="\n".join(f"line {i}" for i in range(100)))
        with console.capture() as capture:
            report_error(exc)
        text = capture.get()
        assert "line 99" in text
        assert "line 60" in text
        assert "line 59" not in text


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestMain:
    @pytest.fixture(autouse=True)
    def _home(self, monkeypatch, tmp_path: Path):
        monkeypatch.setenv("MOBILE_FORGE_HOME", str(tmp_path / "forge-home"))

    @pytest.mark.unit
    def test_init(self, tmp_path: Path):
        root = tmp_path / "foo"
        main(["init", "Foo", "--bundle-id", "com.example.foo", "--dir", str(root), "--set", "android.min_sdk=26"])

        config = AppConfig.load(root)
        assert config.override(Platform.ANDROID, "min_sdk") == "26"
        assert (root / "gen" / "apple" / "project.yml").is_file()

    @pytest.mark.unit
    def test_init_default_directory(self, monkeypatch, tmp_path: Path):
        monkeypatch.chdir(tmp_path)
        main(["init", "My App", "--bundle-id", "com.example.myapp", "--platform", "android"])
        assert AppConfig.load(tmp_path / "my_app").supported_platforms == {Platform.ANDROID}

    @pytest.mark.unit
    def test_invalid_identifier_exits_1(self, tmp_path: Path):
        with pytest.raises(SystemExit) as exc_info:
            main(["init", "Foo", "--bundle-id", "com..foo", "--dir", str(tmp_path / "foo")])
        assert exc_info.value.code == 1
        assert not (tmp_path / "foo").exists()

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "argv",
        [
            ["init", "Foo"],
            ["init", "Foo", "--bundle-id", "com.example.foo", "--set", "min_sdk"],
            ["run", "android", "--filter", "loud"],
            ["run", "windows"],
        ],
    )
    def test_usage_errors_exit_2(self, argv):
        with pytest.raises(SystemExit) as exc_info:
            main(argv)
        assert exc_info.value.code == 2

    @pytest.mark.unit
    def test_regenerate(self, tmp_path: Path):
        root = tmp_path / "foo"
        main(["init", "Foo", "--bundle-id", "com.example.foo", "--dir", str(root)])
        (root / "README.md").unlink()
        main(["init", "--regenerate", "--dir", str(root)])
        assert (root / "README.md").is_file()

    @pytest.mark.unit
    def test_packs(self):
        main(["packs"])
