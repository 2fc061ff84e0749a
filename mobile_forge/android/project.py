"""Android Gradle project generation.

Writes a small Gradle build under ``gen/android`` whose single ``app``
module compiles the rendered ``android/`` subtree in place, so pack sources
are never copied.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from ..config import AppConfig, Platform
from ..descriptors import DescriptorRenderer, check_generation, write_files
from ..errors import GenerationError
from ..platform import PlatformProject
from ..templating.renderer import RenderedTree
from ..utils import relative_posix

logger = logging.getLogger(__name__)

APP_MODULE = "app"
SOURCE_PREFIX = "android"

DEFAULTS = {
    "compile_sdk": "34",
    "min_sdk": "24",
    "target_sdk": "34",
    "version_code": "1",
    "version_name": "1.0",
    "launch_activity": ".MainActivity",
    "agp_version": "8.2.2",
    "kotlin_version": "1.9.22",
}
_NUMERIC = ("compile_sdk", "min_sdk", "target_sdk", "version_code")

# Gradle source set -> directories under src/main that feed it
_SOURCE_SETS = (
    ("java", ("java", "kotlin")),
    ("res", ("res",)),
    ("assets", ("assets",)),
    ("jniLibs", ("jniLibs",)),
)


def android_setting(config: AppConfig, key: str) -> str:
    return config.override(Platform.ANDROID, key, DEFAULTS.get(key, ""))


def launch_component(config: AppConfig) -> str:
    """``<applicationId>/<activity>`` as ``am start -n`` expects it."""
    return f"{config.bundle_identifier}/{android_setting(config, 'launch_activity')}"


def source_sets(tree: RenderedTree, app_dir: Path) -> list[tuple[str, list[str]]]:
    """Map the rendered ``android/src/main/*`` directories onto Gradle source sets.

    Only directories the pack actually rendered are listed.
    """
    present = {
        path.split("/")[2]
        for path in tree.subtree(SOURCE_PREFIX)
        if path.startswith("src/main/") and path.count("/") >= 3
    }
    main_dir = tree.root / SOURCE_PREFIX / "src" / "main"
    result: list[tuple[str, list[str]]] = []
    for gradle_set, dirs in _SOURCE_SETS:
        found = [relative_posix(main_dir / d, app_dir) for d in dirs if d in present]
        if found:
            result.append((gradle_set, found))
    return result


def build_context(tree: RenderedTree, config: AppConfig, project_dir: Path) -> dict[str, Any]:
    """Template context for the Gradle descriptors.

    Raises:
        GenerationError: If a numeric override is not an integer.
    """
    settings = {key: android_setting(config, key) for key in DEFAULTS}
    for key in _NUMERIC:
        if not settings[key].isdigit():
            raise GenerationError(
                f"android.{key} must be a positive integer, got {settings[key]!r}",
                platform=Platform.ANDROID,
            )
    return {
        **settings,
        "app_name": config.name_pascal,
        "display_name": config.project_name,
        "application_id": config.bundle_identifier,
        "source_sets": source_sets(tree, project_dir / APP_MODULE),
    }


async def generate_android(
    tree: RenderedTree,
    config: AppConfig,
    project_dir: Path,
    renderer: DescriptorRenderer | None = None,
) -> PlatformProject:
    """Write the Gradle project for *tree* into *project_dir*.

    Raises:
        UnsupportedPlatformCombination: If Android is not selected.
        InvalidIdentifier: If the bundle identifier is not a valid package.
        GenerationError: If an override is malformed.
        GenerationIOError: If a write fails.
    """
    check_generation(Platform.ANDROID, config)
    if not tree.has_subtree(SOURCE_PREFIX):
        logger.warning("template pack rendered no %s/ sources; the app module will be empty", SOURCE_PREFIX)

    renderer = renderer or DescriptorRenderer()
    context = build_context(tree, config, project_dir)
    files = renderer.render_tree("android", context)
    written = await write_files(Platform.ANDROID, project_dir, files)
    logger.info("generated Android project in %s (%d files)", project_dir, len(written))

    return PlatformProject(
        platform=Platform.ANDROID,
        directory=project_dir,
        descriptor=project_dir / "settings.gradle.kts",
        target=APP_MODULE,
        files=written,
    )
