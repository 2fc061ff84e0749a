"""Xcode project generation (XcodeGen spec).

The project graph is built as plain dictionaries and serialized with sorted
keys, so two generations from the same inputs are byte-identical.
``xcodegen`` turns ``project.yml`` into the ``.xcodeproj`` at build time.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Any

import yaml

from ..config import AppConfig, Platform, Profile
from ..descriptors import check_generation, write_files
from ..platform import PlatformProject
from ..templating.renderer import RenderedTree
from ..utils import relative_posix

logger = logging.getLogger(__name__)

SPEC_FILE = "project.yml"
SOURCE_PREFIX = "apple"

DEFAULT_DEPLOYMENT_TARGET = "15.0"
DEFAULT_SDK = "iphonesimulator"

SOURCE_EXTENSIONS = frozenset({".swift", ".m", ".mm", ".c", ".cc", ".cpp", ".metal"})
HEADER_EXTENSIONS = frozenset({".h", ".hh", ".hpp"})
# Directories Xcode treats as a single resource.
BUNDLE_EXTENSIONS = (".xcassets", ".bundle", ".xcdatamodeld", ".storyboardc")
IGNORED_NAMES = frozenset({".DS_Store", "Info.plist"})


def target_name(config: AppConfig) -> str:
    """Application target and scheme name, ``<Name>_iOS``."""
    return f"{config.name_pascal}_iOS"


def product_name(config: AppConfig) -> str:
    return config.name_pascal


def apple_sdk(config: AppConfig) -> str:
    return config.override(Platform.APPLE, "sdk", DEFAULT_SDK)


def collect_build_phases(files: list[str]) -> dict[str, list[str]]:
    """Sort rendered ``apple/`` files into sources, resources, and headers.

    Files inside a bundle directory (``Assets.xcassets/...``) collapse into a
    single resource entry for the directory.
    """
    phases: dict[str, set[str]] = {"sources": set(), "resources": set(), "headers": set()}
    for rel in files:
        parts = PurePosixPath(rel).parts
        bundle = next((i for i, part in enumerate(parts[:-1]) if part.endswith(BUNDLE_EXTENSIONS)), None)
        if bundle is not None:
            phases["resources"].add("/".join(parts[: bundle + 1]))
            continue
        name = parts[-1]
        if name in IGNORED_NAMES:
            continue
        suffix = PurePosixPath(name).suffix
        if suffix in SOURCE_EXTENSIONS:
            phases["sources"].add(rel)
        elif suffix in HEADER_EXTENSIONS:
            phases["headers"].add(rel)
        else:
            phases["resources"].add(rel)
    return {phase: sorted(paths) for phase, paths in phases.items()}


def build_spec(tree: RenderedTree, config: AppConfig, project_dir: Path) -> dict[str, Any]:
    """The XcodeGen project spec as a dictionary."""
    target = target_name(config)
    deployment_target = config.override(Platform.APPLE, "deployment_target", DEFAULT_DEPLOYMENT_TARGET)
    source_root = tree.root / SOURCE_PREFIX

    sources: list[dict[str, Any]] = []
    for phase, paths in collect_build_phases(tree.subtree(SOURCE_PREFIX)).items():
        for rel in paths:
            entry: dict[str, Any] = {
                "path": relative_posix(source_root / rel, project_dir),
                "buildPhase": phase,
            }
            if phase == "headers":
                entry["headerVisibility"] = "project"
            sources.append(entry)
    sources.sort(key=lambda entry: entry["path"])

    settings = {
        "PRODUCT_BUNDLE_IDENTIFIER": config.bundle_identifier,
        "PRODUCT_NAME": product_name(config),
        "DEVELOPMENT_TEAM": config.override(Platform.APPLE, "development_team"),
        "INFOPLIST_KEY_CFBundleDisplayName": config.project_name,
        "GENERATE_INFOPLIST_FILE": "YES",
        "INFOPLIST_KEY_UILaunchScreen_Generation": "YES",
        "IPHONEOS_DEPLOYMENT_TARGET": deployment_target,
        "MARKETING_VERSION": config.override(Platform.APPLE, "version", "1.0"),
        "CURRENT_PROJECT_VERSION": config.override(Platform.APPLE, "build_number", "1"),
        "TARGETED_DEVICE_FAMILY": "1,2",
    }

    return {
        "name": product_name(config),
        "options": {
            "bundleIdPrefix": config.domain,
            "deploymentTarget": {"iOS": deployment_target},
        },
        "targets": {
            target: {
                "type": "application",
                "platform": "iOS",
                "deploymentTarget": deployment_target,
                "sources": sources,
                "settings": {"base": settings},
            }
        },
        "schemes": {
            target: {
                "build": {"targets": {target: "all"}},
                "run": {"config": Profile.DEBUG.title},
                "archive": {"config": Profile.RELEASE.title},
            }
        },
    }


def render_spec(spec: dict[str, Any]) -> str:
    return yaml.safe_dump(spec, sort_keys=True, default_flow_style=False, allow_unicode=True)


async def generate_apple(tree: RenderedTree, config: AppConfig, project_dir: Path) -> PlatformProject:
    """Write ``project.yml`` for *tree* into *project_dir*.

    Raises:
        UnsupportedPlatformCombination: If Apple is not selected.
        InvalidIdentifier: If the bundle identifier is invalid.
        GenerationIOError: If the write fails.
    """
    check_generation(Platform.APPLE, config)
    if not tree.has_subtree(SOURCE_PREFIX):
        logger.warning("template pack rendered no %s/ sources; the target will be empty", SOURCE_PREFIX)

    spec = build_spec(tree, config, project_dir)
    written = await write_files(Platform.APPLE, project_dir, {SPEC_FILE: render_spec(spec)})
    logger.info("generated XcodeGen spec %s", project_dir / SPEC_FILE)

    return PlatformProject(
        platform=Platform.APPLE,
        directory=project_dir,
        descriptor=project_dir / SPEC_FILE,
        target=target_name(config),
        files=written,
    )
