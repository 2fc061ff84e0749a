"""Shared machinery for the platform project generators.

Provides the Jinja2 :class:`DescriptorRenderer` that renders the descriptor
templates shipped in ``mobile_forge/templates/``, the generation
preconditions both generators check, and a deterministic writer for the
generated files.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from .config import AppConfig, Platform, identifier_problems
from .errors import GenerationIOError, InvalidIdentifier, UnsupportedPlatformCombination
from .utils import atomic_write, pascal_case, snake_case

# ---------------------------------------------------------------------------
# Template directory discovery
# ---------------------------------------------------------------------------

_DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"


# ---------------------------------------------------------------------------
# DescriptorRenderer
# ---------------------------------------------------------------------------


class DescriptorRenderer:
    """Renders the ``.j2`` descriptor templates shipped with mobile-forge.

    Undefined variables are errors, so a template can never silently emit an
    empty value.
    """

    def __init__(self, template_dir: str | Path | None = None) -> None:
        if template_dir is None:
            template_dir = _DEFAULT_TEMPLATE_DIR
        self.template_dir = Path(template_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape([]),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["pascal_case"] = pascal_case
        self.env.filters["snake_case"] = snake_case
        self.env.filters["kotlin_string"] = _kotlin_string_filter
        self.env.filters["xml_attr"] = _xml_attr_filter

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        """Render a single template with the provided context.

        Args:
            template_path: Path relative to the template directory (e.g.
                ``"android/build.gradle.kts.j2"``).
            context: Variables available inside the template.
        """
        template = self.env.get_template(template_path)
        return template.render(**context)

    def render_tree(self, template_prefix: str, context: dict[str, Any]) -> dict[str, str]:
        """Render every ``*.j2`` file under *template_prefix*.

        Returns:
            Output path (relative to the prefix, ``.j2`` stripped) -> content,
            in sorted path order.
        """
        rendered: dict[str, str] = {}
        for template_path in self.list_templates(template_prefix):
            rel = template_path[len(template_prefix) + 1:]
            rendered[rel[: -len(".j2")]] = self.render(template_path, context)
        return rendered

    def list_templates(self, prefix: str = "") -> list[str]:
        """Return a sorted list of all ``.j2`` template paths under *prefix*.

        Paths are relative to the template root directory, with forward
        slashes.
        """
        search_dir = self.template_dir / prefix if prefix else self.template_dir
        if not search_dir.is_dir():
            return []
        return sorted(p.relative_to(self.template_dir).as_posix() for p in search_dir.rglob("*.j2"))


# ---------------------------------------------------------------------------
# Jinja2 custom filters
# ---------------------------------------------------------------------------


def _kotlin_string_filter(value: str) -> str:
    """Escape *value* for a double-quoted Kotlin string literal."""
    return str(value).replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")


def _xml_attr_filter(value: str) -> str:
    """Escape *value* for a double-quoted XML attribute."""
    return (
        str(value)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


# ---------------------------------------------------------------------------
# Generation helpers
# ---------------------------------------------------------------------------


def check_generation(platform: Platform, config: AppConfig) -> None:
    """Verify *config* can produce a *platform* project.

    Raises:
        UnsupportedPlatformCombination: If *platform* is not selected.
        InvalidIdentifier: If the bundle identifier breaks the rules of the
            selected platforms.
    """
    if not config.supports(platform):
        selected = ", ".join(p.value for p in config.sorted_platforms())
        raise UnsupportedPlatformCombination(
            f"{platform.display_name} is not among the project's platforms ({selected})",
            platform=platform,
        )
    problems = identifier_problems(config.bundle_identifier, config.supported_platforms)
    if problems:
        raise InvalidIdentifier(
            f"Bundle identifier {config.bundle_identifier!r} is invalid: " + "; ".join(problems),
            platform=platform,
        )


async def write_files(platform: Platform, directory: Path, files: dict[str, str]) -> list[str]:
    """Write generated *files* (relative path -> text) below *directory*.

    Content is written as UTF-8 with ``\\n`` line endings, atomically per
    file.

    Returns:
        The written relative paths, sorted.

    Raises:
        GenerationIOError: If a write fails.
    """
    for rel in sorted(files):
        target = directory / rel
        data = files[rel].replace("\r\n", "\n").encode("utf-8")
        try:
            await asyncio.to_thread(atomic_write, target, data)
        except OSError as exc:
            raise GenerationIOError(
                f"Failed to write {target}: {exc}",
                platform=platform,
                path=target,
            ) from exc
    return sorted(files)
