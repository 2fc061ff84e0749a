"""Pure rendering plan: (pack entries, manifest, config) -> files to write.

Nothing in this module touches the destination file system, which keeps the
determinism and totality properties testable on in-memory entries.
Substitution is exact-token replacement in a single pass: values are never
re-scanned and no expression is ever evaluated.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..config import AppConfig, Platform
from ..errors import RenderError, UnresolvedPlaceholder
from .pack import PackEntry, PackManifest, PackRule

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class PlannedFile:
    """A file the renderer will write, relative to the destination."""

    path: str
    data: bytes
    mode: int
    source: str


@dataclass
class RenderPlan:
    files: list[PlannedFile] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)

    @property
    def paths(self) -> list[str]:
        return [planned.path for planned in self.files]


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


def build_context(config: AppConfig) -> dict[str, str]:
    """Built-in tokens every pack can use."""
    context = {
        "name": config.project_name,
        "project_name": config.project_name,
        "name_snake": config.name_snake,
        "name_pascal": config.name_pascal,
        "bundle_id": config.bundle_identifier,
        "bundle_identifier": config.bundle_identifier,
        "domain": config.domain,
        "package_path": config.package_path,
        "platforms": ",".join(p.value for p in config.sorted_platforms()),
    }
    for platform, settings in config.overrides.items():
        for key, value in settings.items():
            context[f"{platform.value}.{key}"] = value
    return context


def substitute(text: str, pattern: re.Pattern[str], context: dict[str, str]) -> tuple[str, list[str]]:
    """Replace every token in *text* whose name is in *context*.

    Returns:
        The substituted text and the names of tokens left unresolved, in
        order of first appearance.
    """
    missing: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        token = match.group(1)
        if token in context:
            return context[token]
        if token not in missing:
            missing.append(token)
        return match.group(0)

    return pattern.sub(_replace, text), missing


def resolve_placeholders(manifest: PackManifest, context: dict[str, str]) -> tuple[dict[str, str], list[str]]:
    """Evaluate the pack-declared placeholders against the built-in context.

    Pack placeholders never shadow built-in tokens.
    """
    pattern = manifest.token.pattern()
    resolved = dict(context)
    missing: list[str] = []
    for token, template in sorted(manifest.placeholders.items()):
        if token in context:
            continue
        value, unresolved = substitute(template, pattern, context)
        resolved[token] = value
        missing.extend(t for t in unresolved if t not in missing)
    return resolved, missing


# ---------------------------------------------------------------------------
# Inclusion rules
# ---------------------------------------------------------------------------


def rule_allows(rule: PackRule, config: AppConfig) -> bool:
    if rule.platforms and not any(config.supports(p) for p in rule.platforms):
        return False
    if rule.override:
        platform_name, _, key = rule.override.partition(".")
        try:
            platform = Platform(platform_name)
        except ValueError:
            return False
        if config.override(platform, key).strip().lower() not in _TRUTHY:
            return False
    return True


def is_included(rel_path: str, rules: Iterable[PackRule], config: AppConfig) -> bool:
    """Every rule matching *rel_path* must allow it."""
    return all(rule_allows(rule, config) for rule in rules if rule.matches(rel_path))


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def _check_output_path(path: str, source: str) -> None:
    segments = path.split("/")
    if path.startswith("/") or any(seg in ("", ".", "..") for seg in segments):
        raise RenderError(
            f"Template path {source!r} renders to {path!r}, which is not a clean relative path"
        )


def plan_render(entries: Iterable[PackEntry], manifest: PackManifest, config: AppConfig) -> RenderPlan:
    """Compute the full rendered tree for *config* without writing anything.

    Raises:
        UnresolvedPlaceholder: If any token in an included path or file has
            no value.  Nothing has been written at that point.
        RenderError: If two template files render to the same path or a path
            escapes the destination.
    """
    pattern = manifest.token.pattern()
    context, placeholder_missing = resolve_placeholders(manifest, build_context(config))

    unresolved: dict[str, list[str]] = {}
    for token in placeholder_missing:
        unresolved.setdefault(token, []).append("pack.yaml")

    plan = RenderPlan()
    seen: dict[str, str] = {}
    for entry in sorted(entries, key=lambda e: e.path):
        if not is_included(entry.path, manifest.rules, config):
            plan.excluded.append(entry.path)
            continue

        out_path, missing = substitute(entry.path, pattern, context)

        data = entry.data
        if not manifest.is_verbatim(entry.path):
            try:
                text = entry.data.decode("utf-8")
            except UnicodeDecodeError:
                # binary: only the path is substituted
                text = None
            if text is not None:
                rendered, content_missing = substitute(text, pattern, context)
                missing.extend(t for t in content_missing if t not in missing)
                data = rendered.encode("utf-8")

        for token in missing:
            unresolved.setdefault(token, []).append(entry.path)
        if unresolved:
            continue
        _check_output_path(out_path, entry.path)
        if out_path in seen:
            raise RenderError(
                f"Template files {seen[out_path]!r} and {entry.path!r} both render to {out_path!r}"
            )
        seen[out_path] = entry.path
        plan.files.append(PlannedFile(path=out_path, data=data, mode=entry.mode, source=entry.path))

    if unresolved:
        listing = "; ".join(
            f"{manifest.token.open}{token}{manifest.token.close} in {', '.join(paths)}"
            for token, paths in sorted(unresolved.items())
        )
        raise UnresolvedPlaceholder(
            f"Template pack {manifest.name}@{manifest.version} has unresolved placeholders: {listing}",
            tokens=unresolved,
        )
    return plan
