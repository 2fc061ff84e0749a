"""Template pack model and registry.

A template pack is a named, versioned directory::

    <pack>/
      pack.yaml      # manifest: tokens, placeholders, inclusion rules
      files/         # the tree that gets rendered

Packs are discovered under the user configuration root first and then among
the packs shipped with mobile-forge.  A pack whose manifest is missing or
malformed is skipped with a warning; it never aborts discovery of the rest.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..config import ForgeSettings, Platform
from ..errors import PackNotFound, RenderIOError

logger = logging.getLogger(__name__)

MANIFEST_FILE = "pack.yaml"
FILES_DIR = "files"
BUILTIN_PACKS_DIR = Path(__file__).parent / "packs"

_TOKEN_NAME = r"[A-Za-z_][A-Za-z0-9_.\-]*"


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class TokenSyntax(BaseModel):
    """Delimiters around placeholder names, ``{{name}}`` by default."""

    open: str = Field(default="{{", min_length=1)
    close: str = Field(default="}}", min_length=1)

    def pattern(self) -> re.Pattern[str]:
        """Regex matching one token; group 1 is the placeholder name."""
        return re.compile(re.escape(self.open) + r"\s*(" + _TOKEN_NAME + r")\s*" + re.escape(self.close))


class PackRule(BaseModel):
    """Include the paths matching ``pattern`` only when the conditions hold.

    ``platforms`` -- at least one of them must be supported by the project.
    ``override``  -- a ``platform.key`` override that must be truthy.
    """

    pattern: str
    platforms: list[Platform] = Field(default_factory=list)
    override: Optional[str] = None

    def matches(self, rel_path: str) -> bool:
        return path_matches(rel_path, self.pattern)


class PackManifest(BaseModel):
    """Parsed ``pack.yaml``."""

    name: str
    version: str = "0.0.0"
    description: str = ""
    token: TokenSyntax = Field(default_factory=TokenSyntax)
    placeholders: dict[str, str] = Field(
        default_factory=dict,
        description="Pack-declared tokens; values may reference built-in tokens",
    )
    rules: list[PackRule] = Field(default_factory=list)
    verbatim: list[str] = Field(
        default_factory=list,
        description="Glob patterns copied without content substitution",
    )

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not re.match(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$", value):
            raise ValueError(f"invalid pack name {value!r}")
        return value

    @field_validator("version", mode="before")
    @classmethod
    def _check_version(cls, value: object) -> str:
        value = str(value)
        if not re.match(r"^\d+(\.\d+)*([-+][0-9A-Za-z.-]+)?$", value):
            raise ValueError(f"invalid pack version {value!r}")
        return value

    def is_verbatim(self, rel_path: str) -> bool:
        return any(path_matches(rel_path, pattern) for pattern in self.verbatim)


def path_matches(rel_path: str, pattern: str) -> bool:
    """Match a POSIX relative path against a glob.

    ``dir/**`` matches everything below ``dir``; other patterns use
    :func:`fnmatch.fnmatchcase` against the full path and the file name.
    """
    if pattern.endswith("/**"):
        prefix = pattern[: -len("/**")]
        return rel_path == prefix or rel_path.startswith(prefix + "/")
    return fnmatch.fnmatchcase(rel_path, pattern) or fnmatch.fnmatchcase(
        rel_path.rsplit("/", 1)[-1], pattern
    )


# ---------------------------------------------------------------------------
# Pack
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PackEntry:
    """One template file: POSIX path relative to ``files/``, bytes, and mode."""

    path: str
    data: bytes
    mode: int = 0o644


@dataclass(frozen=True)
class TemplatePack:
    """An installed, validated template pack.  Read-only."""

    root: Path
    manifest: PackManifest
    builtin: bool = False

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def version(self) -> str:
        return self.manifest.version

    @property
    def reference(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def files_dir(self) -> Path:
        return self.root / FILES_DIR

    def entries(self) -> list[PackEntry]:
        """Read every template file, sorted by relative path.

        Raises:
            RenderIOError: If a file cannot be read.
        """
        entries: list[PackEntry] = []
        for dirpath, dirnames, filenames in os.walk(self.files_dir):
            dirnames.sort()
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                rel = path.relative_to(self.files_dir).as_posix()
                try:
                    data = path.read_bytes()
                    mode = stat.S_IMODE(path.stat().st_mode)
                except OSError as exc:
                    raise RenderIOError(
                        f"Failed to read template file {rel!r} from pack {self.reference}: {exc}",
                        path=path,
                    ) from exc
                entries.append(PackEntry(path=rel, data=data, mode=mode))
        entries.sort(key=lambda entry: entry.path)
        return entries


def load_pack(root: Path, builtin: bool = False) -> TemplatePack:
    """Load and validate the pack at *root*.

    Raises:
        ValueError: If the manifest is missing or malformed, or ``files/``
            is absent.
    """
    manifest_path = root / MANIFEST_FILE
    if not manifest_path.is_file():
        raise ValueError(f"missing {MANIFEST_FILE}")
    try:
        raw = yaml.safe_load(manifest_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ValueError(f"unreadable {MANIFEST_FILE}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"{MANIFEST_FILE} must contain a mapping")
    raw.setdefault("name", root.name)
    try:
        manifest = PackManifest.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"invalid {MANIFEST_FILE}: {exc}") from exc
    if not (root / FILES_DIR).is_dir():
        raise ValueError(f"missing {FILES_DIR}/ directory")
    return TemplatePack(root=root, manifest=manifest, builtin=builtin)


def parse_reference(reference: str) -> tuple[str, Optional[str]]:
    """Split ``name@version`` into its parts; the version is optional."""
    name, _, version = reference.strip().partition("@")
    return name, version or None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass
class SkippedPack:
    path: Path
    reason: str


@dataclass
class TemplatePackRegistry:
    """Locates installed template packs without rendering them.

    Search paths are consulted in order; the first pack with a given name
    wins, so user packs shadow built-in ones.  Discovery is done fresh on
    every call.
    """

    search_paths: list[Path] = field(default_factory=list)
    skipped: list[SkippedPack] = field(default_factory=list)

    @classmethod
    def default(cls, settings: ForgeSettings) -> "TemplatePackRegistry":
        return cls(search_paths=[settings.templates_dir, BUILTIN_PACKS_DIR])

    def discover(self) -> list[TemplatePack]:
        """Return every valid pack, sorted by name."""
        self.skipped = []
        found: dict[str, TemplatePack] = {}
        for search_path in self.search_paths:
            if not search_path.is_dir():
                logger.debug("template search path %s does not exist", search_path)
                continue
            builtin = search_path == BUILTIN_PACKS_DIR
            for candidate in sorted(p for p in search_path.iterdir() if p.is_dir()):
                try:
                    pack = load_pack(candidate, builtin=builtin)
                except ValueError as exc:
                    logger.warning("Skipping template pack at %s: %s", candidate, exc)
                    self.skipped.append(SkippedPack(path=candidate, reason=str(exc)))
                    continue
                if pack.name in found:
                    logger.info("Template pack %s at %s is shadowed by %s", pack.name, candidate, found[pack.name].root)
                    continue
                found[pack.name] = pack
        return [found[name] for name in sorted(found)]

    def get(self, reference: str) -> TemplatePack:
        """Resolve a ``name`` or ``name@version`` reference.

        Raises:
            PackNotFound: If no valid pack matches.
        """
        name, version = parse_reference(reference)
        packs = self.discover()
        for pack in packs:
            if pack.name != name:
                continue
            if version is not None and pack.version != version:
                raise PackNotFound(
                    f"Template pack {name!r} is installed at version {pack.version}, "
                    f"but version {version} was requested",
                    path=pack.root,
                )
            return pack
        available = ", ".join(pack.reference for pack in packs) or "none"
        raise PackNotFound(
            f"Template pack {reference!r} not found (available: {available})",
            path=self.search_paths[0] if self.search_paths else None,
        )
