"""mobile-forge configuration.

Two kinds of configuration live here:

* :class:`AppConfig` -- the Config Model of a generated project.  It is the
  single source of truth for project identity, persisted as
  ``mobile-forge.json`` at the project root and only ever changed by an
  explicit user edit of that file.
* :class:`ForgeSettings` -- tool-level knobs (config root, timeouts, log
  buffer size) that can be overridden through environment variables.

Both are Pydantic v2 models so they are validated at construction time and
round-trip through JSON without boiler-plate.
"""

from __future__ import annotations

import os
import re
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from .utils import pascal_case, snake_case

MANIFEST_NAME = "mobile-forge.json"
DEFAULT_PACK = "basic"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Platform(str, Enum):
    """The closed set of target platforms."""

    APPLE = "apple"
    ANDROID = "android"

    @property
    def display_name(self) -> str:
        return {"apple": "Apple", "android": "Android"}[self.value]


class Profile(str, Enum):
    DEBUG = "debug"
    RELEASE = "release"

    @property
    def title(self) -> str:
        """``Debug`` / ``Release``, as Gradle tasks and Xcode configurations spell it."""
        return self.value.capitalize()


class NoiseLevel(IntEnum):
    """How chatty the tool and the native toolchains should be."""

    POLITE = 0
    LOUD = 1
    PEDANTIC = 2

    @classmethod
    def from_verbosity(cls, count: int) -> "NoiseLevel":
        """Map the number of ``-v`` flags onto a noise level."""
        if count <= 0:
            return cls.POLITE
        if count == 1:
            return cls.LOUD
        return cls.PEDANTIC


# ---------------------------------------------------------------------------
# Bundle identifier validation
# ---------------------------------------------------------------------------

RESERVED_PACKAGE_NAMES = frozenset({"java", "kotlin"})

JAVA_KEYWORDS = frozenset(
    {
        "abstract", "assert", "boolean", "break", "byte", "case", "catch",
        "char", "class", "const", "continue", "default", "do", "double",
        "else", "enum", "extends", "false", "final", "finally", "float",
        "for", "goto", "if", "implements", "import", "instanceof", "int",
        "interface", "long", "native", "new", "null", "package", "private",
        "protected", "public", "return", "short", "static", "strictfp",
        "super", "switch", "synchronized", "this", "throw", "throws",
        "transient", "true", "try", "void", "volatile", "while",
    }
)

# Characters each platform accepts inside an identifier label, besides
# ASCII letters and digits.
_EXTRA_LABEL_CHARS: dict["Platform", frozenset[str]] = {
    Platform.APPLE: frozenset("-"),
    Platform.ANDROID: frozenset("_"),
}


def identifier_problems(identifier: str, platforms: set[Platform] | frozenset[Platform]) -> list[str]:
    """Return every rule *identifier* breaks for the given platforms.

    With several platforms selected the rules intersect: a label character is
    only allowed when every selected platform allows it.  An empty list means
    the identifier is valid.
    """
    problems: list[str] = []
    if not identifier:
        return ["identifier can't be empty"]
    if identifier.startswith(".") or identifier.endswith("."):
        return ["identifier can't start or end with a dot"]

    labels = identifier.split(".")
    if len(labels) < 2:
        problems.append("identifier needs at least two dot-separated labels (e.g. com.example.app)")

    allowed_extra: frozenset[str] | None = None
    for platform in platforms or set(Platform):
        extra = _EXTRA_LABEL_CHARS[platform]
        allowed_extra = extra if allowed_extra is None else allowed_extra & extra
    allowed_extra = allowed_extra or frozenset()

    for label in labels:
        if not label:
            problems.append("labels can't be empty")
            continue
        if not label[0].isascii() or not label[0].isalpha():
            problems.append(f'"{label}" label must start with an ASCII letter')
        bad_chars = sorted(
            {c for c in label if not (c.isascii() and c.isalnum()) and c not in allowed_extra}
        )
        if bad_chars:
            problems.append(f'"{"".join(bad_chars)}" are not valid characters in label "{label}"')
        if Platform.ANDROID in platforms and label in JAVA_KEYWORDS:
            problems.append(f'"{label}" is a Java keyword and can\'t be a package label')

    if labels[-1] in RESERVED_PACKAGE_NAMES:
        problems.append(f'"{labels[-1]}" is reserved and cannot be used')
    return problems


# ---------------------------------------------------------------------------
# Config Model
# ---------------------------------------------------------------------------


class AppConfig(BaseModel):
    """Identity and per-platform settings of one generated project.

    Invariant: ``bundle_identifier`` is valid on every platform in
    ``supported_platforms`` at once.
    """

    project_name: str = Field(..., description="Human-readable project name, e.g. 'Foo'")
    bundle_identifier: str = Field(..., description="Reverse-DNS identifier, e.g. 'com.example.foo'")
    supported_platforms: set[Platform] = Field(
        default_factory=lambda: {Platform.APPLE, Platform.ANDROID}
    )
    overrides: dict[Platform, dict[str, str]] = Field(
        default_factory=dict,
        description="Per-platform string settings (development_team, min_sdk, ...)",
    )
    template_pack: str = Field(default=DEFAULT_PACK, description="Pack reference: 'name' or 'name@version'")

    @field_validator("project_name")
    @classmethod
    def _check_project_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("project name can't be empty")
        if not re.match(r"^[A-Za-z][A-Za-z0-9 _-]*$", value):
            raise ValueError(
                "project name must start with a letter and contain only letters, "
                "digits, spaces, '-' or '_'"
            )
        return value

    @field_validator("supported_platforms")
    @classmethod
    def _check_platforms(cls, value: set[Platform]) -> set[Platform]:
        if not value:
            raise ValueError("at least one platform must be supported")
        return value

    @model_validator(mode="after")
    def _check_identifier(self) -> "AppConfig":
        problems = identifier_problems(self.bundle_identifier, self.supported_platforms)
        if problems:
            raise ValueError(
                f"bundle identifier {self.bundle_identifier!r} is invalid: " + "; ".join(problems)
            )
        return self

    @field_serializer("supported_platforms")
    def _dump_platforms(self, value: set[Platform]) -> list[str]:
        return sorted(p.value for p in value)

    @field_serializer("overrides")
    def _dump_overrides(self, value: dict[Platform, dict[str, str]]) -> dict[str, dict[str, str]]:
        return {
            platform.value: dict(sorted(settings.items()))
            for platform, settings in sorted(value.items(), key=lambda item: item[0].value)
        }

    # ------------------------------------------------------------------
    # Derived names
    # ------------------------------------------------------------------

    @property
    def name_snake(self) -> str:
        return snake_case(self.project_name)

    @property
    def name_pascal(self) -> str:
        return pascal_case(self.project_name)

    @property
    def domain(self) -> str:
        """The identifier without its last label (``com.example``)."""
        return self.bundle_identifier.rsplit(".", 1)[0]

    @property
    def package_path(self) -> str:
        """The identifier as a source directory path (``com/example/foo``)."""
        return self.bundle_identifier.replace(".", "/")

    def sorted_platforms(self) -> list[Platform]:
        return sorted(self.supported_platforms, key=lambda p: p.value)

    def supports(self, platform: Platform) -> bool:
        return platform in self.supported_platforms

    def override(self, platform: Platform, key: str, default: str = "") -> str:
        """Return the override *key* for *platform*, or *default*."""
        return self.overrides.get(platform, {}).get(key, default)

    # ------------------------------------------------------------------
    # Manifest persistence
    # ------------------------------------------------------------------

    @staticmethod
    def manifest_path(project_root: str | Path) -> Path:
        return Path(project_root) / MANIFEST_NAME

    def save(self, project_root: str | Path) -> Path:
        """Write the manifest into *project_root* and return its path."""
        target = self.manifest_path(project_root)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2) + "\n", encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: str | Path) -> "AppConfig":
        """Load a manifest file, or the manifest inside a project directory."""
        path = Path(path)
        if path.is_dir():
            path = cls.manifest_path(path)
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


def parse_override(assignment: str) -> tuple[Platform, str, str]:
    """Parse a ``platform.key=value`` command-line assignment."""
    target, sep, value = assignment.partition("=")
    platform_name, dot, key = target.partition(".")
    if not sep or not dot or not key:
        raise ValueError(f"expected PLATFORM.KEY=VALUE, got {assignment!r}")
    try:
        platform = Platform(platform_name.strip().lower())
    except ValueError:
        raise ValueError(f"unknown platform {platform_name!r} in {assignment!r}") from None
    return platform, key.strip(), value.strip()


# ---------------------------------------------------------------------------
# Tool settings
# ---------------------------------------------------------------------------


def _default_home() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "mobile-forge"


class TimeoutConfig(BaseModel):
    """Upper bounds, in seconds, for every external wait."""

    toolchain: float = Field(default=15.0, gt=0, description="Per-probe toolchain discovery timeout")
    device: float = Field(default=30.0, gt=0, description="How long to wait for a matching device")
    device_poll_interval: float = Field(default=2.0, gt=0)
    build: float = Field(default=1800.0, gt=0, description="Native build timeout")
    step: float = Field(default=120.0, gt=0, description="Install / launch step timeout")
    log_attach: float = Field(default=1.0, gt=0, description="Grace period to detect a dead log process")
    terminate_grace: float = Field(default=5.0, gt=0, description="SIGTERM -> SIGKILL grace period")


class ForgeSettings(BaseModel):
    """Tool-level settings.

    Instances are created once by the command entry point (usually via
    :meth:`from_env`) and passed through the rest of the system.
    """

    home: Path = Field(default_factory=_default_home)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    log_buffer: int = Field(default=256, ge=1, description="Bounded log channel capacity")

    @property
    def templates_dir(self) -> Path:
        """Directory that holds user-installed template packs."""
        return self.home / "templates"

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "ForgeSettings":
        """Build settings from environment variables.

        Recognised variables (all optional):
            MOBILE_FORGE_HOME, MOBILE_FORGE_TOOLCHAIN_TIMEOUT,
            MOBILE_FORGE_DEVICE_TIMEOUT, MOBILE_FORGE_BUILD_TIMEOUT,
            MOBILE_FORGE_LOG_BUFFER.
        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}
        if env.get("MOBILE_FORGE_HOME"):
            kwargs["home"] = Path(env["MOBILE_FORGE_HOME"]).expanduser()
        if env.get("MOBILE_FORGE_LOG_BUFFER"):
            kwargs["log_buffer"] = int(env["MOBILE_FORGE_LOG_BUFFER"])

        timeout_kwargs: dict[str, Any] = {}
        if env.get("MOBILE_FORGE_TOOLCHAIN_TIMEOUT"):
            timeout_kwargs["toolchain"] = float(env["MOBILE_FORGE_TOOLCHAIN_TIMEOUT"])
        if env.get("MOBILE_FORGE_DEVICE_TIMEOUT"):
            timeout_kwargs["device"] = float(env["MOBILE_FORGE_DEVICE_TIMEOUT"])
        if env.get("MOBILE_FORGE_BUILD_TIMEOUT"):
            timeout_kwargs["build"] = float(env["MOBILE_FORGE_BUILD_TIMEOUT"])

        return cls(timeouts=TimeoutConfig(**timeout_kwargs), **kwargs)
