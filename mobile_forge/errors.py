"""Exception hierarchy for mobile-forge.

Every error the tool reports derives from :class:`ForgeError` and carries
enough context (path, platform, command, exit status, tool output) to be
actionable without re-running in a verbose mode.  Errors are grouped by
category so the command surface can print a matching remediation hint:

* :class:`PreconditionError` -- missing toolchain, missing device,
  destination not empty, pack not found.
* :class:`GenerationError` -- unresolved placeholder, invalid identifier,
  unsupported platform combination.
* :class:`BuildError` -- the native build failed; diagnostics are verbatim.
* :class:`SessionError` -- install, launch, or log-attach failures.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .build import BuildSession
    from .device import Device


class ForgeError(Exception):
    """Base class for every error reported by mobile-forge."""

    category = "error"
    hint = ""

    def __init__(
        self,
        message: str,
        *,
        platform: Any = None,
        path: str | Path | None = None,
        command: str = "",
        exit_code: Optional[int] = None,
        output: str = "",
    ) -> None:
        self.message = message
        self.platform = platform
        self.path = Path(path) if path is not None else None
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)

    def details(self) -> dict[str, str]:
        """Return the non-empty context fields as display strings."""
        fields: dict[str, str] = {}
        if self.platform is not None:
            fields["Platform"] = str(getattr(self.platform, "value", self.platform))
        if self.path is not None:
            fields["Path"] = str(self.path)
        if self.command:
            fields["Command"] = self.command
        if self.exit_code is not None:
            fields["Exit code"] = str(self.exit_code)
        return fields


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


class PreconditionError(ForgeError):
    """A required condition does not hold; nothing was attempted."""

    category = "precondition"


class GenerationError(ForgeError):
    """Rendering or descriptor generation could not complete.

    The project tree may be partially written.  Fix the cause and run
    ``mobile-forge init --regenerate``.
    """

    category = "generation"
    hint = "Fix the cause, then run `mobile-forge init --regenerate`."


class BuildError(ForgeError):
    """The native build failed.  ``output`` holds the tool diagnostics verbatim."""

    category = "build"

    def __init__(self, message: str, session: "BuildSession | None" = None, **kwargs: Any) -> None:
        self.session = session
        super().__init__(message, **kwargs)


class SessionError(ForgeError):
    """A device session step failed."""

    category = "session"


class ConfigError(PreconditionError):
    """The project configuration is missing or does not validate."""

    hint = "Check the values passed to `init`, or fix mobile-forge.json."


# ---------------------------------------------------------------------------
# Template rendering
# ---------------------------------------------------------------------------


class RenderError(ForgeError):
    """Base class for template rendering failures."""


class PackNotFound(RenderError, PreconditionError):
    hint = "Run `mobile-forge packs` to list the installed template packs."


class DestinationNotEmpty(RenderError, PreconditionError):
    hint = "Choose an empty directory, or pass `--regenerate` to rebuild a generated project."


class UnresolvedPlaceholder(RenderError, GenerationError):
    """One or more tokens had no value in the rendering context."""

    def __init__(self, message: str, tokens: dict[str, list[str]] | None = None, **kwargs: Any) -> None:
        # token -> source paths that referenced it
        self.tokens = tokens or {}
        super().__init__(message, **kwargs)


class RenderIOError(RenderError):
    """Reading the pack or writing the destination failed."""


# ---------------------------------------------------------------------------
# Platform descriptor generation
# ---------------------------------------------------------------------------


class InvalidIdentifier(GenerationError):
    hint = "Edit `bundle_identifier` in mobile-forge.json, then regenerate."


class UnsupportedPlatformCombination(GenerationError):
    hint = "Add the platform to `supported_platforms` in mobile-forge.json, then regenerate."


class GenerationIOError(GenerationError):
    """Writing a platform descriptor failed."""


# ---------------------------------------------------------------------------
# Toolchains
# ---------------------------------------------------------------------------


class ToolchainError(PreconditionError):
    """The platform toolchain is missing or unusable."""


class ToolchainNotFound(ToolchainError):
    pass


class ToolchainVersionTooOld(ToolchainError):
    def __init__(self, message: str, found: str = "", minimum: str = "", **kwargs: Any) -> None:
        self.found = found
        self.minimum = minimum
        super().__init__(message, **kwargs)


# ---------------------------------------------------------------------------
# Builds
# ---------------------------------------------------------------------------


class BuildStateError(RuntimeError):
    """An illegal build session state transition was requested."""


# ---------------------------------------------------------------------------
# Device sessions
# ---------------------------------------------------------------------------


class DeviceNotFound(SessionError, PreconditionError):
    hint = "Connect a device or boot an emulator, then run `mobile-forge devices`."


class AmbiguousDevice(SessionError, PreconditionError):
    hint = "Pass `--device ID` to pick one of the candidates."

    def __init__(self, message: str, candidates: "list[Device] | None" = None, **kwargs: Any) -> None:
        self.candidates = list(candidates or [])
        super().__init__(message, **kwargs)


class InstallFailed(SessionError):
    pass


class LaunchFailed(SessionError):
    pass


class LogAttachFailed(SessionError):
    pass
