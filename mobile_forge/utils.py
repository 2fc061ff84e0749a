"""Shared utility functions for mobile-forge.

Provides async subprocess execution with deterministic termination, atomic
file writes, name-casing helpers, and Rich-based console reporting.  Every
child process is started in its own session so that cancelling a command
also stops whatever it spawned (Gradle daemons, ``xcodebuild`` workers).
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import sys
import tempfile
from collections.abc import AsyncIterator, Collection, Sequence
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.rule import Rule
from rich.table import Table

console = Console()
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def configure_logging(verbosity: int = 0) -> None:
    """Route the ``mobile_forge`` loggers through Rich.

    0 -> WARNING, 1 -> INFO, 2+ -> DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger("mobile_forge")
    root.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=console, show_path=False, markup=False))
    root.propagate = False


# ---------------------------------------------------------------------------
# Async subprocess execution
# ---------------------------------------------------------------------------

# Native tools print single lines far longer than asyncio's 64 KiB default
# (xcodebuild compile invocations, gradle --debug).
STREAM_LIMIT = 4 * 1024 * 1024


def format_command(cmd: Sequence[str | os.PathLike[str]]) -> str:
    """Render an argument vector as a single display string."""
    return " ".join(str(part) for part in cmd)


def merged_env(env: dict[str, str] | None) -> dict[str, str] | None:
    """Overlay *env* on top of ``os.environ`` (``None`` inherits unchanged)."""
    if not env:
        return None
    return {**os.environ, **env}


async def spawn(
    cmd: Sequence[str | os.PathLike[str]],
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    merge_stderr: bool = False,
) -> asyncio.subprocess.Process:
    """Start *cmd* with piped output in a new process session.

    Raises:
        FileNotFoundError: If the executable does not exist.
        PermissionError: If the executable cannot be run.
    """
    logger.debug("spawn: %s", format_command(cmd))
    return await asyncio.create_subprocess_exec(
        *[str(part) for part in cmd],
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
        env=merged_env(env),
        start_new_session=sys.platform != "win32",
        limit=STREAM_LIMIT,
    )


async def terminate_process(process: asyncio.subprocess.Process, grace: float = 5.0) -> None:
    """Stop *process* and everything in its process group.

    Sends SIGTERM, waits up to *grace* seconds, then SIGKILLs.  Safe to call
    on a process that already exited.
    """
    if process.returncode is not None:
        return

    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        pass

    _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
    await process.wait()


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if sys.platform != "win32":
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except ProcessLookupError:
        pass


async def run_command(
    cmd: Sequence[str | os.PathLike[str]],
    cwd: str | Path | None = None,
    timeout: float = 120,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    """Run a command to completion and capture its output.

    Args:
        cmd: Argument vector (never a shell string).
        cwd: Working directory for the child process.
        timeout: Maximum wall-clock seconds before the process group is killed.
        env: Optional extra environment variables merged on top of ``os.environ``.

    Returns:
        A ``(returncode, stdout, stderr)`` tuple.  On timeout the return code
        is ``-1`` and stderr explains what happened.

    Raises:
        FileNotFoundError: If the executable does not exist.
        PermissionError: If the executable cannot be run.
    """
    process = await spawn(cmd, cwd=cwd, env=env)
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await terminate_process(process)
        return -1, "", f"Command timed out after {timeout}s: {format_command(cmd)}"
    except asyncio.CancelledError:
        await terminate_process(process)
        raise

    stdout_str = (stdout_bytes or b"").decode("utf-8", errors="replace").strip()
    stderr_str = (stderr_bytes or b"").decode("utf-8", errors="replace").strip()
    return (process.returncode if process.returncode is not None else -1, stdout_str, stderr_str)


async def iter_lines(process: asyncio.subprocess.Process) -> AsyncIterator[str]:
    """Yield decoded stdout lines of *process* until EOF.

    A line longer than the stream limit is dropped by the reader; it is
    reported as a marker line and reading continues with the next line.
    """
    if process.stdout is None:
        raise ValueError("process was started without a stdout pipe")
    while True:
        try:
            line_bytes = await process.stdout.readline()
        except ValueError:
            yield f"[line longer than {STREAM_LIMIT} bytes omitted]"
            continue
        if not line_bytes:
            return
        yield line_bytes.decode("utf-8", errors="replace").rstrip("\r\n")


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------


def atomic_write(path: str | Path, data: bytes, mode: int | None = None) -> Path:
    """Write *data* to *path* so the file is either complete or absent.

    The content goes to a temporary sibling first and is moved into place
    with ``os.replace``.  Parent directories are created as needed.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return target


def is_empty_dir(path: str | Path, ignore: Collection[str] = ()) -> bool:
    """``True`` when *path* is absent or a directory holding only *ignore* entries."""
    target = Path(path)
    if not target.exists():
        return True
    return target.is_dir() and not any(child.name not in ignore for child in target.iterdir())


def relative_posix(path: str | Path, start: str | Path) -> str:
    """``os.path.relpath`` with forward slashes on every OS."""
    return Path(os.path.relpath(path, start)).as_posix()


# ---------------------------------------------------------------------------
# String helpers
# ---------------------------------------------------------------------------


def snake_case(value: str) -> str:
    """Convert ``SomeThing`` or ``some-thing`` to ``some_thing``."""
    s1 = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", value.strip())
    s2 = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s1)
    return re.sub(r"[-\s_]+", "_", s2).lower()


def pascal_case(value: str) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``SomeThing``."""
    parts = re.split(r"[-_\s]+", value.strip())
    return "".join(word[:1].upper() + word[1:] for word in parts if word)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
    """
    if seconds < 0:
        return "0.0s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes:
        return f"{minutes}m {int(secs)}s"
    return f"{secs:.1f}s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


def print_step_header(title: str, color: str = "bright_cyan") -> None:
    """Print a full-width rule announcing a pipeline step."""
    console.print(Rule(f"[bold {color}] {title} [/bold {color}]", style=color))


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{message}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{message}[/bold yellow]")
